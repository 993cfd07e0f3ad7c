"""Tests for the completion wire-format helpers."""

from __future__ import annotations

import json

import pytest

from chatlens.ai.ai_types import FinishReason, StreamEventType
from chatlens.ai.errors import TransportError
from chatlens.ai.streaming import (
    StreamFrameDecoder,
    ToolCallAccumulator,
    extract_error_message,
    parse_completion_body,
    parse_sse_line,
)


def _line(frame: dict) -> str:
    return f"data: {json.dumps(frame)}"


class TestParseSseLine:
    def test_data_lines(self) -> None:
        assert parse_sse_line('data: {"a": 1}') == '{"a": 1}'
        assert parse_sse_line("data:[DONE]") == "[DONE]"

    def test_other_lines_are_ignored(self) -> None:
        assert parse_sse_line("") is None
        assert parse_sse_line(": keep-alive") is None
        assert parse_sse_line("event: message") is None


class TestToolCallAccumulator:
    """Fragments are merged by index; arguments concatenate in arrival order."""

    def test_merges_fragments_by_index(self) -> None:
        accumulator = ToolCallAccumulator()
        accumulator.add({"index": 1, "id": "b", "function": {"name": "second", "arguments": "{}"}})
        accumulator.add({"index": 0, "id": "a", "function": {"name": "first", "arguments": '{"x"'}})
        delta = accumulator.add({"index": 0, "function": {"arguments": ": 1}"}})

        assert delta.type == StreamEventType.TOOL_CALL_DELTA
        assert delta.tool_index == 0
        assert delta.arguments_delta == ": 1}"
        assert len(accumulator) == 2

        calls = accumulator.flush()
        assert [call.name for call in calls] == ["first", "second"]
        assert calls[0].arguments == '{"x": 1}'
        assert len(accumulator) == 0

    def test_first_id_and_name_win(self) -> None:
        accumulator = ToolCallAccumulator()
        accumulator.add({"index": 0, "id": "keep", "function": {"name": "tool"}})
        accumulator.add({"index": 0, "id": "ignored", "function": {"name": "other"}})

        (call,) = accumulator.flush()
        assert call.id == "keep"
        assert call.name == "tool"
        assert call.arguments == ""

    def test_missing_id_is_generated(self) -> None:
        accumulator = ToolCallAccumulator()
        accumulator.add({"index": 3, "function": {"name": "tool", "arguments": "{}"}})

        (call,) = accumulator.flush()
        assert call.id.startswith("call_3_")


class TestStreamFrameDecoder:
    """Exactly one finished event is emitted per stream."""

    def test_finishes_once_usage_and_reason_are_known(self) -> None:
        decoder = StreamFrameDecoder()
        events = decoder.feed_line(_line({"choices": [{"delta": {"content": "hi"}, "finish_reason": "stop"}]}))
        assert [event.type for event in events] == [StreamEventType.CONTENT_DELTA]

        events = decoder.feed_line(_line({"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1}}))
        assert [event.type for event in events] == [StreamEventType.FINISHED]
        assert events[0].usage is not None and events[0].usage.total_tokens == 2
        assert decoder.finished

        assert decoder.feed_line("data: [DONE]") == []

    def test_done_marker_finishes(self) -> None:
        decoder = StreamFrameDecoder()
        decoder.feed_line(_line({"choices": [{"delta": {"content": "hi"}, "finish_reason": "length"}]}))

        (event,) = decoder.feed_line("data: [DONE]")

        assert event.type == StreamEventType.FINISHED
        assert event.finish_reason == FinishReason.LENGTH
        assert event.usage is None

    def test_finish_infers_tool_calls_reason(self) -> None:
        decoder = StreamFrameDecoder()
        decoder.feed_frame(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c", "function": {"name": "t"}}]}}]}
        )

        event = decoder.finish()

        assert event.finish_reason == FinishReason.TOOL_CALLS
        assert event.tool_calls is not None and event.tool_calls[0].name == "t"

    def test_malformed_frames_are_skipped(self) -> None:
        decoder = StreamFrameDecoder()

        assert decoder.feed_line("data: {not json") == []
        assert decoder.feed_line(": comment") == []
        assert decoder.feed_frame(["not", "a", "mapping"]) == []
        assert not decoder.finished

    def test_unknown_finish_reason_maps_to_error(self) -> None:
        decoder = StreamFrameDecoder()
        decoder.feed_frame({"choices": [{"delta": {}, "finish_reason": "content_filter"}]})

        assert decoder.finish().finish_reason == FinishReason.ERROR


class TestParseCompletionBody:
    def test_parses_message(self) -> None:
        response = parse_completion_body(
            {
                "choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
            }
        )

        assert response.content == "ok"
        assert response.finish_reason == FinishReason.STOP
        assert response.usage is not None and response.usage.prompt_tokens == 3

    @pytest.mark.parametrize("body", [None, [], {}, {"choices": []}, {"choices": [{"message": "text"}]}])
    def test_malformed_bodies_raise(self, body: object) -> None:
        with pytest.raises(TransportError):
            parse_completion_body(body)


class TestExtractErrorMessage:
    def test_openai_error_shape(self) -> None:
        assert extract_error_message('{"error": {"message": "Invalid key"}}', 401) == "Invalid key"

    def test_flat_shapes(self) -> None:
        assert extract_error_message('{"error": "quota"}', 429) == "quota"
        assert extract_error_message('{"message": "down"}', 503) == "down"

    def test_fallbacks(self) -> None:
        assert extract_error_message("", 502) == "HTTP 502"
        assert extract_error_message("plain text failure", 500) == "plain text failure"
        assert extract_error_message("[1, 2]", 500) == "HTTP 500"
