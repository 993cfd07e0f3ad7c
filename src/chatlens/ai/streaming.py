"""Wire-format helpers for OpenAI-style chat completion responses.

Streaming responses arrive as ``data: <json>`` records separated by newlines
and terminated by ``data: [DONE]``. Each record's delta may carry a content
fragment and/or tool-call fragments addressed by ``index``; the id and name of
a tool call usually arrive once while its arguments text is spread over many
records and must be concatenated in arrival order.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from .ai_types import AIStreamEvent, ChatResponse, FinishReason, StreamEventType, TokenUsage, ToolCall
from .errors import TransportError

__all__ = [
    "DONE_MARKER",
    "ToolCallAccumulator",
    "StreamFrameDecoder",
    "parse_sse_line",
    "parse_completion_body",
    "extract_error_message",
]

LOGGER = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
_DATA_PREFIX = "data:"
_ERROR_SNIPPET_LIMIT = 200


def parse_sse_line(line: str) -> str | None:
    """Return the payload of a ``data:`` record, or ``None`` for any other line."""

    trimmed = line.strip()
    if not trimmed.startswith(_DATA_PREFIX):
        return None
    return trimmed[len(_DATA_PREFIX):].strip()


@dataclass(slots=True)
class _PartialToolCall:
    index: int
    id: str = ""
    name: str = ""
    arguments_parts: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects streamed tool-call fragments keyed by their index."""

    def __init__(self) -> None:
        self._partials: dict[int, _PartialToolCall] = {}

    def add(self, fragment: Mapping[str, Any]) -> AIStreamEvent:
        """Merge one fragment and return the matching ``tool_call.delta`` event."""

        index = _as_index(fragment.get("index"))
        function = fragment.get("function") or {}
        if not isinstance(function, Mapping):
            function = {}
        partial = self._partials.get(index)
        if partial is None:
            partial = _PartialToolCall(index=index)
            self._partials[index] = partial

        call_id = fragment.get("id")
        if isinstance(call_id, str) and call_id and not partial.id:
            partial.id = call_id
        name = function.get("name")
        if isinstance(name, str) and name and not partial.name:
            partial.name = name
        arguments = function.get("arguments")
        if isinstance(arguments, str) and arguments:
            partial.arguments_parts.append(arguments)

        return AIStreamEvent(
            type=StreamEventType.TOOL_CALL_DELTA,
            tool_index=index,
            tool_call_id=call_id if isinstance(call_id, str) else None,
            tool_name=name if isinstance(name, str) else None,
            arguments_delta=arguments if isinstance(arguments, str) else None,
        )

    def flush(self) -> tuple[ToolCall, ...]:
        """Return completed tool calls ordered by index and reset the buffer."""

        calls: list[ToolCall] = []
        for index in sorted(self._partials):
            partial = self._partials[index]
            call_id = partial.id or f"call_{index}_{uuid.uuid4().hex[:8]}"
            calls.append(
                ToolCall(
                    id=call_id,
                    name=partial.name,
                    arguments="".join(partial.arguments_parts),
                )
            )
        self._partials.clear()
        return tuple(calls)

    def __len__(self) -> int:
        return len(self._partials)


class StreamFrameDecoder:
    """Turns streamed records into :class:`AIStreamEvent` values.

    Exactly one ``finished`` event is produced per stream: when a terminal
    frame carries usage, on the end marker, or on :meth:`finish` when the
    connection ends without either.
    """

    def __init__(self) -> None:
        self._tool_calls = ToolCallAccumulator()
        self._finish_reason: str | None = None
        self._usage: TokenUsage | None = None
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed_line(self, line: str) -> list[AIStreamEvent]:
        if self._finished:
            return []
        payload = parse_sse_line(line)
        if not payload:
            return []
        if payload == DONE_MARKER:
            return [self.finish()]
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed stream frame: %s", payload[:_ERROR_SNIPPET_LIMIT])
            return []
        return self.feed_frame(frame)

    def feed_frame(self, frame: Any) -> list[AIStreamEvent]:
        if self._finished:
            return []
        if not isinstance(frame, Mapping):
            LOGGER.debug("Skipping non-object stream frame")
            return []

        events: list[AIStreamEvent] = []
        usage = TokenUsage.from_payload(frame.get("usage"))
        if usage is not None:
            self._usage = usage

        choice = _first_choice(frame)
        delta = choice.get("delta") or {}
        if isinstance(delta, Mapping):
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(AIStreamEvent.content_delta(content))
            fragments = delta.get("tool_calls")
            if isinstance(fragments, list):
                for fragment in fragments:
                    if isinstance(fragment, Mapping):
                        events.append(self._tool_calls.add(fragment))

        reason = choice.get("finish_reason")
        if reason:
            self._finish_reason = FinishReason.normalize(reason)

        if self._finish_reason is not None and self._usage is not None:
            events.append(self.finish())
        return events

    def finish(self) -> AIStreamEvent:
        """Flush accumulated tool calls into the single terminal event."""

        tool_calls = self._tool_calls.flush()
        reason = self._finish_reason
        if reason is None:
            reason = FinishReason.TOOL_CALLS if tool_calls else FinishReason.STOP
        self._finished = True
        return AIStreamEvent.finished(reason, tool_calls=tool_calls or None, usage=self._usage)


def parse_completion_body(data: Any) -> ChatResponse:
    """Map a non-streaming completion body onto :class:`ChatResponse`."""

    if not isinstance(data, Mapping):
        raise TransportError("Malformed completion body", detail=_snippet(data))
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        raise TransportError("Completion body has no choices", detail=_snippet(data))
    choice = choices[0]
    message = choice.get("message") or {}
    if not isinstance(message, Mapping):
        raise TransportError("Completion choice has no message", detail=_snippet(data))

    tool_calls: tuple[ToolCall, ...] | None = None
    raw_calls = message.get("tool_calls")
    if isinstance(raw_calls, list) and raw_calls:
        tool_calls = tuple(ToolCall.from_chat_param(item) for item in raw_calls if isinstance(item, Mapping))

    return ChatResponse(
        content=str(message.get("content") or ""),
        finish_reason=FinishReason.normalize(choice.get("finish_reason")),
        tool_calls=tool_calls or None,
        usage=TokenUsage.from_payload(data.get("usage")),
    )


def extract_error_message(body: str, status_code: int) -> str:
    """Pull a human-readable message out of an error response body."""

    fallback = f"HTTP {status_code}"
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return body[:_ERROR_SNIPPET_LIMIT] if body else fallback
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if payload.get("message"):
            return str(payload["message"])
    return fallback


def _first_choice(frame: Mapping[str, Any]) -> Mapping[str, Any]:
    choices = frame.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        return choices[0]
    return {}


def _as_index(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _snippet(data: Any) -> str:
    try:
        text = json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(data)
    return text[:_ERROR_SNIPPET_LIMIT]
