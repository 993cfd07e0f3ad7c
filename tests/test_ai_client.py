"""Tests for the httpx-based OpenAI-compatible completion client."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from chatlens.ai.ai_types import ChatOptions, FinishReason, Message, StreamEventType, TokenUsage
from chatlens.ai.cancellation import CancellationToken
from chatlens.ai.client import AIClient, ClientSettings, build_chat_payload, coerce_messages
from chatlens.ai.errors import TransportError


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = {
        "base_url": "https://api.example.test/v1/",
        "api_key": "sk-test",
        "model": "test-model",
        "retry_min_seconds": 0,
        "retry_max_seconds": 0,
    }
    values.update(overrides)
    return ClientSettings(**values)


def _client(handler: Callable[[httpx.Request], Any], **overrides: Any) -> AIClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AIClient(_settings(**overrides), http_client=http)


def _sse(*frames: Any) -> bytes:
    lines = []
    for frame in frames:
        data = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def _completion_body(content: str = "Hello", **message: Any) -> dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content, **message},
                "finish_reason": "tool_calls" if message.get("tool_calls") else "stop",
            }
        ],
        "usage": {"prompt_tokens": 9, "completion_tokens": 3, "total_tokens": 12},
    }


@pytest.mark.asyncio
async def test_chat_posts_payload_and_parses_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion_body())

    client = _client(handler, organization="org-1", default_headers={"X-Trace": "t1"})
    response = await client.chat([Message.user("hi")], ChatOptions(temperature=0.2, max_tokens=64))

    assert response.content == "Hello"
    assert response.finish_reason == FinishReason.STOP
    assert response.tool_calls is None
    assert response.usage == TokenUsage(9, 3, 12)

    request = seen[0]
    assert str(request.url) == "https://api.example.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["OpenAI-Organization"] == "org-1"
    assert request.headers["X-Trace"] == "t1"
    body = json.loads(request.content)
    assert body["model"] == "test-model"
    assert body["stream"] is False
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 64
    assert body["messages"] == [{"role": "user", "content": "hi"}]
    assert "tools" not in body


@pytest.mark.asyncio
async def test_chat_returns_structured_tool_calls() -> None:
    calls = [
        {
            "id": "call_1",
            "type": "function",
            "function": {"name": "search_messages", "arguments": '{"keywords": ["x"]}'},
        }
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion_body(content=None, tool_calls=calls))

    response = await _client(handler).chat([{"role": "user", "content": "hi"}])

    assert response.content == ""
    assert response.finish_reason == FinishReason.TOOL_CALLS
    assert response.tool_calls is not None
    assert response.tool_calls[0].name == "search_messages"
    assert response.tool_calls[0].arguments == '{"keywords": ["x"]}'


@pytest.mark.asyncio
async def test_chat_retries_server_errors() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json=_completion_body("recovered"))

    response = await _client(handler).chat([Message.user("hi")])

    assert response.content == "recovered"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_chat_does_not_retry_client_errors() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(400, json={"error": {"message": "bad request"}})

    with pytest.raises(TransportError) as excinfo:
        await _client(handler).chat([Message.user("hi")])

    assert excinfo.value.status_code == 400
    assert "400" in str(excinfo.value)
    assert "bad request" in excinfo.value.detail
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_chat_rejects_non_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(TransportError):
        await _client(handler).chat([Message.user("hi")])


@pytest.mark.asyncio
async def test_chat_skips_request_when_already_cancelled() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion_body())

    token = CancellationToken()
    token.cancel()
    response = await _client(handler).chat([Message.user("hi")], ChatOptions(cancellation=token))

    assert response.content == ""
    assert response.finish_reason == FinishReason.STOP
    assert seen == []


@pytest.mark.asyncio
async def test_chat_cancelled_while_waiting() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=_completion_body())

    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)
    response = await asyncio.wait_for(
        _client(handler).chat([Message.user("hi")], ChatOptions(cancellation=token)),
        timeout=2,
    )

    assert response.content == ""
    assert response.finish_reason == FinishReason.STOP


@pytest.mark.asyncio
async def test_stream_accumulates_tool_call_fragments() -> None:
    body = _sse(
        {"choices": [{"index": 0, "delta": {"role": "assistant", "tool_calls": [
            {"index": 0, "id": "call_9", "type": "function", "function": {"name": "search_messages", "arguments": ""}}
        ]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"keywords":'}}]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '["x"]}'}}]}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}},
        "[DONE]",
    )
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

    events = [event async for event in _client(handler).chat_stream([Message.user("hi")])]

    finished = [event for event in events if event.type == StreamEventType.FINISHED]
    assert len(finished) == 1
    assert events[-1] is finished[0]
    assert finished[0].finish_reason == FinishReason.TOOL_CALLS
    assert finished[0].tool_calls is not None
    assert finished[0].tool_calls[0].id == "call_9"
    assert finished[0].tool_calls[0].arguments == '{"keywords":["x"]}'
    assert finished[0].usage is not None and finished[0].usage.total_tokens == 12

    payload = json.loads(seen[0].content)
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}


@pytest.mark.asyncio
async def test_stream_without_done_marker_still_finishes() -> None:
    body = _sse(
        {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
        {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    events = [event async for event in _client(handler).chat_stream([Message.user("hi")])]

    assert [event.type for event in events] == ["content.delta", "content.delta", "finished"]
    assert "".join(event.content or "" for event in events) == "Hello"
    assert events[-1].finish_reason == FinishReason.STOP


@pytest.mark.asyncio
async def test_stream_reports_http_failure_as_error_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid key"}})

    events = [event async for event in _client(handler).chat_stream([Message.user("hi")])]

    assert len(events) == 1
    assert events[0].type == StreamEventType.ERROR
    assert events[0].status_code == 401


@pytest.mark.asyncio
async def test_stream_stops_when_cancelled() -> None:
    body = _sse(
        {"choices": [{"index": 0, "delta": {"content": "one"}}]},
        {"choices": [{"index": 0, "delta": {"content": "two"}}]},
        "[DONE]",
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    token = CancellationToken()
    events = []
    async for event in _client(handler).chat_stream([Message.user("hi")], ChatOptions(cancellation=token)):
        events.append(event)
        if event.type == StreamEventType.CONTENT_DELTA:
            token.cancel()

    assert [event.type for event in events] == ["content.delta", "finished"]
    assert events[-1].finish_reason == FinishReason.STOP


@pytest.mark.asyncio
async def test_validate_api_key() -> None:
    def ok(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/models")
        return httpx.Response(200, json={"data": []})

    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid key"}})

    assert (await _client(ok).validate_api_key()).success is True
    failure = await _client(rejected).validate_api_key()
    assert failure.success is False
    assert failure.error == "Invalid key"


def test_build_chat_payload_includes_tools() -> None:
    tools = [{"type": "function", "function": {"name": "t", "description": "", "parameters": {}}}]
    payload = build_chat_payload("m", [Message.user("hi")], ChatOptions(tools=tools), stream=False)

    assert payload["tools"] == tools
    assert "stream_options" not in payload


def test_coerce_messages_validates_input() -> None:
    messages = coerce_messages([{"role": "system", "content": "s"}, Message.user("u")])

    assert [message.role for message in messages] == ["system", "user"]
    with pytest.raises(ValueError):
        coerce_messages([])
    with pytest.raises(TypeError):
        coerce_messages(["not a message"])  # type: ignore[list-item]
