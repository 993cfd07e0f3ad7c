"""Shared test helpers and stub classes.

This module contains reusable test stubs that are used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Sequence

from chatlens.ai.ai_types import (
    AIStreamEvent,
    ChatOptions,
    ChatResponse,
    FinishReason,
    Message,
    TokenUsage,
    ToolCall,
    ValidationResult,
)
from chatlens.ai.errors import TransportError
from chatlens.ai.orchestration.tools import ToolContext


@dataclass
class ScriptedTurn:
    """One scripted model reply.

    ``chunks`` splits ``content`` for streaming; by default the whole content
    arrives as a single delta. ``error`` makes the call fail at the transport.
    ``gate`` is awaited before every chunk after the first.
    """

    content: str = ""
    tool_calls: Sequence[ToolCall] = ()
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    chunks: Sequence[str] | None = None
    error: str | None = None
    gate: asyncio.Event | None = None

    @property
    def reason(self) -> str:
        if self.finish_reason is not None:
            return self.finish_reason
        return FinishReason.TOOL_CALLS if self.tool_calls else FinishReason.STOP


@dataclass
class RecordedCall:
    mode: str
    messages: list[Message]
    options: ChatOptions


@dataclass
class ScriptedClient:
    """Completion client stub that replays scripted turns in order.

    Example:
        client = ScriptedClient([ScriptedTurn(content="4")])
        response = await client.chat([Message.user("2+2?")])
    """

    turns: list[ScriptedTurn] = field(default_factory=list)
    calls: list[RecordedCall] = field(default_factory=list)

    async def chat(
        self,
        messages: Sequence[Message],
        options: ChatOptions | None = None,
    ) -> ChatResponse:
        turn = self._next("chat", messages, options)
        if turn.error:
            raise TransportError(turn.error, status_code=500)
        return ChatResponse(
            content=turn.content,
            finish_reason=turn.reason,
            tool_calls=tuple(turn.tool_calls) or None,
            usage=turn.usage,
        )

    async def chat_stream(
        self,
        messages: Sequence[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        turn = self._next("stream", messages, options)
        if turn.error:
            yield AIStreamEvent.transport_error(turn.error, status_code=500)
            return
        chunks = list(turn.chunks) if turn.chunks is not None else ([turn.content] if turn.content else [])
        for index, chunk in enumerate(chunks):
            if index and turn.gate is not None:
                await turn.gate.wait()
            if options is not None and options.cancelled:
                yield AIStreamEvent.finished(FinishReason.STOP)
                return
            yield AIStreamEvent.content_delta(chunk)
            await asyncio.sleep(0)
        yield AIStreamEvent.finished(
            turn.reason,
            tool_calls=turn.tool_calls or None,
            usage=turn.usage,
        )

    async def validate_api_key(self) -> ValidationResult:
        return ValidationResult(success=True)

    def _next(self, mode: str, messages: Sequence[Message], options: ChatOptions | None) -> ScriptedTurn:
        self.calls.append(RecordedCall(mode=mode, messages=list(messages), options=options or ChatOptions()))
        if not self.turns:
            raise AssertionError("Unexpected model call: no scripted turns left")
        return self.turns.pop(0)


def tool_call(name: str, arguments: str = "{}", call_id: str = "call_1") -> ToolCall:
    """Helper to create a structured tool call."""
    return ToolCall(id=call_id, name=name, arguments=arguments)


def event_types(events: Sequence[Any]) -> list[str]:
    return [event.type for event in events]


class RecordingHandler:
    """Tool handler that records its calls and returns a fixed value."""

    def __init__(self, result: Any = None, *, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[dict[str, Any], ToolContext]] = []

    def __call__(self, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        self.calls.append((dict(arguments), context))
        if self.error is not None:
            raise self.error
        return self.result
