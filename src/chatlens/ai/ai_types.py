"""Shared typing contracts for the completion clients and the agent loop."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Literal, Mapping, Protocol, Sequence, get_args, runtime_checkable

from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

from .cancellation import CancellationToken

__all__ = [
    "MessageRole",
    "FinishReason",
    "StreamEventType",
    "ToolCall",
    "Message",
    "TokenUsage",
    "ChatOptions",
    "ChatResponse",
    "AIStreamEvent",
    "ValidationResult",
    "CompletionClient",
]

MessageRole = Literal["system", "user", "assistant", "tool"]
_MESSAGE_ROLES: frozenset[str] = frozenset(get_args(MessageRole))


class FinishReason:
    """Normalized terminal conditions reported for one completion."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"

    ALL: tuple[str, ...] = (STOP, LENGTH, TOOL_CALLS, ERROR)

    @classmethod
    def normalize(cls, raw: Any) -> str:
        """Map a provider-reported finish reason onto the normalized set."""

        value = str(raw or "").strip().lower()
        if value in (cls.STOP, cls.LENGTH, cls.TOOL_CALLS):
            return value
        return cls.ERROR


class StreamEventType:
    """Discriminators for :class:`AIStreamEvent`."""

    CONTENT_DELTA = "content.delta"
    TOOL_CALL_DELTA = "tool_call.delta"
    FINISHED = "finished"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A model-issued request to invoke a named tool.

    ``arguments`` is kept as opaque text; it is parsed and validated by the
    executor right before the handler runs.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_param(cls, payload: Mapping[str, Any]) -> ToolCall:
        function = payload.get("function") or {}
        arguments = function.get("arguments")
        return cls(
            id=str(payload.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments if isinstance(arguments, str) else "{}",
        )


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message appended to a conversation transcript.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        tool_calls: Tool calls made by the assistant (assistant only).
        tool_call_id: ID linking a tool result to its call (tool only).
    """

    role: MessageRole
    content: str
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in _MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")
        if self.tool_calls is not None and self.role != "assistant":
            raise ValueError("tool_calls are only allowed on assistant messages")
        if self.tool_call_id is not None and self.role != "tool":
            raise ValueError("tool_call_id is only allowed on tool messages")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to the OpenAI chat message wire shape."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        raw_calls = param.get("tool_calls")
        tool_calls = tuple(ToolCall.from_chat_param(item) for item in raw_calls) if raw_calls else None
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=str(param.get("content") or ""),
            tool_calls=tool_calls,
            tool_call_id=param.get("tool_call_id"),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Sequence[ToolCall] | None = None) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token accounting reported by the completion service."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_payload(cls, payload: Any) -> TokenUsage | None:
        if not isinstance(payload, Mapping):
            return None
        prompt = _as_int(payload.get("prompt_tokens"))
        completion = _as_int(payload.get("completion_tokens"))
        total = _as_int(payload.get("total_tokens")) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class ChatOptions:
    """Per-call sampling options, tool definitions and cancellation token."""

    temperature: float = 0.7
    max_tokens: int = 2048
    tools: Sequence[ChatCompletionToolParam] | None = None
    cancellation: CancellationToken | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.cancelled

    def without_tools(self) -> ChatOptions:
        return replace(self, tools=None)

    def with_tools(self, tools: Sequence[ChatCompletionToolParam] | None) -> ChatOptions:
        return replace(self, tools=list(tools) if tools else None)


@dataclass(slots=True)
class ChatResponse:
    """Provider-independent result of a blocking completion."""

    content: str
    finish_reason: str = FinishReason.STOP
    tool_calls: tuple[ToolCall, ...] | None = None
    usage: TokenUsage | None = None


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming output.

    ``type`` selects which fields are meaningful:

    * ``content.delta``: ``content``
    * ``tool_call.delta``: ``tool_index``, ``tool_call_id``, ``tool_name``, ``arguments_delta``
    * ``finished``: ``finish_reason``, ``tool_calls``, ``usage``
    * ``error``: ``error``, ``status_code``
    """

    type: str
    content: str | None = None
    tool_index: int | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    usage: TokenUsage | None = None
    error: str | None = None
    status_code: int | None = None

    @classmethod
    def content_delta(cls, text: str) -> AIStreamEvent:
        return cls(type=StreamEventType.CONTENT_DELTA, content=text)

    @classmethod
    def finished(
        cls,
        finish_reason: str,
        *,
        tool_calls: Sequence[ToolCall] | None = None,
        usage: TokenUsage | None = None,
    ) -> AIStreamEvent:
        return cls(
            type=StreamEventType.FINISHED,
            finish_reason=finish_reason,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            usage=usage,
        )

    @classmethod
    def transport_error(cls, message: str, *, status_code: int | None = None) -> AIStreamEvent:
        return cls(type=StreamEventType.ERROR, error=message, status_code=status_code)


@dataclass(slots=True, frozen=True)
class ValidationResult:
    """Outcome of an API-key check."""

    success: bool
    error: str | None = None


@runtime_checkable
class CompletionClient(Protocol):
    """Capability set every provider adapter implements.

    The agent loop depends only on this protocol, never on a provider's
    wire shape.
    """

    async def chat(
        self,
        messages: Sequence[Message],
        options: ChatOptions | None = None,
    ) -> ChatResponse:
        ...

    def chat_stream(
        self,
        messages: Sequence[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        ...

    async def validate_api_key(self) -> ValidationResult:
        ...


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
