"""Types shared by the agent orchestrator and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from openai.types.chat import ChatCompletionToolParam

from ..ai_types import ChatOptions, TokenUsage
from ..cancellation import CancellationToken
from ..prompts import SUMMARY_INSTRUCTION, ChatType, PromptConfig

__all__ = [
    "AgentConfig",
    "AgentEvent",
    "AgentEventType",
    "AgentPhase",
    "AgentResult",
    "AgentState",
    "ChatType",
    "PromptConfig",
]


class AgentState:
    """How an execution ended."""

    COMPLETED = "completed"
    FORCED_SUMMARY = "forced_summary"
    ABORTED = "aborted"
    ERROR = "error"


class AgentPhase:
    """Where the state machine currently is."""

    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


class AgentEventType:
    CONTENT = "content"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Per-execution settings for :class:`AgentOrchestrator`.

    Attributes:
        max_rounds: Tool rounds allowed before a forced summary.
        temperature: Sampling temperature forwarded to every model call.
        max_tokens: Completion token cap forwarded to every model call.
        cancellation: Token observed at every suspension point.
        max_withheld_chars: When set, text withheld after a tool-call marker
            is released as content once it grows past this many characters.
        summary_instruction: User turn appended for the forced summary.
    """

    max_rounds: int = 5
    temperature: float = 0.7
    max_tokens: int = 2048
    cancellation: CancellationToken | None = None
    max_withheld_chars: int | None = None
    summary_instruction: str = SUMMARY_INSTRUCTION

    def __post_init__(self) -> None:
        if self.max_rounds < 0:
            raise ValueError("max_rounds must be zero or positive")
        if self.max_withheld_chars is not None and self.max_withheld_chars <= 0:
            raise ValueError("max_withheld_chars must be positive when set")

    @property
    def cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.cancelled

    def chat_options(self, tools: Sequence[ChatCompletionToolParam] | None = None) -> ChatOptions:
        return ChatOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=list(tools) if tools else None,
            cancellation=self.cancellation,
        )


@dataclass(slots=True)
class AgentEvent:
    """One item of the orchestrator's event stream.

    ``type`` selects which fields are meaningful:

    * ``content``: ``content``
    * ``tool_start``: ``tool_name``, ``tool_call_id``, ``tool_params``
    * ``tool_result``: ``tool_name``, ``tool_call_id``, ``tool_result``, ``success``
    * ``done`` / ``error``: terminal; ``error`` carries the message
    """

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_call_id: str | None = None
    tool_params: Mapping[str, Any] | None = None
    tool_result: Any = None
    success: bool | None = None
    error: str | None = None
    round_index: int | None = None

    @property
    def is_finished(self) -> bool:
        return self.type in (AgentEventType.DONE, AgentEventType.ERROR)

    @classmethod
    def content_delta(cls, text: str) -> AgentEvent:
        return cls(type=AgentEventType.CONTENT, content=text)

    @classmethod
    def tool_start(
        cls,
        name: str,
        call_id: str,
        params: Mapping[str, Any],
        *,
        round_index: int,
    ) -> AgentEvent:
        return cls(
            type=AgentEventType.TOOL_START,
            tool_name=name,
            tool_call_id=call_id,
            tool_params=params,
            round_index=round_index,
        )

    @classmethod
    def tool_finished(
        cls,
        name: str,
        call_id: str,
        *,
        success: bool,
        result: Any,
        round_index: int,
    ) -> AgentEvent:
        return cls(
            type=AgentEventType.TOOL_RESULT,
            tool_name=name,
            tool_call_id=call_id,
            tool_result=result,
            success=success,
            round_index=round_index,
        )

    @classmethod
    def done(cls) -> AgentEvent:
        return cls(type=AgentEventType.DONE)

    @classmethod
    def failure(cls, message: str, *, round_index: int | None = None) -> AgentEvent:
        return cls(type=AgentEventType.ERROR, error=message, round_index=round_index)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a UI boundary, omitting unset fields."""

        payload: dict[str, Any] = {"type": self.type, "isFinished": self.is_finished}
        if self.content is not None:
            payload["content"] = self.content
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
        if self.tool_call_id is not None:
            payload["toolCallId"] = self.tool_call_id
        if self.tool_params is not None:
            payload["toolParams"] = dict(self.tool_params)
        if self.type == AgentEventType.TOOL_RESULT:
            payload["toolResult"] = self.tool_result
            payload["success"] = self.success
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class AgentResult:
    """Final outcome of one orchestrator execution."""

    content: str
    tools_used: list[str] = field(default_factory=list)
    tool_rounds: int = 0
    state: str = AgentState.COMPLETED
    usage: TokenUsage | None = None
    thinking: str = ""
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.state in (AgentState.COMPLETED, AgentState.FORCED_SUMMARY)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "toolsUsed": list(self.tools_used),
            "toolRounds": self.tool_rounds,
            "state": self.state,
            "usage": self.usage.to_dict() if self.usage else None,
            "thinking": self.thinking,
            "error": self.error,
        }
