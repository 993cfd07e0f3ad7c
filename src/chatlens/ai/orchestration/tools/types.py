"""Tool system types for the agent loop.

This module defines the declarative tool definition, the per-request context
handed to handlers, and the uniform result shape the executor produces.
"""

from __future__ import annotations

import copy
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union

__all__ = [
    "ToolDefinition",
    "TimeFilter",
    "ToolContext",
    "ToolResult",
    "ToolHandler",
    "RegisteredTool",
]


# -----------------------------------------------------------------------------
# Tool Definition
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Declarative description of a tool exposed to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's arguments.
        time_scoped: Whether the tool honours the context's time filter.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    time_scoped: bool = False

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Tool name is required")
        # Detach from the caller's schema so later mutation cannot leak in.
        object.__setattr__(self, "parameters", copy.deepcopy(dict(self.parameters)))

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": copy.deepcopy(dict(self.parameters)) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# -----------------------------------------------------------------------------
# Context
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TimeFilter:
    """Inclusive time window in unix seconds."""

    start_ts: int
    end_ts: int

    def to_dict(self) -> dict[str, int]:
        return {"startTs": self.start_ts, "endTs": self.end_ts}


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Request-scoped data every handler receives alongside its arguments."""

    session_id: str
    time_filter: TimeFilter | None = None
    max_messages_limit: int | None = None


# -----------------------------------------------------------------------------
# Result
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Normalized outcome of one tool call."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, result: Any) -> ToolResult:
        return cls(success=True, result=result)

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    @classmethod
    def from_handler_output(cls, output: Any) -> ToolResult:
        """Accept either a ``{success, result|error}`` envelope or a bare value."""

        if isinstance(output, ToolResult):
            return output
        if isinstance(output, Mapping) and isinstance(output.get("success"), bool):
            if output["success"]:
                return cls.ok(output.get("result"))
            return cls.failure(str(output.get("error") or "Tool reported failure"))
        return cls.ok(output)

    def to_message_content(self) -> str:
        """Serialize for the tool-result turn sent back to the model."""

        if not self.success:
            return f"Error: {self.error}"
        return json.dumps(self.result, ensure_ascii=False, default=str)


# -----------------------------------------------------------------------------
# Handler
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any], ToolContext], Union[Any, Awaitable[Any]]]


@dataclass(slots=True)
class RegisteredTool:
    """A definition bound to the handler that implements it.

    Handlers may be plain functions or coroutines.
    """

    definition: ToolDefinition
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.definition.name

    async def invoke(self, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        result = self.handler(arguments, context)
        if inspect.isawaitable(result):
            return await result
        return result
