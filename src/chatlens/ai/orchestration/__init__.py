"""Agent orchestration: the model/tool loop and its service boundary."""

from .types import (
    AgentConfig,
    AgentEvent,
    AgentEventType,
    AgentPhase,
    AgentResult,
    AgentState,
    ChatType,
    PromptConfig,
)

from .orchestrator import (
    AgentOrchestrator,
    AgentRun,
    EventCallback,
)

from .service import AgentService

# Fallback parsing for replies that carry tool calls as text
from .tool_call_parser import (
    extract_thinking,
    has_tool_call_marker,
    parse_tag_tool_calls,
)

__all__ = [
    # types.py
    "AgentConfig",
    "AgentEvent",
    "AgentEventType",
    "AgentPhase",
    "AgentResult",
    "AgentState",
    "ChatType",
    "PromptConfig",
    # orchestrator.py
    "AgentOrchestrator",
    "AgentRun",
    "EventCallback",
    # service.py
    "AgentService",
    # tool_call_parser.py
    "extract_thinking",
    "has_tool_call_marker",
    "parse_tag_tool_calls",
]
