"""Tool system for the agent loop.

This package provides the tool registry, executor, and related types
for declaring and running the data tools the model may call.

Example:
    from chatlens.ai.orchestration.tools import (
        ToolContext,
        ToolDefinition,
        ToolExecutor,
        ToolRegistry,
    )

    registry = ToolRegistry()
    registry.register(
        ToolDefinition(name="greet", description="Greet someone"),
        handler=lambda args, context: f"Hello, {args.get('name', 'World')}!",
    )

    executor = ToolExecutor(registry)
    results = await executor.execute_all(calls, ToolContext(session_id="s1"))
"""

from .types import (
    RegisteredTool,
    TimeFilter,
    ToolContext,
    ToolDefinition,
    ToolHandler,
    ToolResult,
)

from .registry import ToolRegistry

from .executor import (
    ExecutorConfig,
    ToolExecutor,
)

__all__ = [
    # types.py
    "RegisteredTool",
    "TimeFilter",
    "ToolContext",
    "ToolDefinition",
    "ToolHandler",
    "ToolResult",
    # registry.py
    "ToolRegistry",
    # executor.py
    "ExecutorConfig",
    "ToolExecutor",
]
