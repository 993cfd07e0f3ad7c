"""Tool registry for the agent loop.

Maps a tool name to its definition and handler. Registration is idempotent
by name: registering the same name again replaces the previous entry.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Sequence

from .types import RegisteredTool, ToolDefinition, ToolHandler

__all__ = ["ToolRegistry"]

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Registry for managing tool registrations.

    Example:
        registry = ToolRegistry()
        registry.register(
            ToolDefinition(name="search_messages", description="Search chat history"),
            handler=search_messages,
        )
        tools = registry.get_openai_tools()
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> RegisteredTool:
        """Register ``handler`` under ``definition.name``; the last registration wins."""

        if not callable(handler):
            raise TypeError(f"Handler for tool '{definition.name}' must be callable")
        registration = RegisteredTool(definition=definition, handler=handler)
        if definition.name in self._tools:
            LOGGER.debug("Replacing tool: %s", definition.name)
        else:
            LOGGER.debug("Registered tool: %s", definition.name)
        self._tools[definition.name] = registration
        return registration

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def definitions(self) -> list[ToolDefinition]:
        """List definitions in registration order."""
        return [registration.definition for registration in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def get_openai_tools(
        self,
        *,
        filter_names: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI format.

        Args:
            filter_names: If provided, only include these tools.

        Returns:
            List of tool definitions for the completion API.
        """
        tools: list[dict[str, Any]] = []
        for registration in self._tools.values():
            if filter_names is not None and registration.name not in filter_names:
                continue
            tools.append(registration.definition.to_openai_tool())
        return tools

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[RegisteredTool]:
        return iter(list(self._tools.values()))
