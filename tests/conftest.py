"""Shared pytest fixtures."""

from __future__ import annotations

import logging
from typing import Any, Iterator

import pytest

from chatlens.ai.orchestration.tools import ToolContext, ToolDefinition, ToolRegistry
from chatlens.utils import logging as chatlens_logging

from tests.helpers import RecordingHandler

SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "keywords": {"type": "array", "items": {"type": "string"}},
        "year": {"type": "integer"},
        "month": {"type": "integer", "minimum": 1, "maximum": 12},
    },
    "required": ["keywords"],
}


@pytest.fixture
def tool_context() -> ToolContext:
    return ToolContext(session_id="session-1", max_messages_limit=200)


@pytest.fixture
def search_handler() -> RecordingHandler:
    return RecordingHandler([{"sender": "Ann", "text": "hello there"}])


@pytest.fixture
def stats_handler() -> RecordingHandler:
    return RecordingHandler({"members": [{"name": "Ann", "messages": 42}]})


@pytest.fixture
def registry(search_handler: RecordingHandler, stats_handler: RecordingHandler) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolDefinition(
            name="search_messages",
            description="Search chat messages by keyword",
            parameters=SEARCH_SCHEMA,
            time_scoped=True,
        ),
        search_handler,
    )
    registry.register(
        ToolDefinition(
            name="get_member_stats",
            description="Message counts per member",
            parameters={"type": "object", "properties": {"top_n": {"type": "integer"}}},
        ),
        stats_handler,
    )
    return registry


@pytest.fixture
def restore_logging(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Undo the root-logger changes made by ``setup_logging``."""

    monkeypatch.setattr(chatlens_logging, "_CONFIGURED", False)
    monkeypatch.setattr(chatlens_logging, "_LOG_PATH", None)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.captureWarnings(False)
