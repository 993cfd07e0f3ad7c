"""Error taxonomy shared by the completion clients and the agent loop."""

from __future__ import annotations

__all__ = [
    "ChatLensError",
    "TransportError",
    "ToolArgumentsError",
]


class ChatLensError(Exception):
    """Base class for errors raised by the ChatLens runtime."""


class TransportError(ChatLensError):
    """Raised when the completion endpoint cannot be reached or answers with a failure.

    Attributes:
        status_code: HTTP status reported by the server, if any.
        detail: Raw server body or underlying exception text.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str = "",
    ) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class ToolArgumentsError(ChatLensError):
    """Raised when a tool call's arguments text cannot be used as tool input."""

    def __init__(self, message: str, *, tool_name: str = "") -> None:
        self.tool_name = tool_name
        super().__init__(message)
