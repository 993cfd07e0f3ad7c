"""Structured logging helpers for the ChatLens agent runtime."""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

__all__ = [
    "RequestContextFilter",
    "current_request_id",
    "get_log_path",
    "get_logger",
    "request_context",
    "setup_logging",
    "truncate_for_log",
]

_DEFAULT_LOG_DIR = Path.home() / ".chatlens" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s"

# Id of the agent request the current task is serving; propagates across awaits.
_REQUEST_ID: ContextVar[str] = ContextVar("chatlens_request_id", default="-")


class RequestContextFilter(logging.Filter):
    """Stamp each record with the id of the request that produced it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _REQUEST_ID.get()  # type: ignore[attr-defined]
        return True


@contextmanager
def request_context(request_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``request_id``."""

    token = _REQUEST_ID.set(request_id)
    try:
        yield
    finally:
        _REQUEST_ID.reset(token)


def current_request_id() -> str:
    """Return the request id bound to the running task, or ``"-"``."""

    return _REQUEST_ID.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with rotating file + optional console handlers."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "chatlens.log"

    handlers = _build_handlers(log_path, level, console=console, max_bytes=max_bytes, backup_count=backup_count)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    """Return a module-specific logger."""

    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def truncate_for_log(text: str | None, limit: int = 100) -> str:
    """Clip user-provided text so log lines stay readable."""

    if not text:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}…"


def _build_handlers(
    log_path: Path,
    level: int,
    *,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    request_filter = RequestContextFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(request_filter)
    return handlers


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("CHATLENS_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
