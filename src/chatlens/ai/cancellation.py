"""Cooperative cancellation primitives and the per-request registry."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable

__all__ = [
    "AbortResult",
    "CancellationToken",
    "RequestRegistry",
]

LOGGER = logging.getLogger(__name__)

CancelCallback = Callable[[], None]


class CancellationToken:
    """Thread-safe cancellation flag polled at every suspension point.

    Callbacks registered through :meth:`add_callback` run once when the token
    is cancelled; clients use them to drop in-flight connections.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[CancelCallback] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Trigger the token. Returns ``False`` when it was already cancelled."""

        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove
        self._run_callback(callback)
        return lambda: None

    async def wait(self, poll_interval: float = 0.05) -> None:
        """Suspend until the token is cancelled."""

        while not self._event.is_set():
            await asyncio.sleep(poll_interval)

    @staticmethod
    def _run_callback(callback: CancelCallback) -> None:
        try:
            callback()
        except Exception:  # pragma: no cover - callbacks must not break cancellation
            LOGGER.debug("Cancellation callback failed", exc_info=True)


@dataclass(slots=True, frozen=True)
class AbortResult:
    """Outcome of an abort request."""

    success: bool
    error: str | None = None


class RequestRegistry:
    """Concurrent map of request id to :class:`CancellationToken`.

    Owned by the service boundary so external callers can cancel a request
    they hold no other reference to.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def register(self, request_id: str, token: CancellationToken | None = None) -> CancellationToken:
        if not request_id:
            raise ValueError("request_id is required")
        with self._lock:
            if request_id in self._tokens:
                raise ValueError(f"Request '{request_id}' is already active")
            registered = token or CancellationToken()
            self._tokens[request_id] = registered
        LOGGER.debug("Registered request %s", request_id)
        return registered

    def get(self, request_id: str) -> CancellationToken | None:
        with self._lock:
            return self._tokens.get(request_id)

    def remove(self, request_id: str) -> CancellationToken | None:
        with self._lock:
            return self._tokens.pop(request_id, None)

    def abort(self, request_id: str) -> AbortResult:
        """Cancel and forget ``request_id``; unknown ids report failure."""

        token = self.remove(request_id)
        if token is None:
            LOGGER.warning("Abort requested for unknown request %s", request_id)
            return AbortResult(success=False, error=f"Request '{request_id}' not found")
        token.cancel()
        LOGGER.info("Aborted request %s", request_id)
        return AbortResult(success=True)

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._tokens)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._tokens
