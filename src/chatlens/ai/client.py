"""Async completion client for OpenAI-compatible HTTP endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Dict, Iterable, Mapping, Sequence, TypeVar

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .ai_types import (
    AIStreamEvent,
    ChatOptions,
    ChatResponse,
    FinishReason,
    Message,
    ValidationResult,
)
from .cancellation import CancellationToken
from .errors import TransportError
from .streaming import StreamFrameDecoder, extract_error_message, parse_completion_body

__all__ = ["AIClient", "ClientSettings", "build_chat_payload", "coerce_messages"]

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")
_RETRYABLE_STATUS_CODES = frozenset({408, 409, 429})


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a completion client."""

    base_url: str
    api_key: str
    model: str
    provider: str = "openai-compatible"
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    include_stream_usage: bool = True
    debug_logging: bool = False


class _StatusFailure(Exception):
    """Non-2xx answer captured inside the retry loop."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}")

    @property
    def retryable(self) -> bool:
        return self.status_code in _RETRYABLE_STATUS_CODES or self.status_code >= 500


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, _StatusFailure):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, httpx.TimeoutException))


class AIClient:
    """Completion client speaking the OpenAI-compatible wire protocol over httpx.

    Works against any endpoint that accepts ``POST {base_url}/chat/completions``
    with a bearer token (DeepSeek, Qwen compatible mode, local gateways).
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._owns_http = http_client is None
        self._http = http_client or self._build_http_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def chat(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        options: ChatOptions | None = None,
    ) -> ChatResponse:
        """Run a blocking completion.

        Raises:
            TransportError: On network failures, non-2xx answers or malformed bodies.
        """

        options = options or ChatOptions()
        if options.cancelled:
            return ChatResponse(content="", finish_reason=FinishReason.STOP)

        payload = build_chat_payload(
            self._settings.model, coerce_messages(messages), options, stream=False
        )
        LOGGER.debug(
            "Starting chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            _log_prompt_payload(payload)

        request = self._http.build_request(
            "POST", self._completions_url(), json=payload, headers=self._headers()
        )
        cancelled, data = await _unless_cancelled(self._fetch_json(request), options.cancellation)
        if cancelled:
            LOGGER.info("Chat completion cancelled before the response arrived")
            return ChatResponse(content="", finish_reason=FinishReason.STOP)
        return parse_completion_body(data)

    async def chat_stream(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream a completion as normalized events.

        Transport failures are yielded as a single ``error`` event rather than
        raised. Cancellation yields ``finished(stop)``.
        """

        options = options or ChatOptions()
        token = options.cancellation
        if options.cancelled:
            yield AIStreamEvent.finished(FinishReason.STOP)
            return

        payload = build_chat_payload(
            self._settings.model,
            coerce_messages(messages),
            options,
            stream=True,
            include_usage=self._settings.include_stream_usage,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            _log_prompt_payload(payload)

        request = self._http.build_request(
            "POST", self._completions_url(), json=payload, headers=self._headers()
        )
        try:
            response = await self._send(request, stream=True)
        except TransportError as exc:
            LOGGER.warning("Streamed chat completion failed to start: %s", exc)
            yield AIStreamEvent.transport_error(str(exc), status_code=exc.status_code)
            return

        decoder = StreamFrameDecoder()
        lines = response.aiter_lines()
        try:
            while True:
                if token is not None and token.cancelled:
                    LOGGER.info("Streamed chat completion cancelled; closing connection")
                    yield AIStreamEvent.finished(FinishReason.STOP)
                    return
                try:
                    line = await lines.__anext__()
                except StopAsyncIteration:
                    break
                except httpx.HTTPError as exc:
                    LOGGER.warning("Stream interrupted: %s", exc)
                    yield AIStreamEvent.transport_error(f"Stream interrupted: {exc}")
                    return
                for event in decoder.feed_line(line):
                    yield event
                if decoder.finished:
                    return
            if not decoder.finished:
                yield decoder.finish()
        finally:
            await response.aclose()

    async def validate_api_key(self) -> ValidationResult:
        """Query the models endpoint with the configured key; never raises."""

        url = f"{self._base_url()}/models"
        try:
            response = await self._http.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            return ValidationResult(success=False, error=str(exc) or exc.__class__.__name__)
        if response.is_success:
            return ValidationResult(success=True)
        return ValidationResult(
            success=False,
            error=extract_error_message(response.text, response.status_code),
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client when this instance created it."""

        if self._owns_http:
            await self._http.aclose()

    async def _fetch_json(self, request: httpx.Request) -> Any:
        response = await self._send(request, stream=False)
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(
                "Completion endpoint returned a non-JSON body",
                status_code=response.status_code,
                detail=response.text[:200],
            ) from exc

    async def _send(self, request: httpx.Request, *, stream: bool) -> httpx.Response:
        """Send ``request`` with retries; returns a 2xx response or raises TransportError."""

        response: httpx.Response | None = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    candidate = await self._http.send(request, stream=stream)
                    if not candidate.is_success:
                        body = await candidate.aread()
                        await candidate.aclose()
                        raise _StatusFailure(
                            candidate.status_code, body.decode("utf-8", errors="replace")
                        )
                    response = candidate
        except _StatusFailure as exc:
            raise TransportError(
                f"Completion API error: {exc.status_code} - {exc.detail}",
                status_code=exc.status_code,
                detail=exc.detail,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Completion request to {request.url} failed: {exc}",
                detail=str(exc),
            ) from exc
        assert response is not None
        return response

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
        )

    def _build_http_client(self, settings: ClientSettings) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.request_timeout)

    def _base_url(self) -> str:
        return self._settings.base_url.rstrip("/")

    def _completions_url(self) -> str:
        return f"{self._base_url()}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._settings.api_key}",
        }
        if self._settings.organization:
            headers["OpenAI-Organization"] = self._settings.organization
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        return headers


def coerce_messages(messages: Iterable[Message | Mapping[str, Any]]) -> list[Message]:
    normalized: list[Message] = []
    for message in messages:
        if isinstance(message, Message):
            normalized.append(message)
        elif isinstance(message, Mapping):
            normalized.append(Message.from_chat_param(message))
        else:
            raise TypeError("Messages must be Message instances or mapping-like objects")
    if not normalized:
        raise ValueError("At least one message is required to start a chat")
    return normalized


def build_chat_payload(
    model: str,
    messages: Sequence[Message],
    options: ChatOptions,
    *,
    stream: bool,
    include_usage: bool = False,
) -> Dict[str, Any]:
    """Build the provider request body shared by every OpenAI-style adapter."""

    payload: Dict[str, Any] = {
        "model": model,
        "messages": [message.to_chat_param() for message in messages],
        "temperature": options.temperature,
        "max_tokens": options.max_tokens,
        "stream": stream,
    }
    if stream and include_usage:
        payload["stream_options"] = {"include_usage": True}
    if options.tools:
        payload["tools"] = list(options.tools)
    return payload


async def _unless_cancelled(
    awaitable: Awaitable[_T],
    token: CancellationToken | None,
) -> tuple[bool, _T | None]:
    """Await ``awaitable`` unless ``token`` fires first.

    Returns ``(True, None)`` when cancelled; the pending request is cancelled
    so its connection is released.
    """

    task = asyncio.ensure_future(awaitable)
    if token is None:
        return False, await task
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return False, task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        LOGGER.debug("Request failed while being cancelled", exc_info=True)
    return True, None


def _log_prompt_payload(payload: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        LOGGER.debug("AI prompt payload (unserializable): %s", payload)
    else:
        LOGGER.debug("AI prompt payload:\n%s", serialized)
