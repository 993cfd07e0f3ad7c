"""Completion client backed by the official ``openai`` SDK."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import AIStreamEvent, ChatOptions, ChatResponse, FinishReason, Message, ValidationResult
from .client import ClientSettings, _log_prompt_payload, _unless_cancelled, build_chat_payload, coerce_messages
from .errors import TransportError
from .streaming import StreamFrameDecoder, extract_error_message, parse_completion_body

__all__ = ["OpenAIClient"]

LOGGER = logging.getLogger(__name__)


class OpenAIClient:
    """Completion client for api.openai.com and SDK-compatible gateways.

    Retries are handled here with tenacity, so the SDK's own retry loop is
    disabled. Chunks are normalized through the same frame decoder as the
    raw HTTP client, which keeps both adapters' event streams identical.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or self._build_client(settings, http_client)

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

        cancelled, completion = await _unless_cancelled(self._create(payload), options.cancellation)
        if cancelled:
            LOGGER.info("Chat completion cancelled before the response arrived")
            return ChatResponse(content="", finish_reason=FinishReason.STOP)
        return parse_completion_body(completion.model_dump(exclude_none=True))

    async def chat_stream(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream a completion as normalized events; failures become ``error`` events."""

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

        try:
            stream = await self._create(payload)
        except TransportError as exc:
            LOGGER.warning("Streamed chat completion failed to start: %s", exc)
            yield AIStreamEvent.transport_error(str(exc), status_code=exc.status_code)
            return

        decoder = StreamFrameDecoder()
        chunks = stream.__aiter__()
        try:
            while True:
                if token is not None and token.cancelled:
                    LOGGER.info("Streamed chat completion cancelled; closing connection")
                    yield AIStreamEvent.finished(FinishReason.STOP)
                    return
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
                except (APIError, httpx.HTTPError) as exc:
                    LOGGER.warning("Stream interrupted: %s", exc)
                    yield AIStreamEvent.transport_error(f"Stream interrupted: {exc}")
                    return
                for event in decoder.feed_frame(chunk.model_dump(exclude_none=True)):
                    yield event
                if decoder.finished:
                    return
            if not decoder.finished:
                yield decoder.finish()
        finally:
            await stream.close()

    async def validate_api_key(self) -> ValidationResult:
        """List models with the configured key; never raises."""

        try:
            await self._client.models.list()
        except APIStatusError as exc:
            return ValidationResult(success=False, error=_status_error_message(exc))
        except APIError as exc:
            return ValidationResult(success=False, error=str(exc) or exc.__class__.__name__)
        return ValidationResult(success=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def _create(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.chat.completions.create(**payload)
        except APIStatusError as exc:
            raise TransportError(
                f"Completion API error: {exc.status_code} - {_status_error_message(exc)}",
                status_code=exc.status_code,
                detail=_status_error_body(exc),
            ) from exc
        except APIConnectionError as exc:
            raise TransportError(
                f"Completion request to {self._settings.base_url} failed: {exc}",
                detail=str(exc),
            ) from exc
        except APIError as exc:
            raise TransportError(f"Completion request failed: {exc}", detail=str(exc)) from exc
        raise TransportError("Completion request was not attempted")

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIConnectionError,
                    RateLimitError,
                    InternalServerError,
                )
            ),
        )

    @staticmethod
    def _build_client(settings: ClientSettings, http_client: httpx.AsyncClient | None) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
            http_client=http_client,
        )


def _status_error_body(exc: APIStatusError) -> str:
    body = exc.body
    if body is None:
        return exc.message
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(body)


def _status_error_message(exc: APIStatusError) -> str:
    body = exc.body
    if isinstance(body, Mapping):
        # The SDK hands over the ``error`` object itself for most providers.
        message = body.get("message")
        if isinstance(message, str) and message:
            return message
    return extract_error_message(_status_error_body(exc), exc.status_code)
