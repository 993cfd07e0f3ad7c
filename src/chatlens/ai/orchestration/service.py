"""Service boundary that runs agent executions under request ids.

Every execution gets its own :class:`CancellationToken`, registered under the
caller's request id so that a later :meth:`AgentService.abort` can reach it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping

from ..ai_types import CompletionClient, Message
from ..cancellation import AbortResult, CancellationToken, RequestRegistry
from .orchestrator import AgentOrchestrator, EventCallback
from .tools import ExecutorConfig, ToolContext, ToolExecutor, ToolRegistry
from .types import AgentConfig, AgentEvent, AgentResult, ChatType, PromptConfig
from ...utils.logging import request_context

__all__ = ["AgentService"]

LOGGER = logging.getLogger(__name__)


class AgentService:
    """Runs orchestrator executions and lets callers abort them by id.

    Events of an aborted request are dropped rather than delivered, and the
    request id is released as soon as its execution ends.
    """

    def __init__(
        self,
        client: CompletionClient,
        tools: ToolRegistry,
        *,
        requests: RequestRegistry | None = None,
        config: AgentConfig | None = None,
        executor_config: ExecutorConfig | None = None,
    ) -> None:
        self._client = client
        self._tools = tools
        self._requests = requests or RequestRegistry()
        self._config = config or AgentConfig()
        self._executor = ToolExecutor(tools, executor_config)

    @property
    def requests(self) -> RequestRegistry:
        return self._requests

    async def run(
        self,
        request_id: str,
        user_text: str,
        context: ToolContext,
        *,
        on_event: EventCallback | None = None,
        history: Iterable[Message | Mapping[str, Any]] = (),
        chat_type: ChatType = "group",
        prompt_config: PromptConfig | None = None,
    ) -> AgentResult:
        """Run one execution to completion under ``request_id``.

        Raises:
            ValueError: If ``request_id`` is empty or already active.
        """

        token = self._requests.register(request_id)
        return await self._run_registered(
            request_id,
            token,
            user_text,
            context,
            on_event=on_event,
            history=history,
            chat_type=chat_type,
            prompt_config=prompt_config,
        )

    def start_stream(
        self,
        request_id: str,
        user_text: str,
        context: ToolContext,
        *,
        on_event: EventCallback | None = None,
        history: Iterable[Message | Mapping[str, Any]] = (),
        chat_type: ChatType = "group",
        prompt_config: PromptConfig | None = None,
    ) -> asyncio.Task[AgentResult]:
        """Schedule an execution and return its task.

        The request id is registered before this returns, so it can be
        aborted immediately. Must be called from a running event loop.
        """

        token = self._requests.register(request_id)
        coroutine = self._run_registered(
            request_id,
            token,
            user_text,
            context,
            on_event=on_event,
            history=history,
            chat_type=chat_type,
            prompt_config=prompt_config,
        )
        try:
            return asyncio.get_running_loop().create_task(coroutine, name=f"agent:{request_id}")
        except RuntimeError:
            coroutine.close()
            self._requests.remove(request_id)
            raise

    def abort(self, request_id: str) -> AbortResult:
        """Cancel the execution registered under ``request_id``."""

        return self._requests.abort(request_id)

    async def _run_registered(
        self,
        request_id: str,
        token: CancellationToken,
        user_text: str,
        context: ToolContext,
        *,
        on_event: EventCallback | None,
        history: Iterable[Message | Mapping[str, Any]],
        chat_type: ChatType,
        prompt_config: PromptConfig | None,
    ) -> AgentResult:
        with request_context(request_id):
            LOGGER.info("Starting agent request %s (session=%s)", request_id, context.session_id)
            try:
                orchestrator = AgentOrchestrator(
                    self._client,
                    self._tools,
                    context,
                    replace(self._config, cancellation=token),
                    history=history,
                    chat_type=chat_type,
                    prompt_config=prompt_config,
                    executor=self._executor,
                )

                async def deliver(event: AgentEvent) -> None:
                    if token.cancelled or on_event is None:
                        return
                    outcome = on_event(event)
                    if inspect.isawaitable(outcome):
                        await outcome

                result = await orchestrator.execute_stream(user_text, deliver)
                LOGGER.info("Agent request %s ended with state %s", request_id, result.state)
                return result
            finally:
                if self._requests.get(request_id) is token:
                    self._requests.remove(request_id)
