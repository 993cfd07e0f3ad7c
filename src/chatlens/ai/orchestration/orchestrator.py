"""Agent Orchestrator: the tool-calling loop between the model and the tools.

One execution walks a small state machine::

    init -> awaiting_model -> (executing_tools -> awaiting_model)* -> done

Each model call either ends the execution with a final answer or requests
tools; tool results are appended to the transcript and the model is called
again. After ``max_rounds`` tool rounds the model is asked once more, with
tools withheld, to summarize what it has gathered.

Tool calls are taken from the structured channel when the model reports
``finish_reason == "tool_calls"``; otherwise a tag-based fallback parser
looks for calls written into the reply text.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence, Union

from ..ai_types import (
    AIStreamEvent,
    ChatOptions,
    CompletionClient,
    FinishReason,
    Message,
    StreamEventType,
    TokenUsage,
    ToolCall,
)
from ..client import coerce_messages
from ..errors import TransportError
from ..prompts import build_system_prompt
from ...utils.logging import truncate_for_log
from .tool_call_parser import (
    extract_thinking,
    find_tool_call_marker,
    has_tool_call_marker,
    parse_tag_tool_calls,
    partial_marker_length,
    strip_tool_call_markup,
    try_parse_json_block,
)
from .tools import ToolContext, ToolExecutor, ToolRegistry
from .types import (
    AgentConfig,
    AgentEvent,
    AgentPhase,
    AgentResult,
    AgentState,
    ChatType,
    PromptConfig,
)

__all__ = ["AgentOrchestrator", "AgentRun", "EventCallback"]

LOGGER = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Union[None, Awaitable[None]]]

_CHAT_TYPES = ("group", "private")


class AgentOrchestrator:
    """Drives one user question through the model/tool loop.

    Example:
        orchestrator = AgentOrchestrator(client, registry, ToolContext(session_id="s1"))
        async for event in orchestrator.stream("Who talked the most in May?"):
            ...
    """

    def __init__(
        self,
        client: CompletionClient,
        tools: ToolRegistry,
        context: ToolContext,
        config: AgentConfig | None = None,
        *,
        history: Iterable[Message | Mapping[str, Any]] = (),
        chat_type: ChatType = "group",
        prompt_config: PromptConfig | None = None,
        executor: ToolExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if chat_type not in _CHAT_TYPES:
            raise ValueError(f"chat_type must be one of {_CHAT_TYPES}, got {chat_type!r}")
        prior = list(history)
        self._client = client
        self._tools = tools
        self._context = context
        self._config = config or AgentConfig()
        self._history: tuple[Message, ...] = tuple(coerce_messages(prior)) if prior else ()
        self._chat_type = chat_type
        self._prompt_config = prompt_config
        self._executor = executor or ToolExecutor(tools)
        self._clock = clock or datetime.now
        self._last_run: AgentRun | None = None

    @property
    def client(self) -> CompletionClient:
        return self._client

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def context(self) -> ToolContext:
        return self._context

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def history(self) -> tuple[Message, ...]:
        return self._history

    @property
    def last_run(self) -> AgentRun | None:
        return self._last_run

    def system_prompt(self) -> str:
        return build_system_prompt(
            self._chat_type,
            self._prompt_config,
            tools=self._tools.definitions(),
            now=self._clock(),
        )

    def stream(self, user_text: str) -> AgentRun:
        """Start a streaming execution; iterate the returned run for events.

        Events are produced only as the caller pulls them, so a slow consumer
        slows the model stream instead of buffering it.
        """
        return self._start(user_text, streaming=True)

    async def execute_stream(self, user_text: str, on_event: EventCallback) -> AgentResult:
        """Run a streaming execution, delivering every event to ``on_event``."""

        run = self._start(user_text, streaming=True)
        async with aclosing(run.__aiter__()) as events:
            async for event in events:
                outcome = on_event(event)
                if inspect.isawaitable(outcome):
                    await outcome
        return run.result

    async def execute(self, user_text: str) -> AgentResult:
        """Run a blocking execution and return its result."""

        run = self._start(user_text, streaming=False)
        async with aclosing(run.__aiter__()) as events:
            async for _event in events:
                pass
        return run.result

    def _start(self, user_text: str, *, streaming: bool) -> AgentRun:
        if not isinstance(user_text, str) or not user_text.strip():
            raise ValueError("user_text must be a non-empty string")
        run = AgentRun(self, user_text, streaming=streaming)
        self._last_run = run
        return run


@dataclass(slots=True)
class _RoundOutcome:
    content: str = ""
    tool_calls: tuple[ToolCall, ...] | None = None
    cancelled: bool = False
    error: str | None = None


class _ContentBuffer:
    """Streamed reply text plus how much of it has been released as content.

    Text from the first tool-call marker onwards is withheld until the round
    resolves; a trailing fragment that could still become a marker is held
    back until the next delta decides it.
    """

    def __init__(self, max_withheld: int | None = None) -> None:
        self.text = ""
        self._released = 0
        self._withholding = False
        self._flushed = False
        self._max_withheld = max_withheld

    def feed(self, delta: str) -> str:
        self.text += delta
        if self._withholding:
            if self._max_withheld is not None and len(self.text) - self._released > self._max_withheld:
                LOGGER.debug("Withheld text exceeded %d chars; releasing it", self._max_withheld)
                self._withholding = False
                self._flushed = True
                return self._release(len(self.text))
            return ""
        if self._flushed:
            return self._release(len(self.text))
        marker = find_tool_call_marker(self.text)
        if marker >= 0:
            LOGGER.debug("Tool-call marker seen at offset %d; withholding the rest of the reply", marker)
            self._withholding = True
            return self._release(marker)
        return self._release(len(self.text) - partial_marker_length(self.text))

    def release_all(self) -> str:
        self._withholding = False
        return self._release(len(self.text))

    def _release(self, end: int) -> str:
        if end <= self._released:
            return ""
        chunk = self.text[self._released:end]
        self._released = end
        return chunk


class AgentRun:
    """A single execution of the loop.

    Iterating the run drives the state machine; :attr:`result` is available
    once the terminal ``done`` or ``error`` event has been produced. A run can
    be iterated only once.
    """

    def __init__(self, owner: AgentOrchestrator, user_text: str, *, streaming: bool) -> None:
        self._owner = owner
        self._config = owner.config
        self._user_text = user_text
        self._streaming = streaming
        self._phase = AgentPhase.INIT
        self._transcript: list[Message] = []
        self._tools_used: list[str] = []
        self._rounds = 0
        self._usage: TokenUsage | None = None
        self._thinking: list[str] = []
        self._result: AgentResult | None = None
        self._started = False

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def transcript(self) -> tuple[Message, ...]:
        return tuple(self._transcript)

    @property
    def finished(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> AgentResult:
        if self._result is None:
            raise RuntimeError("Agent run has not finished")
        return self._result

    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        if self._started:
            raise RuntimeError("An agent run can only be iterated once")
        self._started = True
        return self._drive()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _drive(self) -> AsyncIterator[AgentEvent]:
        owner = self._owner
        config = self._config
        LOGGER.info(
            "Agent execution started: %s (history=%d, tools=%d, streaming=%s)",
            truncate_for_log(self._user_text),
            len(owner.history),
            len(owner.tools),
            self._streaming,
        )
        if config.cancelled:
            LOGGER.info("Agent execution cancelled before the first model call")
            yield self._finish(AgentState.ABORTED, "")
            return

        self._transcript = [
            Message.system(owner.system_prompt()),
            *owner.history,
            Message.user(self._user_text),
        ]
        options = config.chat_options(owner.tools.get_openai_tools())

        while self._rounds < config.max_rounds:
            if config.cancelled:
                LOGGER.info("Agent execution cancelled before round %d", self._rounds + 1)
                yield self._finish(AgentState.ABORTED, "")
                return
            round_no = self._rounds + 1
            self._phase = AgentPhase.AWAITING_MODEL
            outcome = _RoundOutcome()
            if self._streaming:
                async for event in self._stream_round(options, outcome, round_no):
                    yield event
            else:
                await self._blocking_round(options, outcome, round_no)

            if outcome.error is not None:
                yield self._fail(outcome.error, round_no)
                return
            if outcome.cancelled:
                yield self._finish(AgentState.ABORTED, outcome.content)
                return
            if not outcome.tool_calls:
                yield self._finish(AgentState.COMPLETED, outcome.content)
                return

            self._phase = AgentPhase.EXECUTING_TOOLS
            async for event in self._run_tools(outcome.tool_calls, round_no):
                yield event
            self._rounds += 1

        LOGGER.warning("Reached the tool round limit (%d); forcing a summary", config.max_rounds)
        async for event in self._summarize(options.without_tools()):
            yield event

    async def _blocking_round(self, options: ChatOptions, outcome: _RoundOutcome, round_no: int) -> None:
        try:
            response = await self._owner.client.chat(self._transcript, options)
        except TransportError as exc:
            outcome.error = f"Model call failed in round {round_no}: {exc}"
            return
        self._record_usage(response.usage)
        if self._config.cancelled:
            LOGGER.info("Agent execution cancelled during round %d", round_no)
            outcome.cancelled = True
            return
        LOGGER.info(
            "Round %d finished: reason=%s, tool_calls=%d, content=%d chars",
            round_no,
            response.finish_reason,
            len(response.tool_calls or ()),
            len(response.content),
        )
        self._resolve(outcome, response.content, response.finish_reason, response.tool_calls)

    async def _stream_round(
        self,
        options: ChatOptions,
        outcome: _RoundOutcome,
        round_no: int,
    ) -> AsyncIterator[AgentEvent]:
        buffer = _ContentBuffer(self._config.max_withheld_chars)
        finished: AIStreamEvent | None = None
        async with aclosing(self._owner.client.chat_stream(self._transcript, options)) as events:
            async for event in events:
                if self._config.cancelled:
                    break
                if event.type == StreamEventType.CONTENT_DELTA and event.content:
                    released = buffer.feed(event.content)
                    if released:
                        yield AgentEvent.content_delta(released)
                elif event.type == StreamEventType.ERROR:
                    outcome.error = f"Model call failed in round {round_no}: {event.error}"
                    return
                elif event.type == StreamEventType.FINISHED:
                    finished = event
                    break

        if finished is not None:
            self._record_usage(finished.usage)
        if self._config.cancelled:
            LOGGER.info("Agent execution cancelled while streaming round %d", round_no)
            outcome.cancelled = True
            outcome.content = extract_thinking(buffer.text)[1]
            return

        reason = finished.finish_reason if finished is not None else FinishReason.STOP
        calls = finished.tool_calls if finished is not None else None
        LOGGER.info(
            "Round %d finished: reason=%s, tool_calls=%d, content=%d chars",
            round_no,
            reason,
            len(calls or ()),
            len(buffer.text),
        )
        self._resolve(outcome, buffer.text, reason or FinishReason.STOP, calls)
        if not outcome.tool_calls:
            remaining = buffer.release_all()
            if remaining:
                yield AgentEvent.content_delta(remaining)

    def _resolve(
        self,
        outcome: _RoundOutcome,
        text: str,
        finish_reason: str,
        structured_calls: Sequence[ToolCall] | None,
    ) -> None:
        """Decide whether a reply is final or requests tools."""

        if finish_reason == FinishReason.TOOL_CALLS and structured_calls:
            outcome.content = text
            outcome.tool_calls = _with_call_ids(structured_calls)
            return

        thinking, remainder = extract_thinking(text)
        if thinking:
            self._thinking.append(thinking)
        if has_tool_call_marker(remainder):
            calls = parse_tag_tool_calls(remainder)
            if calls:
                LOGGER.info("Recovered %d tool call(s) from reply text", len(calls))
                outcome.content = strip_tool_call_markup(remainder)
                outcome.tool_calls = tuple(calls)
                return
            LOGGER.warning("Reply contains a tool-call marker but no parseable call; treating it as final")
        outcome.content = remainder

    async def _run_tools(
        self,
        calls: Sequence[ToolCall],
        round_no: int,
    ) -> AsyncIterator[AgentEvent]:
        owner = self._owner
        for call in calls:
            yield AgentEvent.tool_start(call.name, call.id, self._tool_params(call), round_index=round_no)

        self._transcript.append(Message.assistant("", calls))
        results = await owner.executor.execute_all(calls, owner.context)
        for call, result in zip(calls, results):
            message = result.to_message_content()
            self._tools_used.append(call.name)
            self._transcript.append(Message.tool(message, call.id))
            LOGGER.info(
                "Tool %s finished in round %d (success=%s, %d chars)",
                call.name,
                round_no,
                result.success,
                len(message),
            )
            yield AgentEvent.tool_finished(
                call.name,
                call.id,
                success=result.success,
                result=result.result if result.success else result.error,
                round_index=round_no,
            )

    async def _summarize(self, options: ChatOptions) -> AsyncIterator[AgentEvent]:
        config = self._config
        round_no = self._rounds + 1
        if config.cancelled:
            LOGGER.info("Agent execution cancelled before the forced summary")
            yield self._finish(AgentState.ABORTED, "")
            return
        self._phase = AgentPhase.AWAITING_MODEL
        self._transcript.append(Message.user(config.summary_instruction))

        text = ""
        finished: AIStreamEvent | None = None
        if self._streaming:
            async with aclosing(self._owner.client.chat_stream(self._transcript, options)) as events:
                async for event in events:
                    if config.cancelled:
                        break
                    if event.type == StreamEventType.CONTENT_DELTA and event.content:
                        text += event.content
                        yield AgentEvent.content_delta(event.content)
                    elif event.type == StreamEventType.ERROR:
                        yield self._fail(f"Model call failed in round {round_no}: {event.error}", round_no)
                        return
                    elif event.type == StreamEventType.FINISHED:
                        finished = event
                        break
            if finished is not None:
                self._record_usage(finished.usage)
        else:
            try:
                response = await self._owner.client.chat(self._transcript, options)
            except TransportError as exc:
                yield self._fail(f"Model call failed in round {round_no}: {exc}", round_no)
                return
            self._record_usage(response.usage)
            text = response.content

        thinking, content = extract_thinking(text)
        if config.cancelled:
            LOGGER.info("Agent execution cancelled during the forced summary")
            yield self._finish(AgentState.ABORTED, content)
            return
        if thinking:
            self._thinking.append(thinking)
        yield self._finish(AgentState.FORCED_SUMMARY, content)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _tool_params(self, call: ToolCall) -> dict[str, Any]:
        params: dict[str, Any] = try_parse_json_block(call.arguments) or {}
        time_filter = self._owner.context.time_filter
        registration = self._owner.tools.get(call.name)
        if time_filter is not None and registration is not None and registration.definition.time_scoped:
            params = {**params, "_timeFilter": time_filter.to_dict()}
        return params

    def _record_usage(self, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        self._usage = usage if self._usage is None else self._usage + usage

    def _finish(self, state: str, content: str) -> AgentEvent:
        self._phase = AgentPhase.DONE
        self._result = AgentResult(
            content=content,
            tools_used=list(self._tools_used),
            tool_rounds=self._rounds,
            state=state,
            usage=self._usage,
            thinking="\n".join(self._thinking),
        )
        LOGGER.info(
            "Agent execution finished: state=%s, rounds=%d, tools=%d, content=%d chars",
            state,
            self._rounds,
            len(self._tools_used),
            len(content),
        )
        return AgentEvent.done()

    def _fail(self, message: str, round_no: int) -> AgentEvent:
        self._phase = AgentPhase.DONE
        self._result = AgentResult(
            content="",
            tools_used=list(self._tools_used),
            tool_rounds=self._rounds,
            state=AgentState.ERROR,
            usage=self._usage,
            thinking="\n".join(self._thinking),
            error=message,
        )
        LOGGER.error("Agent execution failed: %s", message)
        return AgentEvent.failure(message, round_index=round_no)


def _with_call_ids(calls: Sequence[ToolCall]) -> tuple[ToolCall, ...]:
    return tuple(
        call if call.id else replace(call, id=f"call_{uuid.uuid4().hex[:12]}")
        for call in calls
    )
