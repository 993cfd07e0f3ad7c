"""Tool executor for the agent loop.

Runs the tool calls of one round and normalizes every outcome into a
:class:`ToolResult`. A failing call never aborts the batch: unknown tools,
unparseable or schema-violating arguments, handler exceptions and timeouts
all become per-call failure results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

from jsonschema import Draft7Validator

from ...ai_types import ToolCall
from ...errors import ToolArgumentsError
from .registry import ToolRegistry
from .types import ToolContext, ToolDefinition, ToolResult

__all__ = [
    "ExecutorConfig",
    "ToolExecutor",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Executor Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Per-call timeout in seconds; ``None`` disables it.
        parallel: Whether calls of one round run concurrently.
        validate_arguments: Whether arguments are checked against the tool's JSON schema.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = None
    parallel: bool = True
    validate_arguments: bool = True
    log_arguments: bool = False
    log_results: bool = False


# -----------------------------------------------------------------------------
# Tool Executor
# -----------------------------------------------------------------------------


class ToolExecutor:
    """Executor for running tool calls against a registry.

    Example:
        executor = ToolExecutor(registry)
        results = await executor.execute_all(calls, context)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        context: ToolContext,
    ) -> list[ToolResult]:
        """Execute ``calls`` and return one result per call, in input order."""

        if not calls:
            return []
        if self._config.parallel:
            return list(await asyncio.gather(*(self.execute(call, context) for call in calls)))
        results: list[ToolResult] = []
        for call in calls:
            results.append(await self.execute(call, context))
        return results

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        """Execute a single call; failures are returned, not raised."""

        name = call.name
        if self._config.log_arguments:
            LOGGER.debug(
                "Executing tool %s (call_id=%s) with arguments: %s",
                name,
                call.id,
                call.arguments,
            )
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, call.id)

        tool = self._registry.get(name)
        if tool is None:
            LOGGER.warning("Tool '%s' is not registered", name)
            return ToolResult.failure(f"Unknown tool '{name}'")

        try:
            arguments = self.parse_arguments(call, tool.definition)
        except ToolArgumentsError as exc:
            LOGGER.warning("Rejected arguments for tool %s: %s", name, exc)
            return ToolResult.failure(str(exc))

        timeout = self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if timeout is not None and timeout > 0:
                output = await asyncio.wait_for(tool.invoke(arguments, context), timeout=timeout)
            else:
                output = await tool.invoke(arguments, context)
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s timed out after %.1fms", name, duration_ms)
            return ToolResult.failure(f"Tool '{name}' timed out after {timeout}s")
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            return ToolResult.failure(str(exc) or exc.__class__.__name__)

        duration_ms = (time.perf_counter() - start_time) * 1000
        result = ToolResult.from_handler_output(output)
        if self._config.log_results:
            LOGGER.debug("Tool %s completed in %.1fms with result: %s", name, duration_ms, result)
        else:
            LOGGER.debug("Tool %s completed in %.1fms (success=%s)", name, duration_ms, result.success)
        return result

    def parse_arguments(self, call: ToolCall, definition: ToolDefinition) -> dict[str, Any]:
        """Parse ``call.arguments`` as a JSON object and validate it.

        Raises:
            ToolArgumentsError: If the text is not a JSON object or violates the schema.
        """

        text = (call.arguments or "").strip() or "{}"
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ToolArgumentsError(
                f"Invalid JSON arguments for tool '{call.name}': {exc.msg}",
                tool_name=call.name,
            ) from exc
        if not isinstance(parsed, dict):
            raise ToolArgumentsError(
                f"Arguments for tool '{call.name}' must be a JSON object",
                tool_name=call.name,
            )
        if self._config.validate_arguments and definition.parameters:
            errors = sorted(
                Draft7Validator(definition.parameters).iter_errors(parsed),
                key=lambda error: list(error.absolute_path),
            )
            if errors:
                first = errors[0]
                location = ".".join(str(part) for part in first.absolute_path) or "<root>"
                raise ToolArgumentsError(
                    f"Arguments for tool '{call.name}' are invalid at {location}: {first.message}",
                    tool_name=call.name,
                )
        return parsed
