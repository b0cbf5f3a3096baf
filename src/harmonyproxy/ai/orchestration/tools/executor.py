"""Tool invocation governor.

The executor sits between the orchestrator and the registry. It parses
and normalizes model-supplied arguments, validates required parameters,
enforces a per-call timeout and a global admission ceiling, and always
answers with a :class:`ToolExecutionResult` instead of raising.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ...ai_types import ToolCall
from .registry import ToolRegistry
from .types import ToolExecutionResult, ToolOutcome

__all__ = [
    "ToolExecutor",
    "ExecutorConfig",
    "ADMISSION_REJECTED",
    "TIMEOUT_ERROR",
    "unwrap_arguments",
]

LOGGER = logging.getLogger(__name__)

ADMISSION_REJECTED = "Maximum concurrent tool executions reached"
TIMEOUT_ERROR = "Tool execution timeout"


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Timeout per tool call in seconds; ``None`` disables it.
        max_concurrent: Admission ceiling for in-flight invocations.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = 30.0
    max_concurrent: int = 5
    log_arguments: bool = False
    log_results: bool = False


def unwrap_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Undo the ``{"args": [{...}]}`` wrapping some client integrations send.

    ``{"args": [{"file": {"path": p}}]}`` becomes ``{"path": p}`` and
    ``{"args": [{...}]}`` becomes the inner object.
    """

    wrapped = arguments.get("args")
    if not isinstance(wrapped, list) or not wrapped:
        return arguments
    first = wrapped[0]
    if not isinstance(first, Mapping):
        return arguments
    file_info = first.get("file")
    if isinstance(file_info, Mapping) and file_info.get("path"):
        return {"path": file_info["path"]}
    return dict(first)


class ToolExecutor:
    """Governed execution of model-requested tool calls.

    Example:
        executor = ToolExecutor(registry, ExecutorConfig(default_timeout=5))
        results = await executor.execute_many(tool_calls)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()
        self._in_flight = 0
        # Timed-out invocations keep running; hold references until they settle.
        self._detached: set[asyncio.Task[ToolOutcome]] = set()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def current_executions(self) -> int:
        return self._in_flight

    @property
    def max_concurrent_executions(self) -> int:
        return self._config.max_concurrent

    async def execute_one(self, call: ToolCall, *, timeout: float | None = None) -> ToolExecutionResult:
        """Run one tool call and return its structured result."""

        start = time.perf_counter()

        def _result(outcome: ToolOutcome) -> ToolExecutionResult:
            return ToolExecutionResult(
                tool_call_id=call.id,
                tool_name=call.name,
                success=outcome.success,
                result=outcome.result,
                error=outcome.error,
                elapsed_ms=(time.perf_counter() - start) * 1000,
            )

        if self._config.log_arguments:
            LOGGER.info("Executing tool call %s (%s) with arguments: %s", call.name, call.id, call.arguments_raw)
        else:
            LOGGER.info("Executing tool call %s (%s)", call.name, call.id)

        if self._in_flight >= self._config.max_concurrent:
            LOGGER.warning("Rejecting tool call %s: %d executions in flight", call.name, self._in_flight)
            return _result(ToolOutcome.failed(ADMISSION_REJECTED))

        self._in_flight += 1
        try:
            arguments, error = self._parse_arguments(call)
            if error is None:
                error = self._registry.validate_arguments(call.name, arguments)
            if error is not None:
                LOGGER.warning("Tool call %s rejected: %s", call.name, error)
                return _result(ToolOutcome.failed(error))

            effective_timeout = timeout if timeout is not None else self._config.default_timeout
            outcome = await self._run(call.name, arguments, effective_timeout)
            result = _result(outcome)
            if result.success:
                if self._config.log_results:
                    LOGGER.info("Tool %s completed in %.1fms: %s", call.name, result.elapsed_ms, result.result)
                else:
                    LOGGER.info("Tool %s completed in %.1fms", call.name, result.elapsed_ms)
            else:
                LOGGER.error("Tool %s failed after %.1fms: %s", call.name, result.elapsed_ms, result.error)
            return result
        finally:
            self._in_flight -= 1

    async def execute_many(
        self,
        calls: Sequence[ToolCall],
        *,
        timeout: float | None = None,
    ) -> list[ToolExecutionResult]:
        """Run ``calls`` concurrently; results keep the order of ``calls``."""

        if not calls:
            return []
        LOGGER.info("Executing %d tool calls: %s", len(calls), [call.name for call in calls])
        results = list(await asyncio.gather(*(self.execute_one(call, timeout=timeout) for call in calls)))
        succeeded = sum(1 for result in results if result.success)
        LOGGER.info(
            "Tool batch completed: total=%d successful=%d failed=%d slowest=%.1fms",
            len(results),
            succeeded,
            len(results) - succeeded,
            max(result.elapsed_ms for result in results),
        )
        return results

    def has_tool(self, name: str) -> bool:
        return self._registry.has(name)

    def list_tools(self) -> list[str]:
        return self._registry.list_names()

    async def _run(self, name: str, arguments: Mapping[str, Any], timeout: float | None) -> ToolOutcome:
        task = asyncio.ensure_future(self._registry.execute(name, arguments))
        if timeout is None or timeout <= 0:
            return await task
        # asyncio.wait stops waiting without cancelling the task.
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()
        LOGGER.warning("Tool %s timed out after %.1fs; leaving it to finish in the background", name, timeout)
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return ToolOutcome.failed(TIMEOUT_ERROR)

    @staticmethod
    def _parse_arguments(call: ToolCall) -> tuple[dict[str, Any], str | None]:
        raw = call.arguments_raw.strip() if call.arguments_raw else ""
        if not raw:
            return {}, None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            return {}, f"Invalid JSON arguments: {exc}"
        if not isinstance(parsed, dict):
            return {}, "Invalid JSON arguments: expected an object"
        return unwrap_arguments(parsed), None
