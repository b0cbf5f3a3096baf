"""Tests for orchestration/tools/executor.py."""

from __future__ import annotations

import asyncio
import json

import pytest

from harmonyproxy.ai.ai_types import ToolCall
from harmonyproxy.ai.orchestration.tools import (
    ADMISSION_REJECTED,
    TIMEOUT_ERROR,
    ExecutorConfig,
    ToolExecutor,
    ToolRegistry,
    ToolSpec,
    unwrap_arguments,
)


def make_spec(name: str, required: tuple[str, ...] = ()) -> ToolSpec:
    return ToolSpec(
        name=name,
        description=name,
        parameters={"type": "object", "properties": {}, "required": list(required)},
    )


def call(name: str, arguments: dict | str = "{}", call_id: str | None = None) -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments_raw=raw)


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(make_spec("echo"), lambda args: {"echo": args.get("message", "")})
    registry.register_function(make_spec("read", ("path",)), lambda args: f"read {args['path']}")

    async def sleepy(args):
        await asyncio.sleep(args.get("delay", 0))
        return args.get("label", "done")

    registry.register_function(make_spec("sleepy"), sleepy)
    return registry


class TestUnwrapArguments:
    def test_file_path_wrapper(self) -> None:
        assert unwrap_arguments({"args": [{"file": {"path": "src/a.py"}}]}) == {"path": "src/a.py"}

    def test_plain_wrapper(self) -> None:
        assert unwrap_arguments({"args": [{"query": "x", "limit": 2}]}) == {"query": "x", "limit": 2}

    def test_unwrapped_arguments_are_untouched(self) -> None:
        arguments = {"args": "not a list", "other": 1}

        assert unwrap_arguments(arguments) is arguments
        assert unwrap_arguments({"args": []}) == {"args": []}


class TestExecuteOne:
    @pytest.mark.asyncio
    async def test_success(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("echo", {"message": "hi"}, "call_1"))

        assert result.success
        assert result.tool_call_id == "call_1"
        assert result.tool_name == "echo"
        assert result.result == {"echo": "hi"}
        assert result.elapsed_ms >= 0

    @pytest.mark.asyncio
    async def test_wrapped_arguments_reach_the_tool_unwrapped(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("read", {"args": [{"file": {"path": "a.txt"}}]}))

        assert result.success
        assert result.result == "read a.txt"

    @pytest.mark.asyncio
    async def test_invalid_json_arguments_fail(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("echo", "{not json"))

        assert not result.success
        assert result.error.startswith("Invalid JSON arguments")

    @pytest.mark.asyncio
    async def test_non_object_arguments_fail(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("echo", "[1, 2]"))

        assert result.error == "Invalid JSON arguments: expected an object"

    @pytest.mark.asyncio
    async def test_empty_arguments_are_an_empty_object(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("echo", ""))

        assert result.success
        assert result.result == {"echo": ""}

    @pytest.mark.asyncio
    async def test_missing_required_parameter(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("read", {}))

        assert result.error == "Missing required parameter: path"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry: ToolRegistry) -> None:
        result = await ToolExecutor(registry).execute_one(call("ghost"))

        assert result.error == "Tool 'ghost' not found"

    @pytest.mark.asyncio
    async def test_timeout_does_not_cancel_the_tool(self) -> None:
        finished = asyncio.Event()

        async def slow(args):
            await asyncio.sleep(0.05)
            finished.set()
            return "late"

        registry = ToolRegistry()
        registry.register_function(make_spec("slow"), slow)
        executor = ToolExecutor(registry, ExecutorConfig(default_timeout=0.01))

        result = await executor.execute_one(call("slow"))

        assert not result.success
        assert result.error == TIMEOUT_ERROR
        assert executor.current_executions == 0
        await asyncio.wait_for(finished.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_explicit_timeout_overrides_default(self, registry: ToolRegistry) -> None:
        executor = ToolExecutor(registry, ExecutorConfig(default_timeout=0.001))

        result = await executor.execute_one(call("sleepy", {"delay": 0.01}), timeout=1.0)

        assert result.success

    def test_content_rendering(self) -> None:
        from harmonyproxy.ai.orchestration.tools import ToolExecutionResult

        ok = ToolExecutionResult("c1", "t", True, result={"a": 1})
        text = ToolExecutionResult("c2", "t", True, result="plain")
        failed = ToolExecutionResult("c3", "t", False, error="nope")

        assert ok.content == '{\n  "a": 1\n}'
        assert text.content == "plain"
        assert failed.to_message() == {"role": "tool", "tool_call_id": "c3", "name": "t", "content": "Error: nope"}


class TestAdmissionCeiling:
    @pytest.mark.asyncio
    async def test_call_beyond_ceiling_is_rejected_while_others_run(self) -> None:
        release = asyncio.Event()

        async def blocked(args):
            await release.wait()
            return "ok"

        registry = ToolRegistry()
        registry.register_function(make_spec("blocked"), blocked)
        executor = ToolExecutor(registry, ExecutorConfig(max_concurrent=5))

        batch = asyncio.ensure_future(
            executor.execute_many([call("blocked", call_id=f"call_{index}") for index in range(6)])
        )
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert executor.current_executions == 5
        release.set()
        results = await batch

        assert [result.success for result in results] == [True] * 5 + [False]
        assert results[5].error == ADMISSION_REJECTED
        assert executor.current_executions == 0

    @pytest.mark.asyncio
    async def test_slot_is_released_after_failure(self, registry: ToolRegistry) -> None:
        executor = ToolExecutor(registry, ExecutorConfig(max_concurrent=1))

        first = await executor.execute_one(call("ghost"))
        second = await executor.execute_one(call("echo"))

        assert first.error == "Tool 'ghost' not found"
        assert second.success


class TestExecuteMany:
    @pytest.mark.asyncio
    async def test_results_keep_input_order(self, registry: ToolRegistry) -> None:
        executor = ToolExecutor(registry)
        calls = [
            call("sleepy", {"delay": 0.03, "label": "slow"}, "call_a"),
            call("sleepy", {"delay": 0.0, "label": "fast"}, "call_b"),
            call("ghost", call_id="call_c"),
        ]

        results = await executor.execute_many(calls)

        assert [result.tool_call_id for result in results] == ["call_a", "call_b", "call_c"]
        assert [result.result for result in results[:2]] == ["slow", "fast"]
        assert results[2].success is False

    @pytest.mark.asyncio
    async def test_empty_batch(self, registry: ToolRegistry) -> None:
        assert await ToolExecutor(registry).execute_many([]) == []
