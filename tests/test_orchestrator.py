"""Tests for the chat handler and the tool execution loop."""

from __future__ import annotations

import json

import pytest

from harmonyproxy.ai.compat import CompatibilityFlags
from harmonyproxy.ai.orchestration import (
    FINAL_TURN_INSTRUCTION,
    ChatHandler,
    OrchestratorOptions,
    ToolExecutor,
    ToolOrchestrator,
    ToolRegistry,
    ToolSpec,
    merge_tools,
)
from harmonyproxy.ai.orchestration.orchestrator import FALLBACK_MODEL

from helpers import FakeAsyncOpenAI, ScriptedChatHandler, collect, completion, make_request, tool_call

WEATHER_SPEC = ToolSpec(
    name="get_weather",
    description="Weather lookup",
    parameters={"type": "object", "properties": {"location": {"type": "string"}}, "required": ["location"]},
)


def weather_registry(calls: list | None = None) -> ToolRegistry:
    registry = ToolRegistry()

    def get_weather(args):
        if calls is not None:
            calls.append(dict(args))
        return {"location": args["location"], "temperature": 21}

    registry.register_function(WEATHER_SPEC, get_weather, metadata={"source": "builtin"})
    return registry


def build(handler, registry=None, **options) -> ToolOrchestrator:
    return ToolOrchestrator(
        handler,  # type: ignore[arg-type]
        ToolExecutor(registry or weather_registry()),
        OrchestratorOptions(**options),
    )


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_answer_without_tool_calls_is_returned_directly(self) -> None:
        handler = ScriptedChatHandler([completion("Hello!")])

        response = await build(handler).complete(make_request())

        assert response["choices"][0]["message"]["content"] == "Hello!"
        assert len(handler.requests) == 1
        assert handler.requests[0].tool_choice == "auto"
        assert [tool["function"]["name"] for tool in handler.requests[0].tools] == ["get_weather"]

    @pytest.mark.asyncio
    async def test_weather_round_trip(self) -> None:
        executed: list[dict] = []
        handler = ScriptedChatHandler(
            [
                completion("", [tool_call("call_1", "get_weather", {"location": "Paris"})]),
                completion("It is 21 degrees in Paris."),
            ]
        )

        response = await build(handler, weather_registry(executed)).complete(make_request("Weather in Paris?"))

        assert executed == [{"location": "Paris"}]
        assert response["choices"][0]["message"]["content"] == "It is 21 degrees in Paris."
        second = handler.requests[1].messages
        assert [message["role"] for message in second] == ["user", "assistant", "tool"]
        assert second[1]["tool_calls"][0]["function"]["name"] == "get_weather"
        assert second[2]["tool_call_id"] == "call_1"
        assert second[2]["name"] == "get_weather"
        assert json.loads(second[2]["content"]) == {"location": "Paris", "temperature": 21}

    @pytest.mark.asyncio
    async def test_failed_tool_result_is_fed_back_as_error_text(self) -> None:
        handler = ScriptedChatHandler(
            [
                completion("", [tool_call("call_1", "get_weather", {})]),
                completion("Which city?"),
            ]
        )

        await build(handler).complete(make_request())

        tool_message = handler.requests[1].messages[-1]
        assert tool_message["content"] == "Error: Missing required parameter: location"

    @pytest.mark.asyncio
    async def test_iteration_cap_forces_a_tool_free_final_turn(self) -> None:
        looping = completion("", [tool_call("call_x", "get_weather", {"location": "Oslo"})])
        handler = ScriptedChatHandler([looping] * 3 + [completion("Final answer")])

        response = await build(handler, max_tool_iterations=3).complete(make_request())

        assert len(handler.requests) == 4
        final = handler.requests[-1]
        assert final.tool_choice == "none"
        assert final.messages[-1] == {"role": "system", "content": FINAL_TURN_INSTRUCTION}
        assert response["choices"][0]["message"]["content"] == "Final answer"

    @pytest.mark.asyncio
    async def test_default_budget_is_five_iterations(self) -> None:
        looping = completion("", [tool_call("call_x", "get_weather", {"location": "Oslo"})])
        handler = ScriptedChatHandler([looping] * 5 + [completion("done")])

        await build(handler).complete(make_request())

        assert len(handler.requests) == 6

    @pytest.mark.asyncio
    async def test_tool_choice_none_is_a_single_turn(self) -> None:
        handler = ScriptedChatHandler(
            [completion("", [tool_call("call_1", "get_weather", {"location": "Paris"})])]
        )
        executed: list[dict] = []

        response = await build(handler, weather_registry(executed)).complete(make_request(tool_choice="none"))

        assert executed == []
        assert len(handler.requests) == 1
        assert handler.requests[0].tools is None
        assert response["choices"][0]["message"]["tool_calls"][0]["id"] == "call_1"

    @pytest.mark.asyncio
    async def test_disabled_auto_execution_returns_tool_calls(self) -> None:
        handler = ScriptedChatHandler(
            [completion("", [tool_call("call_1", "get_weather", {"location": "Paris"})])]
        )

        response = await build(handler, enable_auto_tool_execution=False).complete(make_request())

        assert len(handler.requests) == 1
        assert response["choices"][0]["finish_reason"] == "tool_calls"

    @pytest.mark.asyncio
    async def test_auto_execution_can_be_toggled_at_runtime(self) -> None:
        executed: list[dict] = []
        handler = ScriptedChatHandler(
            [completion("", [tool_call("call_1", "get_weather", {"location": "Oslo"})])]
        )
        orchestrator = build(handler, weather_registry(executed))

        orchestrator.set_auto_tool_execution(False)
        await orchestrator.complete(make_request())

        assert executed == []
        assert orchestrator.stats()["auto_execution_enabled"] is False

    @pytest.mark.asyncio
    async def test_flags_reach_every_turn(self) -> None:
        handler = ScriptedChatHandler(
            [completion("", [tool_call("c", "get_weather", {"location": "Rome"})]), completion("ok")]
        )

        await build(handler).complete(make_request(), flags=CompatibilityFlags.CODING_CLIENT)

        assert handler.flags == [CompatibilityFlags.CODING_CLIENT] * 2


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_is_a_pass_through_without_tool_execution(self) -> None:
        executed: list[dict] = []
        handler = ScriptedChatHandler(frames=["data: a\n", "data: [DONE]\n"])

        frames = await collect(build(handler, weather_registry(executed)).stream(make_request(stream=True)))

        assert frames == ["data: a\n", "data: [DONE]\n"]
        assert executed == []


class TestConfiguration:
    def test_iterations_are_clamped(self) -> None:
        assert OrchestratorOptions(max_tool_iterations=0).max_tool_iterations == 1
        assert OrchestratorOptions(max_tool_iterations=99).max_tool_iterations == 10

        orchestrator = build(ScriptedChatHandler())
        orchestrator.set_max_tool_iterations(42)
        assert orchestrator.options.max_tool_iterations == 10

    def test_caller_tools_take_precedence_when_merging(self) -> None:
        caller = {"type": "function", "function": {"name": "get_weather", "description": "caller version"}}

        request = build(ScriptedChatHandler()).enhance_request(make_request(tools=[caller]))

        assert request.tools == [caller]

    def test_builtin_tools_can_be_hidden(self) -> None:
        orchestrator = build(ScriptedChatHandler(), include_builtin_tools=False)

        assert orchestrator.available_tools() == []
        assert orchestrator.enhance_request(make_request()).tools is None

    @pytest.mark.asyncio
    async def test_custom_tool_with_handler_is_executed(self) -> None:
        orchestrator = build(
            ScriptedChatHandler(
                [completion("", [tool_call("c1", "shout", {"text": "hi"})]), completion("HI")]
            )
        )
        definition = {
            "type": "function",
            "function": {"name": "shout", "description": "Upper-case text", "parameters": {"type": "object"}},
        }
        orchestrator.add_custom_tool(definition, lambda args: args["text"].upper())

        await orchestrator.complete(make_request())

        names = [tool["function"]["name"] for tool in orchestrator.available_tools()]
        assert names == ["get_weather", "shout"]
        assert orchestrator.handler.requests[1].messages[-1]["content"] == "HI"  # type: ignore[attr-defined]
        assert orchestrator.remove_custom_tool("shout") is True
        assert not orchestrator.executor.has_tool("shout")

    def test_stats(self) -> None:
        stats = build(ScriptedChatHandler()).stats()

        assert stats == {
            "auto_execution_enabled": True,
            "max_iterations": 5,
            "builtin_tools_enabled": True,
            "custom_tools_count": 0,
            "available_tools_count": 1,
            "current_executions": 0,
            "max_concurrent_executions": 5,
        }

    def test_merge_tools_keeps_first_definition(self) -> None:
        first = {"type": "function", "function": {"name": "a", "description": "1"}}
        second = {"type": "function", "function": {"name": "a", "description": "2"}}

        assert merge_tools([first], [second], None) == [first]


class TestChatHandler:
    @pytest.mark.asyncio
    async def test_response_is_normalized(self, make_client) -> None:
        fake = FakeAsyncOpenAI([completion("plain", model="some-model", usage=None)])
        handler = ChatHandler(make_client(fake))

        response = await handler.complete(make_request())

        assert response["object"] == "chat.completion"
        assert response["system_fingerprint"] == "fp_harmonyproxy"
        assert response["model"] == "some-model"
        assert response["choices"][0]["message"] == {"role": "assistant", "content": "plain"}
        assert response["usage"]["total_tokens"] >= 0

    @pytest.mark.asyncio
    async def test_list_models_falls_back_when_upstream_is_empty(self, make_client) -> None:
        handler = ChatHandler(make_client(FakeAsyncOpenAI(models=())))

        models = await handler.list_models()

        assert models["object"] == "list"
        assert [entry["id"] for entry in models["data"]] == [FALLBACK_MODEL]


class TestHarmonyRoundTrip:
    @pytest.mark.asyncio
    async def test_marker_text_runs_the_tool_and_feeds_back_the_result(self, make_client) -> None:
        executed: list[dict] = []
        fake = FakeAsyncOpenAI(
            [
                completion('<|tool_call|>get_weather({"location": "Paris"})<|end_tool_call|>'),
                completion("Sunny in Paris"),
            ]
        )
        orchestrator = build(ChatHandler(make_client(fake)), weather_registry(executed))

        response = await orchestrator.complete(make_request("Weather in Paris?"))

        assert executed == [{"location": "Paris"}]
        assert len(fake.calls) == 2
        second_prompt = fake.calls[1]["messages"][0]["content"]
        assert "<|tool_result|>" in second_prompt
        assert "Tool: get_weather" in second_prompt
        assert '"temperature": 21' in second_prompt
        assert response["choices"][0]["message"]["content"] == "Sunny in Paris"
        assert response["choices"][0]["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_forced_final_turn_prompt_carries_the_instruction(self, make_client) -> None:
        looping = completion('<|tool_call|>get_weather({"location": "Oslo"})<|end_tool_call|>')
        fake = FakeAsyncOpenAI([looping, completion("Final answer")])
        orchestrator = build(ChatHandler(make_client(fake)), max_tool_iterations=1)

        response = await orchestrator.complete(make_request())

        assert len(fake.calls) == 2
        final_prompt = fake.calls[1]["messages"][0]["content"]
        assert FINAL_TURN_INSTRUCTION in final_prompt
        assert final_prompt.index(FINAL_TURN_INSTRUCTION) > final_prompt.index("<|tool_result|>")
        assert "tools" not in fake.calls[1]
        assert response["choices"][0]["message"]["content"] == "Final answer"
