"""Tests for the OpenAI-compatible inference client."""

from __future__ import annotations

import json

import httpx
import pytest
from openai import APIStatusError

from harmonyproxy.ai.client import ApproxByteCounter, TokenCounterRegistry, is_harmony_model
from harmonyproxy.errors import UpstreamError

from helpers import FakeAsyncOpenAI, collect, completion, make_request

WEATHER_TOOL = {
    "type": "function",
    "function": {"name": "get_weather", "description": "Weather", "parameters": {"type": "object"}},
}


def status_error(status: int, body: str) -> APIStatusError:
    request = httpx.Request("POST", "https://example.invalid/v1/chat/completions")
    response = httpx.Response(status, request=request, text=body)
    return APIStatusError(body, response=response, body=None)


def test_harmony_model_detection() -> None:
    assert is_harmony_model("openai/gpt-oss-20b")
    assert is_harmony_model("OpenAI/GPT-OSS-120B")
    assert not is_harmony_model("llama-3.1-8b")
    assert is_harmony_model("custom-model", ("custom",))


class TestBuildBody:
    def test_harmony_request_becomes_a_single_prompt(self, make_client) -> None:
        client = make_client(FakeAsyncOpenAI())

        body = client.build_body(make_request("Weather?", tools=[WEATHER_TOOL], temperature=0.2))

        assert len(body["messages"]) == 1
        assert body["messages"][0]["role"] == "user"
        assert "<|user|>\nWeather?<|end|>" in body["messages"][0]["content"]
        assert body["tools"] == [WEATHER_TOOL]
        assert body["tool_choice"] == "auto"
        assert body["temperature"] == 0.2

    def test_tool_choice_none_drops_tools_from_the_body(self, make_client) -> None:
        client = make_client(FakeAsyncOpenAI())

        body = client.build_body(make_request(tools=[WEATHER_TOOL], tool_choice="none"))

        assert "tools" not in body
        assert "tool_choice" not in body

    def test_other_models_pass_through(self, make_client) -> None:
        client = make_client(FakeAsyncOpenAI())
        request = make_request(model="llama-3.1-8b", tools=[WEATHER_TOOL])

        body = client.build_body(request, stream=True)

        assert body["messages"] == request.messages
        assert "tool_choice" not in body
        assert body["stream"] is True

    def test_default_params_apply_unless_overridden(self, make_client) -> None:
        client = make_client(FakeAsyncOpenAI(), default_params={"max_tokens": 2048, "temperature": 0.7})

        body = client.build_body(make_request(max_tokens=10))

        assert body["max_tokens"] == 10
        assert body["temperature"] == 0.7


class TestComplete:
    @pytest.mark.asyncio
    async def test_harmony_tool_calls_are_decoded(self, make_client) -> None:
        fake = FakeAsyncOpenAI(
            [completion('Checking. <|tool_call|>get_weather({"location": "Paris"})<|end_tool_call|>')]
        )

        response = await make_client(fake).complete(make_request(tools=[WEATHER_TOOL]))

        choice = response["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["content"] == "Checking."
        [call] = choice["message"]["tool_calls"]
        assert call["type"] == "function"
        assert json.loads(call["function"]["arguments"]) == {"location": "Paris"}

    @pytest.mark.asyncio
    async def test_markers_are_decoded_even_when_tools_were_disabled(self, make_client) -> None:
        fake = FakeAsyncOpenAI([completion("<|tool_call|>read_file({})<|end_tool_call|>")])

        response = await make_client(fake).complete(make_request(tool_choice="none"))

        assert response["choices"][0]["message"]["tool_calls"][0]["function"]["name"] == "read_file"

    @pytest.mark.asyncio
    async def test_non_harmony_response_is_untouched(self, make_client) -> None:
        fake = FakeAsyncOpenAI([completion("<|tool_call|>x({})<|end_tool_call|>")])

        response = await make_client(fake).complete(make_request(model="llama-3.1-8b"))

        assert response["choices"][0]["message"]["content"] == "<|tool_call|>x({})<|end_tool_call|>"
        assert "tool_calls" not in response["choices"][0]["message"]

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self, make_client) -> None:
        fake = FakeAsyncOpenAI([completion("12345678", usage=None)])

        response = await make_client(fake).complete(make_request())

        assert response["usage"]["completion_tokens"] > 0
        assert response["usage"]["total_tokens"] == (
            response["usage"]["prompt_tokens"] + response["usage"]["completion_tokens"]
        )

    @pytest.mark.asyncio
    async def test_upstream_client_error_keeps_its_status(self, make_client) -> None:
        fake = FakeAsyncOpenAI([status_error(401, '{"error": "bad key"}')])

        with pytest.raises(UpstreamError) as excinfo:
            await make_client(fake).complete(make_request())

        assert excinfo.value.status_code == 401
        assert "bad key" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_upstream_server_error_maps_to_bad_gateway(self, make_client) -> None:
        fake = FakeAsyncOpenAI([status_error(503, "unavailable")])

        with pytest.raises(UpstreamError) as excinfo:
            await make_client(fake).complete(make_request())

        assert excinfo.value.status_code == 502
        assert excinfo.value.upstream_status == 503


class TestStream:
    @pytest.mark.asyncio
    async def test_harmony_stream_gains_a_tool_call_chunk(self, make_client) -> None:
        chunk = {"choices": [{"index": 0, "delta": {"content": '<|tool_call|>get_weather({"location": "Oslo"})<|end_tool_call|>'}}]}
        fake = FakeAsyncOpenAI(stream_lines=["data: " + json.dumps(chunk), "", "data: [DONE]"])
        client = make_client(fake)

        frames = await collect(client.stream(make_request(stream=True, tools=[WEATHER_TOOL])))

        assert fake.calls[0]["stream"] is True
        assert frames[0] == "data: " + json.dumps(chunk) + "\n"
        assert frames[1] == "\n"
        assert '"finish_reason": "tool_calls"' in frames[2]
        assert frames[3] == "data: [DONE]\n\n"

    @pytest.mark.asyncio
    async def test_non_harmony_stream_is_forwarded_verbatim(self, make_client) -> None:
        fake = FakeAsyncOpenAI(stream_lines=["data: {}", "", "data: [DONE]"])

        frames = await collect(make_client(fake).stream(make_request(model="llama-3.1-8b", stream=True)))

        assert frames == ["data: {}\n", "\n", "data: [DONE]\n"]


class TestModelsAndTokens:
    @pytest.mark.asyncio
    async def test_list_models_is_cached(self, make_client) -> None:
        client = make_client(FakeAsyncOpenAI(models=("a", "b")))

        assert await client.list_models() == ["a", "b"]
        client._client._model_ids = ["c"]  # type: ignore[attr-defined]
        assert await client.list_models() == ["a", "b"]
        assert await client.list_models(force_refresh=True) == ["c"]

    @pytest.mark.asyncio
    async def test_aclose_closes_the_sdk_client(self, make_client) -> None:
        fake = FakeAsyncOpenAI()

        await make_client(fake).aclose()

        assert fake.closed

    def test_token_registry_falls_back_to_byte_estimate(self) -> None:
        registry = TokenCounterRegistry(fallback=ApproxByteCounter())

        assert registry.count("unknown-model", "12345678") == 2
        assert registry.count(None, "") == 0
