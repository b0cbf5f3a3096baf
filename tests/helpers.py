"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Iterable, Sequence

from harmonyproxy.ai.ai_types import ChatRequest
from harmonyproxy.ai.compat import CompatibilityFlags


def completion(content: str | None = "", tool_calls: Sequence[dict[str, Any]] | None = None, **extra: Any) -> dict:
    """Build an upstream-shaped chat completion dict."""

    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = list(tool_calls)
    payload = {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "openai/gpt-oss-20b",
        "choices": [
            {"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}
        ],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }
    payload.update(extra)
    return payload


def tool_call(call_id: str, name: str, arguments: dict[str, Any] | str) -> dict[str, Any]:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}}


def make_request(content: str = "hi", **overrides: Any) -> ChatRequest:
    payload: dict[str, Any] = {"model": "openai/gpt-oss-20b", "messages": [{"role": "user", "content": content}]}
    payload.update(overrides)
    return ChatRequest.from_payload(payload)


class ScriptedChatHandler:
    """ChatHandler stand-in that replays canned completions and records requests."""

    def __init__(self, responses: Iterable[dict[str, Any]] = (), frames: Iterable[str] = ()) -> None:
        self._responses = list(responses)
        self._frames = list(frames)
        self.requests: list[ChatRequest] = []
        self.flags: list[CompatibilityFlags] = []
        self.models: dict[str, Any] = {"object": "list", "data": [{"id": "openai/gpt-oss-20b", "object": "model"}]}

    async def complete(self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE) -> dict:
        self.requests.append(request)
        self.flags.append(flags)
        if not self._responses:
            raise AssertionError("ScriptedChatHandler ran out of responses")
        return self._responses.pop(0)

    async def stream(self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE):
        self.requests.append(request)
        self.flags.append(flags)
        for frame in self._frames:
            yield frame

    async def list_models(self) -> dict[str, Any]:
        return self.models


class _FakeLineResponse:
    def __init__(self, lines: Sequence[str]) -> None:
        self._lines = list(lines)

    async def iter_lines(self):
        for line in self._lines:
            yield line


class _FakeStreamingContext:
    def __init__(self, lines: Sequence[str]) -> None:
        self._lines = lines

    async def __aenter__(self) -> _FakeLineResponse:
        return _FakeLineResponse(self._lines)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeAsyncOpenAI:
    """Records request bodies and answers with canned completions or SSE lines."""

    def __init__(
        self,
        responses: Iterable[Any] = (),
        *,
        stream_lines: Sequence[str] = (),
        models: Sequence[str] = ("openai/gpt-oss-20b",),
    ) -> None:
        self.responses = list(responses)
        self.stream_lines = list(stream_lines)
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        self.chat = SimpleNamespace(
            completions=SimpleNamespace(
                create=self._create,
                with_streaming_response=SimpleNamespace(create=self._create_streaming),
            )
        )
        self.models = SimpleNamespace(list=self._list_models)
        self._model_ids = list(models)

    async def _create(self, **body: Any) -> Any:
        self.calls.append(body)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def _create_streaming(self, **body: Any) -> _FakeStreamingContext:
        self.calls.append(body)
        return _FakeStreamingContext(self.stream_lines)

    async def _list_models(self) -> Any:
        return SimpleNamespace(data=[SimpleNamespace(id=model) for model in self._model_ids])

    async def close(self) -> None:
        self.closed = True


async def collect(iterator) -> list[str]:
    return [item async for item in iterator]
