"""Chat completion handlers: a plain single-turn handler and the tool loop.

:class:`ChatHandler` issues exactly one upstream turn per call.
:class:`ToolOrchestrator` wraps a ``ChatHandler`` and, for buffered
requests, executes the tool calls the model asks for, feeds the results
back into the conversation and repeats until the model answers without
tool calls or the iteration budget runs out. When the budget is spent a
final turn is forced with tools disabled.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from ...services.settings import clamp_iterations
from ..ai_types import ChatRequest, ToolCall
from ..client import InferenceClient
from ..compat import CompatibilityFlags, apply_compatibility
from .tools import ToolExecutor, ToolSpec

__all__ = [
    "CompletionHandler",
    "ChatHandler",
    "OrchestratorOptions",
    "ToolOrchestrator",
    "FINAL_TURN_INSTRUCTION",
    "FALLBACK_MODEL",
    "merge_tools",
]

LOGGER = logging.getLogger(__name__)

FINAL_TURN_INSTRUCTION = (
    "Maximum tool execution iterations reached. Please provide a final response without using more tools."
)
FALLBACK_MODEL = "openai/gpt-oss-20b"
_SYSTEM_FINGERPRINT = "fp_harmonyproxy"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def merge_tools(*groups: Sequence[Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    """Concatenate tool definitions, keeping the first definition for each name."""

    seen: set[str] = set()
    merged: list[dict[str, Any]] = []
    for group in groups:
        for tool in group or ():
            name = (tool.get("function") or {}).get("name")
            if not name or name in seen:
                continue
            seen.add(name)
            merged.append(dict(tool))
    return merged


@runtime_checkable
class CompletionHandler(Protocol):
    """Surface the HTTP layer talks to."""

    async def complete(
        self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE
    ) -> dict[str, Any]:
        ...

    def stream(
        self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE
    ) -> AsyncIterator[str]:
        ...

    async def list_models(self) -> dict[str, Any]:
        ...


class ChatHandler:
    """Single-turn handler: compatibility adjustments, then one upstream call."""

    def __init__(self, client: InferenceClient) -> None:
        self._client = client

    @property
    def client(self) -> InferenceClient:
        return self._client

    async def complete(
        self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE
    ) -> dict[str, Any]:
        request = apply_compatibility(request, flags)
        completion_id = new_completion_id()
        LOGGER.info(
            "Completion %s: model=%s messages=%d tools=%d tool_choice=%s",
            completion_id,
            request.model,
            len(request.messages),
            len(request.tools or ()),
            request.tool_choice_mode,
        )
        upstream = await self._client.complete(request)
        response = self._normalize(upstream, request)
        choice = response["choices"][0] if response["choices"] else {}
        LOGGER.info(
            "Completion %s finished: finish_reason=%s tool_calls=%d usage=%s",
            completion_id,
            choice.get("finish_reason"),
            len((choice.get("message") or {}).get("tool_calls") or ()),
            response.get("usage"),
        )
        return response

    async def stream(
        self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE
    ) -> AsyncIterator[str]:
        request = apply_compatibility(request, flags)
        LOGGER.info(
            "Streaming completion: model=%s messages=%d tools=%d",
            request.model,
            len(request.messages),
            len(request.tools or ()),
        )
        async for frame in self._client.stream(request):
            yield frame

    async def list_models(self) -> dict[str, Any]:
        try:
            models = await self._client.list_models()
        except Exception as exc:  # noqa: BLE001 - the listing degrades to the default model
            LOGGER.warning("Model listing failed, serving fallback: %s", exc)
            models = []
        if not models:
            models = [FALLBACK_MODEL]
        created = int(time.time())
        return {
            "object": "list",
            "data": [{"id": model, "object": "model", "created": created, "owned_by": "upstream"} for model in models],
        }

    @staticmethod
    def _normalize(upstream: Mapping[str, Any], request: ChatRequest) -> dict[str, Any]:
        choices: list[dict[str, Any]] = []
        for index, choice in enumerate(upstream.get("choices") or []):
            source = choice.get("message") or {}
            message: dict[str, Any] = {
                "role": source.get("role") or "assistant",
                "content": source.get("content"),
            }
            if source.get("tool_calls"):
                message["tool_calls"] = list(source["tool_calls"])
            choices.append(
                {
                    "index": choice.get("index", index),
                    "message": message,
                    "finish_reason": choice.get("finish_reason"),
                }
            )
        return {
            "id": upstream.get("id") or new_completion_id(),
            "object": "chat.completion",
            "created": upstream.get("created") or int(time.time()),
            "model": upstream.get("model") or request.model,
            "system_fingerprint": _SYSTEM_FINGERPRINT,
            "choices": choices,
            "usage": upstream.get("usage"),
        }


@dataclass(slots=True)
class OrchestratorOptions:
    """Runtime options for :class:`ToolOrchestrator`."""

    enable_auto_tool_execution: bool = True
    max_tool_iterations: int = 5
    include_builtin_tools: bool = True
    custom_tools: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.max_tool_iterations = clamp_iterations(self.max_tool_iterations)


class ToolOrchestrator:
    """Agent loop composed around a :class:`ChatHandler`.

    Example:
        orchestrator = ToolOrchestrator(ChatHandler(client), ToolExecutor(registry))
        response = await orchestrator.complete(request)
    """

    def __init__(
        self,
        handler: ChatHandler,
        executor: ToolExecutor,
        options: OrchestratorOptions | None = None,
    ) -> None:
        self._handler = handler
        self._executor = executor
        self._options = options or OrchestratorOptions()
        LOGGER.info(
            "Tool orchestrator ready: auto_execution=%s max_iterations=%d builtin_tools=%s custom_tools=%d",
            self._options.enable_auto_tool_execution,
            self._options.max_tool_iterations,
            self._options.include_builtin_tools,
            len(self._options.custom_tools),
        )

    @property
    def handler(self) -> ChatHandler:
        return self._handler

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def options(self) -> OrchestratorOptions:
        return self._options

    async def complete(
        self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE
    ) -> dict[str, Any]:
        enhanced = self.enhance_request(request)
        if not self._options.enable_auto_tool_execution or enhanced.tool_choice_mode == "none":
            return await self._handler.complete(enhanced, flags=flags)
        return await self._run_tool_loop(enhanced, flags)

    async def stream(
        self, request: ChatRequest, *, flags: CompatibilityFlags = CompatibilityFlags.NONE
    ) -> AsyncIterator[str]:
        enhanced = self.enhance_request(request)
        if self._options.enable_auto_tool_execution and enhanced.tool_choice_mode != "none":
            LOGGER.info("Streaming request: tool calls are returned to the caller, not executed")
        async for frame in self._handler.stream(enhanced, flags=flags):
            yield frame

    async def list_models(self) -> dict[str, Any]:
        return await self._handler.list_models()

    def available_tools(self) -> list[dict[str, Any]]:
        """Tool definitions the proxy advertises on top of the caller's own."""

        builtin: list[dict[str, Any]] = []
        if self._options.include_builtin_tools:
            registry = self._executor.registry
            names = [
                registration.name
                for registration in registry.list_registrations()
                if registration.metadata.get("source") != "custom"
            ]
            builtin = registry.get_openai_tools(filter_names=names)
        return merge_tools(builtin, self._options.custom_tools)

    def enhance_request(self, request: ChatRequest) -> ChatRequest:
        """Merge the advertised tools into ``request`` unless tools are disabled."""

        if request.tool_choice_mode == "none":
            return request
        extra = self.available_tools()
        if not extra:
            return request
        tools = merge_tools(request.tools, extra)
        tool_choice = request.tool_choice
        if tool_choice is None and tools:
            tool_choice = "auto"
        return request.evolve(tools=tools or None, tool_choice=tool_choice)

    def add_custom_tool(self, tool: Mapping[str, Any], handler: Any = None) -> None:
        """Advertise ``tool`` to the model; register ``handler`` to make it executable."""

        definition = dict(tool)
        name = (definition.get("function") or {}).get("name")
        if not name:
            raise ValueError("Custom tools must declare a function name")
        self._options.custom_tools.append(definition)
        if handler is not None:
            self._executor.registry.register_function(
                ToolSpec.from_openai_tool(definition),
                handler,
                metadata={"source": "custom"},
            )
        LOGGER.info("Added custom tool: %s", name)

    def remove_custom_tool(self, name: str) -> bool:
        before = len(self._options.custom_tools)
        self._options.custom_tools = [
            tool for tool in self._options.custom_tools if (tool.get("function") or {}).get("name") != name
        ]
        removed = len(self._options.custom_tools) < before
        registration = self._executor.registry.get_registration(name)
        if registration is not None and registration.metadata.get("source") == "custom":
            self._executor.registry.unregister(name)
        if removed:
            LOGGER.info("Removed custom tool: %s", name)
        return removed

    def set_auto_tool_execution(self, enabled: bool) -> None:
        self._options.enable_auto_tool_execution = bool(enabled)
        LOGGER.info("Auto tool execution %s", "enabled" if enabled else "disabled")

    def set_max_tool_iterations(self, value: int) -> None:
        self._options.max_tool_iterations = clamp_iterations(value)
        LOGGER.info("Max tool iterations set to: %d", self._options.max_tool_iterations)

    def stats(self) -> dict[str, Any]:
        return {
            "auto_execution_enabled": self._options.enable_auto_tool_execution,
            "max_iterations": self._options.max_tool_iterations,
            "builtin_tools_enabled": self._options.include_builtin_tools,
            "custom_tools_count": len(self._options.custom_tools),
            "available_tools_count": len(self.available_tools()),
            "current_executions": self._executor.current_executions,
            "max_concurrent_executions": self._executor.max_concurrent_executions,
        }

    async def _run_tool_loop(self, request: ChatRequest, flags: CompatibilityFlags) -> dict[str, Any]:
        messages: list[dict[str, Any]] = list(request.messages)
        max_iterations = self._options.max_tool_iterations
        iteration = 0

        while iteration < max_iterations:
            iteration += 1
            LOGGER.info(
                "Tool execution iteration %d/%d: %d message(s)",
                iteration,
                max_iterations,
                len(messages),
            )
            response = await self._handler.complete(request.evolve(messages=list(messages)), flags=flags)
            choices = response.get("choices") or []
            if not choices:
                LOGGER.error("Upstream response carried no choices")
                return response
            choice = choices[0]
            message = choice.get("message") or {}
            calls = [ToolCall.from_openai(raw) for raw in message.get("tool_calls") or ()]
            if not calls:
                LOGGER.info("Tool execution completed after %d iteration(s)", iteration)
                return {**response, "choices": [choice]}

            messages.append(
                {
                    "role": "assistant",
                    "content": message.get("content"),
                    "tool_calls": [call.to_openai() for call in calls],
                }
            )
            results = await self._executor.execute_many(calls)
            messages.extend(result.to_message() for result in results)

        LOGGER.warning("Maximum tool iterations (%d) reached; forcing a final answer", max_iterations)
        messages.append({"role": "system", "content": FINAL_TURN_INSTRUCTION})
        final = request.evolve(messages=messages, tool_choice="none")
        return await self._handler.complete(final, flags=flags)
