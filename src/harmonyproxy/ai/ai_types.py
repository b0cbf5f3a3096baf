"""Shared typing contracts for the proxy's AI core."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Protocol, Sequence

from ..errors import RequestValidationError

__all__ = [
    "VALID_ROLES",
    "GENERATION_PARAMS",
    "TokenCounterProtocol",
    "ToolCall",
    "ChatRequest",
    "message_text",
    "new_tool_call_id",
]

VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})
GENERATION_PARAMS: tuple[str, ...] = (
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "stop",
    "response_format",
    "user",
)


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def message_text(content: Any) -> str:
    """Flatten OpenAI message content (string, parts list or ``None``) to text."""

    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, Sequence):
        parts: list[str] = []
        for part in content:
            if isinstance(part, Mapping) and part.get("type") == "text":
                parts.append(str(part.get("text") or ""))
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return str(content)


@dataclass(slots=True, frozen=True)
class ToolCall:
    """Tool invocation requested by the model.

    ``arguments_raw`` is untrusted model output and may not be valid JSON.
    """

    id: str
    name: str
    arguments_raw: str = "{}"

    def to_openai(self, index: int | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_raw},
        }
        if index is not None:
            payload["index"] = index
        return payload

    @classmethod
    def from_openai(cls, payload: Mapping[str, Any]) -> ToolCall:
        function = payload.get("function") or {}
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(payload.get("id") or new_tool_call_id()),
            name=str(function.get("name") or ""),
            arguments_raw=arguments,
        )


@dataclass(slots=True)
class ChatRequest:
    """Validated OpenAI-style chat completion request."""

    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    stream: bool = False
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ChatRequest:
        """Validate ``payload`` and build a request, raising before any I/O."""

        if not isinstance(payload, Mapping):
            raise RequestValidationError("Request body must be a JSON object")
        model = payload.get("model")
        if not model or not isinstance(model, str):
            raise RequestValidationError("Model is required")
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            raise RequestValidationError("Messages array is required and must not be empty")
        normalized: list[dict[str, Any]] = []
        for message in messages:
            if not isinstance(message, Mapping) or message.get("role") not in VALID_ROLES:
                raise RequestValidationError("Each message must have a valid role")
            normalized.append(dict(message))
        tools = payload.get("tools")
        if tools is not None:
            if not isinstance(tools, list):
                raise RequestValidationError("Tools must be an array")
            for tool in tools:
                function = tool.get("function") if isinstance(tool, Mapping) else None
                if not isinstance(function, Mapping) or not function.get("name"):
                    raise RequestValidationError("Each tool must declare a function name")
        params = {key: payload[key] for key in GENERATION_PARAMS if payload.get(key) is not None}
        return cls(
            model=model,
            messages=normalized,
            tools=[dict(tool) for tool in tools] if tools else None,
            tool_choice=payload.get("tool_choice"),
            stream=bool(payload.get("stream", False)),
            params=params,
        )

    @property
    def tool_choice_mode(self) -> str | None:
        """Return the tool choice as a plain string (``"none"``, ``"auto"``...)."""

        if isinstance(self.tool_choice, Mapping):
            value = self.tool_choice.get("type")
            return str(value) if value else None
        return self.tool_choice

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)

    def evolve(self, **changes: Any) -> ChatRequest:
        return replace(self, **changes)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "messages": list(self.messages)}
        if self.tools:
            payload["tools"] = list(self.tools)
        if self.tool_choice is not None:
            payload["tool_choice"] = self.tool_choice
        if self.stream:
            payload["stream"] = True
        payload.update(self.params)
        return payload
