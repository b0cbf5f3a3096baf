"""Tool registry for the orchestration loop.

The registry is the trust boundary between arbitrary tool code and the
orchestration core: lookups report absence as ``None`` and ``execute``
converts any raised exception into a failed :class:`ToolOutcome`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolOutcome, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


class ToolNotFoundError(Exception):
    """Raised by :meth:`ToolRegistry.get_required` when a tool is missing."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool."""

    name: str
    tool: Tool
    spec: ToolSpec
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Registry for managing tool registrations.

    Registering a name that already exists replaces the earlier entry, so
    callers can override a built-in capability.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            spec=ToolSpec(name="greet", description="Greet"),
            handler=lambda args: f"Hello, {args['name']}!",
        )
        outcome = await registry.execute("greet", {"name": "World"})
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(
        self,
        tool: Tool,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool implementation, replacing any tool with the same name."""

        name = tool.name
        if name in self._tools:
            LOGGER.debug("Replacing registered tool: %s", name)
        registration = ToolRegistration(
            name=name,
            tool=tool,
            spec=tool.spec,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a sync or async function as a tool."""

        return self.register(SimpleTool(spec=spec, handler=handler), metadata=metadata)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> Tool | None:
        registration = self._tools.get(name)
        return registration.tool if registration is not None else None

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_registration(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[ToolSpec]:
        return [registration.spec for registration in self._tools.values()]

    def list_names(self) -> list[str]:
        return list(self._tools)

    def list_registrations(self) -> list[ToolRegistration]:
        return list(self._tools.values())

    def list_catalogue(self) -> list[dict[str, Any]]:
        """Return the externally visible catalogue (name, description, schema)."""

        return [registration.spec.to_dict() for registration in self._tools.values()]

    def get_openai_tools(
        self,
        *,
        filter_names: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI format, optionally limited to ``filter_names``."""

        tools: list[dict[str, Any]] = []
        for registration in self._tools.values():
            if filter_names is not None and registration.name not in filter_names:
                continue
            tools.append(registration.spec.to_openai_tool())
        return tools

    def validate_arguments(self, name: str, arguments: Mapping[str, Any]) -> str | None:
        """Return a validation error message, or ``None`` when the call may run."""

        registration = self._tools.get(name)
        if registration is None:
            return f"Tool '{name}' not found"
        for parameter in registration.spec.required_parameters:
            if parameter not in arguments:
                return f"Missing required parameter: {parameter}"
        return None

    async def execute(self, name: str, arguments: Mapping[str, Any]) -> ToolOutcome:
        """Look up and invoke ``name``; exceptions become failed outcomes."""

        tool = self.get(name)
        if tool is None:
            return ToolOutcome.failed(f"Tool '{name}' not found")
        try:
            result = await tool.execute(arguments)
        except Exception as exc:  # noqa: BLE001 - tool code is untrusted
            LOGGER.debug("Tool %s raised", name, exc_info=True)
            return ToolOutcome.failed(f"Tool execution failed: {exc}")
        return ToolOutcome.ok(result)

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
