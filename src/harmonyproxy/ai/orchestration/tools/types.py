"""Tool system types for the orchestration loop.

This module defines the core types shared by the registry, the
invocation governor and the orchestrator.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "ToolCategory",
    "SimpleTool",
    "ToolOutcome",
    "ToolExecutionResult",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories for organization."""

    SEARCH = "search"
    CODE = "code"
    FILE = "file"
    NETWORK = "network"
    SYSTEM = "system"
    UTILITY = "utility"
    COMPAT = "compat"
    CUSTOM = "custom"


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
        category: Tool category for organization.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.UTILITY

    @property
    def required_parameters(self) -> tuple[str, ...]:
        required = (self.parameters or {}).get("required") or ()
        return tuple(str(item) for item in required)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "category": self.category,
        }

    @classmethod
    def from_openai_tool(cls, payload: Mapping[str, Any], *, category: str = ToolCategory.CUSTOM) -> ToolSpec:
        function = payload.get("function") or {}
        return cls(
            name=str(function.get("name") or ""),
            description=str(function.get("description") or ""),
            parameters=dict(function.get("parameters") or {}),
            category=category,
        )


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

# Synchronous tool handler
ToolHandler = Callable[[Mapping[str, Any]], Any]

# Asynchronous tool handler
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations.

    Tools can be implemented as classes conforming to this protocol,
    or as simple functions registered with a ToolSpec.
    """

    @property
    def name(self) -> str:
        """Get the tool's unique name."""
        ...

    @property
    def spec(self) -> ToolSpec:
        """Get the tool's specification."""
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        """Execute the tool with the given arguments.

        Returns a JSON-serializable result or raises on failure.
        """
        ...


# -----------------------------------------------------------------------------
# Simple Tool Implementation
# -----------------------------------------------------------------------------


@dataclass
class SimpleTool:
    """Simple tool implementation wrapping a callable.

    Example:
        def my_handler(args: dict) -> str:
            return f"Hello, {args.get('name', 'World')}!"

        tool = SimpleTool(
            spec=ToolSpec(name="greet", description="Greet someone"),
            handler=my_handler,
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = asyncio.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        """Get the tool's name from its spec."""
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        """Execute the tool handler."""
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        return self.handler(arguments)


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Result of one registry execution; failures never raise."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, result: Any) -> ToolOutcome:
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error: str) -> ToolOutcome:
        return cls(success=False, error=error)


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    """Result of one governed tool invocation.

    Attributes:
        tool_call_id: Identifier of the originating tool call.
        tool_name: Name of the invoked tool.
        success: Whether the tool ran and returned a result.
        result: The tool's return value on success.
        error: Failure reason when ``success`` is False.
        elapsed_ms: Wall time spent waiting on the invocation.
    """

    tool_call_id: str
    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def content(self) -> str:
        """Render the text fed back to the model as the tool message body."""

        if not self.success:
            return f"Error: {self.error or 'Unknown error'}"
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, indent=2, ensure_ascii=False, default=str)

    def to_message(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.tool_name,
            "content": self.content,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "elapsed_ms": round(self.elapsed_ms, 1),
        }
