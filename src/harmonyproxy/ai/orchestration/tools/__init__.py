"""Tool system for the orchestration loop.

This package provides the tool registry, the invocation governor and
related types.

Example:
    from harmonyproxy.ai.orchestration.tools import (
        ToolRegistry,
        ToolExecutor,
        ToolSpec,
    )

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="greet", description="Greet someone"),
        handler=lambda args: f"Hello, {args.get('name', 'World')}!",
    )

    executor = ToolExecutor(registry)
    results = await executor.execute_many(tool_calls)
"""

from .types import (
    Tool,
    ToolSpec,
    ToolHandler,
    AsyncToolHandler,
    SimpleTool,
    ToolCategory,
    ToolOutcome,
    ToolExecutionResult,
)

from .registry import (
    ToolRegistry,
    ToolRegistration,
    ToolNotFoundError,
)

from .executor import (
    ADMISSION_REJECTED,
    TIMEOUT_ERROR,
    ToolExecutor,
    ExecutorConfig,
    unwrap_arguments,
)

__all__ = [
    # types.py
    "Tool",
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "SimpleTool",
    "ToolCategory",
    "ToolOutcome",
    "ToolExecutionResult",
    # registry.py
    "ToolRegistry",
    "ToolRegistration",
    "ToolNotFoundError",
    # executor.py
    "ADMISSION_REJECTED",
    "TIMEOUT_ERROR",
    "ToolExecutor",
    "ExecutorConfig",
    "unwrap_arguments",
]
