"""Chat handlers and the tool execution loop."""

from .orchestrator import (
    FINAL_TURN_INSTRUCTION,
    ChatHandler,
    CompletionHandler,
    OrchestratorOptions,
    ToolOrchestrator,
    merge_tools,
)

# Tool system
from .tools import (
    ExecutorConfig,
    SimpleTool,
    Tool,
    ToolExecutionResult,
    ToolExecutor,
    ToolRegistry,
    ToolSpec,
)

__all__ = [
    "FINAL_TURN_INSTRUCTION",
    "ChatHandler",
    "CompletionHandler",
    "OrchestratorOptions",
    "ToolOrchestrator",
    "merge_tools",
    "ExecutorConfig",
    "SimpleTool",
    "Tool",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolRegistry",
    "ToolSpec",
]
