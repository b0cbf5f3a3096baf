"""Built-in tools the proxy can execute on the model's behalf."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from ..orchestration.tools import ToolRegistry
from .assistant_compat import (
    ApplyDiffTool,
    AskFollowupQuestionTool,
    AttemptCompletionTool,
    ExecuteCommandTool,
    ListCodeDefinitionNamesTool,
    SearchFilesTool,
)
from .base import BuiltinTool, CommandResult, ToolError, Workspace, run_command
from .calculator import CalculatorTool, evaluate_expression
from .code_execution import CodeExecutionTool
from .files import AppendToFileTool, FileOperationsTool, ListFilesTool, ReadFileTool, WriteToFileTool
from .git import GitOperationsTool, build_git_command
from .network import HttpClientTool, WeatherTool, WebSearchTool
from .processes import ProcessManagerTool

__all__ = [
    "AppendToFileTool",
    "ApplyDiffTool",
    "AskFollowupQuestionTool",
    "AttemptCompletionTool",
    "BuiltinTool",
    "CalculatorTool",
    "CodeExecutionTool",
    "CommandResult",
    "ExecuteCommandTool",
    "FileOperationsTool",
    "GitOperationsTool",
    "HttpClientTool",
    "ListCodeDefinitionNamesTool",
    "ListFilesTool",
    "ProcessManagerTool",
    "ReadFileTool",
    "SearchFilesTool",
    "ToolError",
    "WeatherTool",
    "WebSearchTool",
    "Workspace",
    "WriteToFileTool",
    "build_git_command",
    "builtin_tools",
    "evaluate_expression",
    "register_builtin_tools",
    "run_command",
]

LOGGER = logging.getLogger(__name__)


def builtin_tools(
    workspace: Workspace | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[BuiltinTool]:
    """Instantiate every built-in tool bound to ``workspace``."""

    workspace = workspace or Workspace()
    return [
        WebSearchTool(transport=transport),
        CalculatorTool(),
        WeatherTool(transport=transport),
        CodeExecutionTool(workspace),
        FileOperationsTool(workspace),
        GitOperationsTool(workspace),
        HttpClientTool(transport=transport),
        ProcessManagerTool(workspace),
        WriteToFileTool(workspace),
        ReadFileTool(workspace),
        ListFilesTool(workspace),
        AppendToFileTool(workspace),
        SearchFilesTool(workspace),
        ExecuteCommandTool(workspace),
        ListCodeDefinitionNamesTool(workspace),
        ApplyDiffTool(),
        AskFollowupQuestionTool(),
        AttemptCompletionTool(),
    ]


def register_builtin_tools(
    registry: ToolRegistry,
    workspace_root: Path | str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ToolRegistry:
    """Register the built-in tools on ``registry`` and return it."""

    tools = builtin_tools(Workspace(workspace_root), transport=transport)
    for tool in tools:
        registry.register(tool, metadata={"source": "builtin", "category": tool.spec.category})
    LOGGER.info("Registered %d built-in tools", len(tools))
    return registry
