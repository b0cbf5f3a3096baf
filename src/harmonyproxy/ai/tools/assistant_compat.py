"""Tools named after the ones IDE coding assistants expect to exist."""

from __future__ import annotations

import re
from typing import Any

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import BuiltinTool, ToolError, Workspace, run_command

__all__ = [
    "ApplyDiffTool",
    "AskFollowupQuestionTool",
    "AttemptCompletionTool",
    "ExecuteCommandTool",
    "ListCodeDefinitionNamesTool",
    "SearchFilesTool",
]

_MAX_SEARCH_RESULTS = 200
_DEFINITION_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    ".py": [re.compile(r"^\s*(?:async\s+)?def\s+(\w+)"), re.compile(r"^\s*class\s+(\w+)")],
    ".js": [
        re.compile(r"^\s*(?:export\s+)?(?:async\s+)?function\s+(\w+)"),
        re.compile(r"^\s*(?:export\s+)?class\s+(\w+)"),
        re.compile(r"^\s*(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s*)?\("),
    ],
    ".java": [re.compile(r"^\s*(?:public|private|protected)?\s*(?:static\s+)?(?:class|interface|enum)\s+(\w+)")],
    ".c": [re.compile(r"^\s*[\w\*\s]+?\b(\w+)\s*\([^;]*\)\s*\{?\s*$")],
}
_DEFINITION_PATTERNS[".ts"] = _DEFINITION_PATTERNS[".js"] + [
    re.compile(r"^\s*(?:export\s+)?(?:interface|type)\s+(\w+)"),
]
_DEFINITION_PATTERNS[".cpp"] = _DEFINITION_PATTERNS[".c"] + [re.compile(r"^\s*class\s+(\w+)")]
_DEFINITION_PATTERNS[".h"] = _DEFINITION_PATTERNS[".cpp"]


class _WorkspaceBound(BuiltinTool):
    def __init__(self, workspace: Workspace | None = None) -> None:
        self._workspace = workspace or Workspace()


class SearchFilesTool(_WorkspaceBound):
    spec = ToolSpec(
        name="search_files",
        description="Search for a text pattern across files in a directory (case-insensitive).",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Text or regular expression to search for"},
                "path": {"type": "string", "description": "Directory to search in (default: current directory)"},
                "file_pattern": {"type": "string", "description": "Only search files whose name contains this text"},
            },
            "required": ["pattern"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        pattern = str(params.get("pattern") or "")
        try:
            matcher = re.compile(pattern, re.IGNORECASE)
        except re.error:
            matcher = re.compile(re.escape(pattern), re.IGNORECASE)
        file_filter = str(params.get("file_pattern") or "").lstrip("*")
        start = self._workspace.resolve(params.get("path") or ".")

        results: list[dict[str, Any]] = []
        for path in self._workspace.walk_files(start):
            if file_filter and file_filter not in path.name:
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(lines, start=1):
                found = matcher.search(line)
                if found:
                    results.append(
                        {
                            "file": self._workspace.display(path),
                            "line": number,
                            "content": line.strip(),
                            "match": found.group(0),
                        }
                    )
                    if len(results) >= _MAX_SEARCH_RESULTS:
                        return {"success": True, "pattern": pattern, "results": results, "count": len(results), "truncated": True}
        return {"success": True, "pattern": pattern, "results": results, "count": len(results)}


class ExecuteCommandTool(_WorkspaceBound):
    spec = ToolSpec(
        name="execute_command",
        description="Execute a shell command in the workspace directory.",
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "timeout": {"type": "number", "description": "Timeout in milliseconds (default: 10000)"},
            },
            "required": ["command"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        command = str(params.get("command") or "")
        if not command.strip():
            raise ToolError("Command is required")
        try:
            timeout_ms = int(params.get("timeout") or 10_000)
        except (TypeError, ValueError):
            timeout_ms = 10_000
        outcome = await run_command(command, cwd=self._workspace.root, timeout=max(1, timeout_ms) / 1000)
        payload: dict[str, Any] = {
            "success": outcome.ok,
            "command": command,
            "exit_code": outcome.exit_code,
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
        }
        if outcome.timed_out:
            payload["error"] = f"Command timed out after {timeout_ms}ms"
        return payload


class ListCodeDefinitionNamesTool(_WorkspaceBound):
    spec = ToolSpec(
        name="list_code_definition_names",
        description="List top-level definitions (functions, classes, interfaces) in source files under a path.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "File or directory to inspect"}},
            "required": ["path"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        target = self._workspace.resolve(params.get("path"))
        if not target.exists():
            raise ToolError("Path does not exist", {"path": params.get("path")})
        files = [target] if target.is_file() else list(self._workspace.walk_files(target))
        definitions: list[dict[str, Any]] = []
        for path in files:
            patterns = _DEFINITION_PATTERNS.get(path.suffix)
            if not patterns:
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(lines, start=1):
                for pattern in patterns:
                    found = pattern.match(line)
                    if found:
                        definitions.append({"file": self._workspace.display(path), "line": number, "name": found.group(1)})
                        break
        return {"success": True, "path": self._workspace.display(target), "definitions": definitions, "count": len(definitions)}


class ApplyDiffTool(BuiltinTool):
    spec = ToolSpec(
        name="apply_diff",
        description="Apply a diff to a file.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the file to modify"},
                "diff": {"type": "string", "description": "The diff to apply"},
            },
            "required": ["path", "diff"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        raise ToolError(
            "apply_diff is not yet implemented. Please use write_to_file for file modifications.",
            {"suggestion": "Read the file with read_file, then write the full updated content with write_to_file."},
        )


class AskFollowupQuestionTool(BuiltinTool):
    spec = ToolSpec(
        name="ask_followup_question",
        description="Ask the user a clarifying question.",
        parameters={
            "type": "object",
            "properties": {"question": {"type": "string", "description": "The question to ask the user"}},
            "required": ["question"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        return {"success": True, "type": "followup_question", "question": str(params.get("question") or "")}


class AttemptCompletionTool(BuiltinTool):
    spec = ToolSpec(
        name="attempt_completion",
        description="Present the final result of the task to the user.",
        parameters={
            "type": "object",
            "properties": {
                "result": {"type": "string", "description": "The result of the task"},
                "command": {"type": "string", "description": "Optional command that demonstrates the result"},
            },
            "required": ["result"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        payload = {"success": True, "type": "completion", "result": str(params.get("result") or "")}
        if params.get("command"):
            payload["command"] = str(params["command"])
        return payload
