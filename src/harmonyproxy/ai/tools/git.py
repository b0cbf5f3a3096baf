"""Git repository operations executed without a shell."""

from __future__ import annotations

import re
from typing import Any

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import BuiltinTool, ToolError, Workspace, run_command

__all__ = ["GitOperationsTool", "build_git_command"]

_SAFE_OPTION = re.compile(r"^[a-zA-Z0-9\-_=.]+$")
_UNSAFE_PATH_CHARS = re.compile(r"[;&|`$]")
_OPERATIONS = ("status", "add", "commit", "push", "pull", "branch", "checkout", "diff", "log", "merge")
_TIMEOUT_SECONDS = 30.0


def _clean_options(options: Any) -> list[str]:
    return [str(option) for option in options or () if _SAFE_OPTION.match(str(option))]


def _clean_files(files: Any) -> list[str]:
    return [str(path) for path in files or () if str(path) and not _UNSAFE_PATH_CHARS.search(str(path))]


def build_git_command(params: dict[str, Any]) -> list[str]:
    """Translate tool arguments into a ``git`` argv; raises :class:`ToolError` on bad input."""

    operation = str(params.get("operation") or "")
    if operation not in _OPERATIONS:
        raise ToolError(f"Unknown git operation: {operation}", {"supported": list(_OPERATIONS)})
    options = _clean_options(params.get("options"))
    files = _clean_files(params.get("files"))
    branch = params.get("branch")
    if branch is not None and not _SAFE_OPTION.match(str(branch).replace("/", "")):
        raise ToolError("Invalid branch name", {"branch": branch})
    remote = str(params.get("remote") or "origin")
    if not _SAFE_OPTION.match(remote):
        raise ToolError("Invalid remote name", {"remote": remote})

    if operation == "status":
        return ["git", "status", "--porcelain", *options]
    if operation == "add":
        return ["git", "add", *options, *(files or ["."])]
    if operation == "commit":
        message = params.get("message")
        if not message:
            raise ToolError("Commit message is required")
        return ["git", "commit", "-m", str(message), *options]
    if operation in {"push", "pull"}:
        command = ["git", operation, remote]
        if branch:
            command.append(str(branch))
        return [*command, *options]
    if operation == "branch":
        return ["git", "branch", str(branch)] if branch else ["git", "branch", "-a", *options]
    if operation == "checkout":
        if not branch and not files:
            raise ToolError("Branch name or files are required for checkout")
        return ["git", "checkout", *options, *([str(branch)] if branch else ["--", *files])]
    if operation == "diff":
        return ["git", "diff", *options, *(["--", *files] if files else [])]
    if operation == "log":
        return ["git", "log", *(options or ["--oneline", "-10"])]
    if not branch:
        raise ToolError("Branch name is required for merge")
    return ["git", "merge", *options, str(branch)]


class GitOperationsTool(BuiltinTool):
    spec = ToolSpec(
        name="git_operations",
        description="Perform Git operations such as status, add, commit, push, pull, branch, checkout, diff, log and merge.",
        parameters={
            "type": "object",
            "properties": {
                "operation": {"type": "string", "enum": list(_OPERATIONS), "description": "The Git operation to perform"},
                "message": {"type": "string", "description": "Commit message (for commit operation)"},
                "files": {"type": "array", "items": {"type": "string"}, "description": "Files to add or diff"},
                "branch": {"type": "string", "description": "Branch name (for branch, checkout, merge, push, pull)"},
                "remote": {"type": "string", "description": "Remote name (default: origin)"},
                "options": {"type": "array", "items": {"type": "string"}, "description": "Additional git options"},
            },
            "required": ["operation"],
        },
        category=ToolCategory.SYSTEM,
    )

    def __init__(self, workspace: Workspace | None = None) -> None:
        self._workspace = workspace or Workspace()

    async def run(self, params: dict[str, Any]) -> Any:
        command = build_git_command(params)
        try:
            outcome = await run_command(command, cwd=self._workspace.root, timeout=_TIMEOUT_SECONDS)
        except FileNotFoundError as exc:
            raise ToolError("git executable not found") from exc
        payload: dict[str, Any] = {
            "success": outcome.ok,
            "operation": params.get("operation"),
            "command": " ".join(command),
            "output": outcome.stdout,
            "stderr": outcome.stderr,
            "exit_code": outcome.exit_code,
        }
        if outcome.timed_out:
            payload["error"] = "Git operation timed out"
        elif not outcome.ok:
            payload["error"] = outcome.stderr or f"git exited with code {outcome.exit_code}"
        return payload
