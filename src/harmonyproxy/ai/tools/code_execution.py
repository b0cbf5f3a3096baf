"""Run short code snippets in a subprocess."""

from __future__ import annotations

import logging
import sys
import tempfile
from pathlib import Path
from typing import Any

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import BuiltinTool, ToolError, Workspace, run_command

__all__ = ["CodeExecutionTool", "interpreter_command"]

LOGGER = logging.getLogger(__name__)

_SUFFIXES = {"python": ".py", "javascript": ".js", "shell": ".sh", "bash": ".sh"}
_DEFAULT_TIMEOUT_MS = 10_000
_MAX_TIMEOUT_MS = 30_000


def interpreter_command(language: str, script: Path) -> list[str]:
    """Return the argv that runs ``script`` for ``language``."""

    if language == "python":
        return [sys.executable, str(script)]
    if language == "javascript":
        return ["node", str(script)]
    if language in {"shell", "bash"}:
        return ["bash", str(script)]
    raise ToolError(f"Unsupported language: {language}", {"supported": sorted(_SUFFIXES)})


class CodeExecutionTool(BuiltinTool):
    spec = ToolSpec(
        name="execute_code",
        description=(
            "Execute code in various programming languages (JavaScript, Python, Shell). "
            "Use with caution as this executes real code."
        ),
        parameters={
            "type": "object",
            "properties": {
                "language": {
                    "type": "string",
                    "enum": ["javascript", "python", "shell", "bash"],
                    "description": "Programming language of the code to execute",
                },
                "code": {"type": "string", "description": "The code to execute"},
                "timeout": {
                    "type": "number",
                    "description": "Execution timeout in milliseconds (default: 10000, max: 30000)",
                    "minimum": 1000,
                    "maximum": 30000,
                },
            },
            "required": ["language", "code"],
        },
        category=ToolCategory.CODE,
    )

    def __init__(self, workspace: Workspace | None = None) -> None:
        self._workspace = workspace or Workspace()

    async def run(self, params: dict[str, Any]) -> Any:
        language = str(params.get("language") or "").lower()
        code = str(params.get("code") or "")
        if language not in _SUFFIXES:
            raise ToolError(f"Unsupported language: {language}", {"supported": sorted(_SUFFIXES)})
        try:
            timeout_ms = int(params.get("timeout") or _DEFAULT_TIMEOUT_MS)
        except (TypeError, ValueError):
            timeout_ms = _DEFAULT_TIMEOUT_MS
        timeout_ms = min(max(1000, timeout_ms), _MAX_TIMEOUT_MS)

        with tempfile.TemporaryDirectory(prefix="harmonyproxy-exec-") as scratch:
            script = Path(scratch) / f"snippet{_SUFFIXES[language]}"
            script.write_text(code, encoding="utf-8")
            LOGGER.debug("Executing %s snippet (%d chars, timeout=%dms)", language, len(code), timeout_ms)
            try:
                outcome = await run_command(
                    interpreter_command(language, script),
                    cwd=self._workspace.root,
                    timeout=timeout_ms / 1000,
                )
            except FileNotFoundError as exc:
                raise ToolError(f"Interpreter not available for {language}", {"language": language}) from exc

        payload: dict[str, Any] = {
            "success": outcome.ok,
            "language": language,
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
            "exit_code": outcome.exit_code,
            "execution_time": round(outcome.duration_ms, 1),
        }
        if outcome.timed_out:
            payload["error"] = f"Execution timed out after {timeout_ms}ms"
        return payload
