"""Start, inspect and stop subprocesses on behalf of the model."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import BuiltinTool, ToolError, Workspace, run_command

__all__ = ["ManagedProcess", "ProcessManagerTool"]

LOGGER = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_MS = 30_000
_MAX_TIMEOUT_MS = 300_000


@dataclass(slots=True)
class ManagedProcess:
    id: str
    name: str
    command: str
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.time)

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "pid": self.process.pid,
            "running": self.running,
            "exit_code": self.process.returncode,
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }


class ProcessManagerTool(BuiltinTool):
    spec = ToolSpec(
        name="process_manager",
        description="Manage system processes: run commands, start background processes, check status, and stop them.",
        parameters={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["start", "stop", "status", "list", "logs", "kill", "run"],
                    "description": "The process management action to perform",
                },
                "command": {"type": "string", "description": "Command to run (for start and run actions)"},
                "name": {"type": "string", "description": "Process name or ID (for stop, status, kill actions)"},
                "background": {"type": "boolean", "description": "Run in background (for start action)"},
                "timeout": {
                    "type": "number",
                    "description": "Timeout in milliseconds for run action (default: 30000, max: 300000)",
                },
                "env": {"type": "object", "description": "Environment variables for the process"},
                "cwd": {"type": "string", "description": "Working directory (relative to the workspace)"},
            },
            "required": ["action"],
        },
        category=ToolCategory.SYSTEM,
    )

    def __init__(self, workspace: Workspace | None = None) -> None:
        self._workspace = workspace or Workspace()
        self._processes: dict[str, ManagedProcess] = {}

    async def run(self, params: dict[str, Any]) -> Any:
        action = str(params.get("action") or "")
        if action == "run":
            return await self._run(params)
        if action == "start":
            return await self._start(params)
        if action == "list":
            return {"success": True, "processes": [proc.describe() for proc in self._processes.values()]}
        if action == "status":
            return {"success": True, **self._lookup(params).describe()}
        if action in {"stop", "kill"}:
            return await self._stop(self._lookup(params), force=action == "kill")
        if action == "logs":
            raise ToolError("Log retrieval is not implemented for managed processes")
        raise ToolError(f"Unknown action: {action}")

    async def _run(self, params: dict[str, Any]) -> dict[str, Any]:
        command = self._command(params)
        try:
            timeout_ms = int(params.get("timeout") or _DEFAULT_TIMEOUT_MS)
        except (TypeError, ValueError):
            timeout_ms = _DEFAULT_TIMEOUT_MS
        timeout_ms = min(max(1, timeout_ms), _MAX_TIMEOUT_MS)
        outcome = await run_command(
            command,
            cwd=self._workspace.resolve(params.get("cwd")),
            timeout=timeout_ms / 1000,
            env=params.get("env"),
        )
        payload: dict[str, Any] = {
            "success": outcome.ok,
            "command": command,
            "exit_code": outcome.exit_code,
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
            "duration_ms": round(outcome.duration_ms, 1),
        }
        if outcome.timed_out:
            payload["error"] = f"Command timed out after {timeout_ms}ms"
        return payload

    async def _start(self, params: dict[str, Any]) -> dict[str, Any]:
        command = self._command(params)
        env = dict(os.environ)
        env.update({str(key): str(value) for key, value in (params.get("env") or {}).items()})
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            cwd=str(self._workspace.resolve(params.get("cwd"))),
            env=env,
        )
        process_id = uuid.uuid4().hex[:8]
        managed = ManagedProcess(
            id=process_id,
            name=str(params.get("name") or process_id),
            command=command,
            process=process,
        )
        self._processes[process_id] = managed
        LOGGER.info("Started process %s (pid=%s): %s", process_id, process.pid, command)
        return {"success": True, "message": "Process started", **managed.describe()}

    async def _stop(self, managed: ManagedProcess, *, force: bool) -> dict[str, Any]:
        if managed.running:
            try:
                managed.process.send_signal(signal.SIGKILL if force else signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(managed.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                managed.process.kill()
                await managed.process.wait()
        self._processes.pop(managed.id, None)
        LOGGER.info("Stopped process %s (exit=%s)", managed.id, managed.process.returncode)
        return {"success": True, "message": "Process killed" if force else "Process stopped", **managed.describe()}

    def _lookup(self, params: dict[str, Any]) -> ManagedProcess:
        key = params.get("name")
        if not key:
            raise ToolError("Process name or ID is required")
        for managed in self._processes.values():
            if key in (managed.id, managed.name):
                return managed
        raise ToolError(f"Process not found: {key}")

    @staticmethod
    def _command(params: dict[str, Any]) -> str:
        command = params.get("command")
        if not command:
            raise ToolError("Command is required")
        return str(command)
