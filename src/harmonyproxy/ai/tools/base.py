"""Base classes and helpers shared by the built-in tools.

Built-in tools report expected failures (missing files, rejected paths,
non-zero exit codes) as result payloads with ``success: False`` so the
model can read them and self-correct. Unexpected exceptions propagate to
the registry, which turns them into failed outcomes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Mapping, Sequence

from ..orchestration.tools import ToolSpec

__all__ = [
    "BuiltinTool",
    "CommandResult",
    "ToolError",
    "Workspace",
    "run_command",
    "MAX_OUTPUT_BYTES",
    "MAX_READ_BYTES",
]

LOGGER = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024
MAX_READ_BYTES = 1024 * 1024
SKIPPED_DIRECTORIES = frozenset({"node_modules", ".git", "dist", "build", "__pycache__", ".venv"})


@dataclass
class ToolError(Exception):
    """Expected tool failure reported back to the model as a payload."""

    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.message}
        payload.update(self.details)
        return payload


class Workspace:
    """Filesystem root that every path-taking tool is confined to."""

    def __init__(self, root: Path | str | None = None) -> None:
        self._root = Path(root or os.getcwd()).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str | None) -> Path:
        """Resolve ``path`` relative to the root, rejecting anything outside it."""

        candidate = (self._root / (path or ".")).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise ToolError("Access denied: Path must be within the workspace directory", {"path": path})
        return candidate

    def display(self, path: Path) -> str:
        """Render ``path`` relative to the root (``./src/app.py``)."""

        try:
            relative = path.relative_to(self._root)
        except ValueError:
            return str(path)
        text = relative.as_posix()
        return "." if text == "." else f"./{text}"

    def walk_files(self, start: Path, *, max_depth: int = 10):
        """Yield non-hidden files under ``start``, skipping vendored and build directories."""

        def _walk(directory: Path, depth: int):
            if depth > max_depth:
                return
            try:
                entries = sorted(directory.iterdir())
            except OSError as exc:
                LOGGER.debug("Skipping unreadable directory %s: %s", directory, exc)
                return
            for entry in entries:
                if entry.name.startswith("."):
                    continue
                if entry.is_dir():
                    if entry.name not in SKIPPED_DIRECTORIES:
                        yield from _walk(entry, depth + 1)
                elif entry.is_file():
                    yield entry

        yield from _walk(start, 0)


@dataclass(slots=True)
class CommandResult:
    """Captured output of a finished (or timed out) subprocess."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


async def run_command(
    command: str | Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float = 30.0,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` (a shell string or an argv list) and capture its output.

    The process is killed when ``timeout`` expires.
    """

    merged_env = dict(os.environ)
    if env:
        merged_env.update({str(key): str(value) for key, value in env.items()})
    start = time.perf_counter()
    if isinstance(command, str):
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )
    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        process.kill()
        stdout, stderr = await process.communicate()
    return CommandResult(
        exit_code=process.returncode,
        stdout=_decode_output(stdout),
        stderr=_decode_output(stderr),
        timed_out=timed_out,
        duration_ms=(time.perf_counter() - start) * 1000,
    )


def _decode_output(data: bytes | None) -> str:
    if not data:
        return ""
    return data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace").strip()


class BuiltinTool(ABC):
    """Abstract base class for the built-in tools.

    Subclasses declare ``spec`` and implement :meth:`run`. A raised
    :class:`ToolError` becomes a ``success: False`` payload; any other
    exception propagates to the registry.

    Example:
        class EchoTool(BuiltinTool):
            spec = ToolSpec(name="echo", description="Echo text back")

            async def run(self, params):
                return {"success": True, "text": params.get("text", "")}
    """

    spec: ClassVar[ToolSpec]

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        params = dict(arguments) if arguments else {}
        try:
            return await self.run(params)
        except ToolError as exc:
            LOGGER.debug("Tool %s reported failure: %s", self.name, exc.message)
            return exc.to_dict()

    @abstractmethod
    async def run(self, params: dict[str, Any]) -> Any:
        """Perform the tool's work and return a JSON-serializable payload."""
        ...
