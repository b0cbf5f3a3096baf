"""Workspace-confined file tools.

``file_operations`` is the general entry point. ``write_to_file``,
``read_file``, ``list_files`` and ``append_to_file`` mirror the tool names
that IDE coding assistants send.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import MAX_READ_BYTES, BuiltinTool, ToolError, Workspace

__all__ = [
    "AppendToFileTool",
    "FileOperationsTool",
    "ListFilesTool",
    "ReadFileTool",
    "WorkspaceTool",
    "WriteToFileTool",
]

LOGGER = logging.getLogger(__name__)


class WorkspaceTool(BuiltinTool):
    """Base for tools that read or write below a :class:`Workspace`."""

    def __init__(self, workspace: Workspace | None = None) -> None:
        self._workspace = workspace or Workspace()

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    def _read_text(self, target: Path, *, encoding: str = "utf8") -> str:
        if not target.exists():
            raise ToolError("File does not exist", {"path": self._workspace.display(target)})
        if target.is_dir():
            raise ToolError("Path is a directory, use list operation instead", {"path": self._workspace.display(target)})
        if target.stat().st_size > MAX_READ_BYTES:
            raise ToolError("File too large (max 1MB)", {"path": self._workspace.display(target)})
        data = target.read_bytes()
        if encoding == "base64":
            return base64.b64encode(data).decode("ascii")
        return data.decode("utf-8", errors="replace")

    def _write_text(self, target: Path, content: str, *, encoding: str = "utf8", append: bool = False) -> int:
        if target.is_dir():
            raise ToolError("Path is a directory", {"path": self._workspace.display(target)})
        if encoding == "base64":
            try:
                data = base64.b64decode(content, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ToolError("Invalid base64 content", {"path": self._workspace.display(target)}) from exc
        else:
            data = content.encode("utf-8")
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("ab" if append else "wb") as handle:
            handle.write(data)
        LOGGER.debug("%s %d bytes to %s", "Appended" if append else "Wrote", len(data), target)
        return len(data)

    def _list_entries(self, target: Path) -> list[dict[str, Any]]:
        if not target.exists():
            raise ToolError("Directory does not exist", {"path": self._workspace.display(target)})
        if not target.is_dir():
            raise ToolError("Path is not a directory", {"path": self._workspace.display(target)})
        entries = []
        for entry in sorted(target.iterdir()):
            stat = entry.stat()
            entries.append(
                {
                    "name": entry.name,
                    "path": self._workspace.display(entry),
                    "type": "directory" if entry.is_dir() else "file",
                    "size": stat.st_size,
                    "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                }
            )
        return entries


class FileOperationsTool(WorkspaceTool):
    spec = ToolSpec(
        name="file_operations",
        description="Perform file system operations like reading, writing, and listing files and directories.",
        parameters={
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": ["read", "write", "list", "exists"],
                    "description": "The file operation to perform",
                },
                "path": {"type": "string", "description": "File or directory path (relative to the working directory)"},
                "content": {"type": "string", "description": "Content to write (required for write operation)"},
                "encoding": {
                    "type": "string",
                    "enum": ["utf8", "base64"],
                    "description": "File encoding (default: utf8)",
                },
            },
            "required": ["operation", "path"],
        },
        category=ToolCategory.FILE,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        operation = str(params.get("operation") or "")
        path = params.get("path")
        encoding = "base64" if params.get("encoding") == "base64" else "utf8"
        target = self.workspace.resolve(path)
        shown = self.workspace.display(target)

        if operation == "read":
            content = self._read_text(target, encoding=encoding)
            return {"success": True, "operation": "read", "path": shown, "content": content, "encoding": encoding}
        if operation == "write":
            content = params.get("content")
            if content is None:
                raise ToolError("Content is required for write operation", {"path": shown})
            size = self._write_text(target, str(content), encoding=encoding)
            return {"success": True, "operation": "write", "path": shown, "bytes_written": size}
        if operation == "list":
            files = self._list_entries(target)
            return {"success": True, "operation": "list", "path": shown, "files": files, "count": len(files)}
        if operation == "exists":
            kind = None
            if target.exists():
                kind = "directory" if target.is_dir() else "file"
            return {"success": True, "operation": "exists", "path": shown, "exists": kind is not None, "type": kind}
        raise ToolError(f"Unknown operation: {operation}", {"supported": ["read", "write", "list", "exists"]})


class WriteToFileTool(WorkspaceTool):
    spec = ToolSpec(
        name="write_to_file",
        description="Write content to a file, creating parent directories as needed.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the file to write to"},
                "content": {"type": "string", "description": "The content to write to the file"},
                "line_count": {"type": "number", "description": "The number of lines in the file"},
            },
            "required": ["path", "content"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        target = self.workspace.resolve(params.get("path"))
        content = str(params.get("content") or "")
        size = self._write_text(target, content)
        return {
            "success": True,
            "path": self.workspace.display(target),
            "bytes_written": size,
            "line_count": len(content.splitlines()),
            "message": f"Successfully wrote to {self.workspace.display(target)}",
        }


class ReadFileTool(WorkspaceTool):
    spec = ToolSpec(
        name="read_file",
        description="Read the contents of a file.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "The path of the file to read"}},
            "required": ["path"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        target = self.workspace.resolve(params.get("path"))
        content = self._read_text(target)
        return {
            "success": True,
            "path": self.workspace.display(target),
            "content": content,
            "line_count": len(content.splitlines()),
        }


class ListFilesTool(WorkspaceTool):
    spec = ToolSpec(
        name="list_files",
        description="List files and directories in the given directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory to list (default: current directory)"},
                "recursive": {"type": "boolean", "description": "Whether to list files recursively"},
            },
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        target = self.workspace.resolve(params.get("path") or ".")
        if params.get("recursive"):
            if not target.is_dir():
                raise ToolError("Path is not a directory", {"path": self.workspace.display(target)})
            files = [
                {"name": entry.name, "path": self.workspace.display(entry), "type": "file", "size": entry.stat().st_size}
                for entry in self.workspace.walk_files(target)
            ]
        else:
            files = self._list_entries(target)
        return {"success": True, "path": self.workspace.display(target), "files": files, "count": len(files)}


class AppendToFileTool(WorkspaceTool):
    spec = ToolSpec(
        name="append_to_file",
        description="Append content to the end of a file, creating it when missing.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the file to append to"},
                "content": {"type": "string", "description": "The content to append"},
            },
            "required": ["path", "content"],
        },
        category=ToolCategory.COMPAT,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        target = self.workspace.resolve(params.get("path"))
        size = self._write_text(target, str(params.get("content") or ""), append=True)
        return {"success": True, "path": self.workspace.display(target), "bytes_appended": size}
