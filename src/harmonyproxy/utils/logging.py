"""Structured logging helpers for the Harmony proxy."""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Mapping

__all__ = ["setup_logging", "get_log_path", "safe_dumps"]

_DEFAULT_LOG_DIR = Path.home() / ".harmonyproxy" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "uvicorn.access")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with rotating file + optional console handlers."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "harmonyproxy.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def safe_dumps(payload: Any, *, max_length: int = 50_000) -> str:
    """Serialize ``payload`` for the request log without ever raising.

    Oversized chat payloads are replaced by a summary carrying the model,
    message count, tool flags and a short preview.
    """

    try:
        text = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError) as exc:
        return f"[unserializable payload: {exc}]"
    if len(text) <= max_length:
        return text
    source: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}
    messages = source.get("messages")
    summary = {
        "model": source.get("model", "unknown"),
        "message_count": len(messages) if isinstance(messages, list) else 0,
        "has_tools": bool(source.get("tools")),
        "tool_choice": source.get("tool_choice") or "none",
        "total_length": len(text),
        "preview": text[:1000] + "...",
    }
    return json.dumps(summary, ensure_ascii=False)


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("HARMONYPROXY_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
