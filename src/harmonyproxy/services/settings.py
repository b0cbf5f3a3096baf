"""Settings dataclasses and loading helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from dotenv import load_dotenv

__all__ = [
    "Settings",
    "SettingsStore",
    "clamp_iterations",
    "load_env_file",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".harmonyproxy"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_ENV_OVERRIDES: Mapping[str, str] = {
    "GROQ_API_KEY": "api_key",
    "HARMONYPROXY_API_KEY": "api_key",
    "HARMONYPROXY_BASE_URL": "base_url",
    "MODEL_NAME": "model",
    "HARMONYPROXY_MODEL": "model",
    "HOST": "host",
    "HARMONYPROXY_WORKSPACE": "workspace_root",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "HARMONYPROXY_AUTO_TOOLS": "enable_auto_tool_execution",
    "HARMONYPROXY_BUILTIN_TOOLS": "include_builtin_tools",
    "HARMONYPROXY_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TEMPERATURE": "temperature",
    "HARMONYPROXY_REQUEST_TIMEOUT": "request_timeout",
    "HARMONYPROXY_TOOL_TIMEOUT": "tool_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "PORT": "port",
    "MAX_TOKENS": "max_tokens",
    "HARMONYPROXY_MAX_TOOL_ITERATIONS": "max_tool_iterations",
    "HARMONYPROXY_MAX_CONCURRENT_TOOLS": "max_concurrent_tools",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
MIN_TOOL_ITERATIONS = 1
MAX_TOOL_ITERATIONS = 10


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the proxy."""

    base_url: str = "https://api.groq.com/openai/v1"
    api_key: str = ""
    model: str = "openai/gpt-oss-20b"
    host: str = "0.0.0.0"
    port: int = 3307
    max_tokens: int = 2048
    temperature: float = 0.7
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    enable_auto_tool_execution: bool = True
    max_tool_iterations: int = 5
    include_builtin_tools: bool = True
    tool_timeout: float = 30.0
    max_concurrent_tools: int = 5
    harmony_model_markers: tuple[str, ...] = ("gpt-oss",)
    workspace_root: str | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)


def clamp_iterations(value: int) -> int:
    """Clamp a tool iteration budget into the supported range."""

    return max(MIN_TOOL_ITERATIONS, min(int(value), MAX_TOOL_ITERATIONS))


def redact_secret(value: str | None) -> str:
    """Return a display-safe version of an API key."""

    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def load_env_file(path: Path | str | None = None) -> bool:
    """Load a ``.env`` file into the process environment without overriding it."""

    target = Path(path) if path else Path.cwd() / ".env"
    if not target.exists():
        LOGGER.debug("No .env file found at %s", target)
        return False
    return load_dotenv(target, override=False)


class SettingsStore:
    """Loader for :class:`Settings` backed by an optional JSON file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            markers = data.get("harmony_model_markers")
            if isinstance(markers, list):
                data["harmony_model_markers"] = tuple(str(item) for item in markers)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return replace(settings, max_tool_iterations=clamp_iterations(settings.max_tool_iterations))

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes. The API key is never written."""

        data = asdict(settings)
        data.pop("api_key", None)
        data["harmony_model_markers"] = list(settings.harmony_model_markers)
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        headers_override = filtered.get("default_headers")
        if isinstance(headers_override, Mapping):
            merged_headers = dict(settings.default_headers or {})
            merged_headers.update(headers_override)
            filtered["default_headers"] = merged_headers
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
