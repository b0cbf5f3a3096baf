"""Command-line bootstrap for the Harmony proxy server."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

import uvicorn

from .server import create_app
from .services.settings import Settings, SettingsStore, load_env_file, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the server process."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug(
        "Logging configured (level=%s, file=%s)",
        logging.getLevelName(level),
        logging_utils.get_log_path(),
    )


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings, then layer CLI and environment overrides on top."""

    active_store = store or SettingsStore(path)
    return active_store.load(overrides=overrides)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``harmonyproxy`` console script."""

    args = _parse_cli_args(argv)
    load_env_file(args.env_file)

    debug = args.debug or _env_flag("HARMONYPROXY_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("HARMONYPROXY_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.host:
        cli_overrides["host"] = args.host
    if args.port:
        cli_overrides["port"] = args.port

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if args.save_settings:
        path = settings_store.save(settings)
        print(f"Settings saved to {path}")
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
        debug = True

    if not settings.api_key:
        print(
            "No API key configured. Set GROQ_API_KEY (or HARMONYPROXY_API_KEY) in the environment or a .env file.",
            file=sys.stderr,
        )
        raise SystemExit(1)

    _LOGGER.info(
        "Starting harmonyproxy on %s:%d (upstream=%s model=%s key=%s)",
        settings.host,
        settings.port,
        settings.base_url,
        settings.model,
        redact_secret(settings.api_key),
    )
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="debug" if debug else "info")


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="harmonyproxy",
        add_help=True,
        description="Serve an OpenAI-compatible chat completions endpoint in front of a Harmony-format model.",
    )
    parser.add_argument("--host", metavar="HOST", help="Interface to bind (default from settings: 0.0.0.0).")
    parser.add_argument("--port", metavar="PORT", type=int, help="Port to listen on (default from settings: 3307).")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--save-settings",
        action="store_true",
        help="Persist the effective settings (without the API key) to the settings file and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.harmonyproxy/settings.json path.",
    )
    parser.add_argument("--env-file", metavar="PATH", help="Load environment variables from this .env file.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and type(None) in get_args(annotation):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is tuple:
        return tuple(part.strip() for part in normalized.split(",") if part.strip())
    if target is dict:
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {tuple, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _env_flag(name: str, *, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    payload["harmony_model_markers"] = list(settings.harmony_model_markers)
    document = {
        "settings": payload,
        "metadata": {"path": str(store.path), "cli_overrides": sorted(overrides)},
    }
    destination.write(json.dumps(document, indent=2, sort_keys=True))
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
