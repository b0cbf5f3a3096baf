"""Best-effort parsing of loosely formatted JSON argument objects.

Models frequently emit tool arguments that are *almost* JSON: bare keys,
unquoted string values, trailing commas or single quotes. The helpers here
walk a fixed ladder (strict parse, repaired parse, empty object) and never
raise.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal

__all__ = ["ParseStage", "repair_loose_json", "parse_loose_object", "try_parse_json_block"]

LOGGER = logging.getLogger(__name__)

ParseStage = Literal["strict", "repaired", "empty"]

_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w\-]*)\s*:")
_UNQUOTED_VALUE_RE = re.compile(r":\s*([^\s\"',{\[\]}](?:[^\"',{\[\]}]*[^\s\"',{\[\]}])?)\s*(?=[,}])")
_TRAILING_OBJECT_COMMA_RE = re.compile(r",\s*}")
_TRAILING_ARRAY_COMMA_RE = re.compile(r",\s*]")
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_JSON_LITERALS = frozenset({"true", "false", "null"})


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    if isinstance(result, dict):
        return result
    return None


def repair_loose_json(text: str) -> str:
    """Rewrite common near-JSON mistakes into strict JSON text.

    The output is not guaranteed to parse; callers must still handle failure.
    """

    repaired = (text or "").strip()
    if not repaired:
        return "{}"
    if '"' not in repaired and "'" in repaired:
        repaired = repaired.replace("'", '"')
    repaired = _BARE_KEY_RE.sub(r'\1"\2":', repaired)
    repaired = _UNQUOTED_VALUE_RE.sub(_quote_scalar, repaired)
    repaired = _TRAILING_OBJECT_COMMA_RE.sub("}", repaired)
    repaired = _TRAILING_ARRAY_COMMA_RE.sub("]", repaired)
    return repaired


def parse_loose_object(text: str) -> tuple[dict[str, Any], ParseStage]:
    """Parse ``text`` into a dict using the strict → repaired → empty ladder."""

    if not text or not text.strip():
        return {}, "empty"
    parsed = try_parse_json_block(text)
    if parsed is not None:
        return parsed, "strict"
    repaired = try_parse_json_block(repair_loose_json(text))
    if repaired is not None:
        LOGGER.debug("Repaired loose tool arguments: %r", text[:200])
        return repaired, "repaired"
    LOGGER.warning("Unparseable tool arguments, falling back to empty object: %r", text[:200])
    return {}, "empty"


def _quote_scalar(match: re.Match[str]) -> str:
    value = match.group(1).strip()
    if value in _JSON_LITERALS or _NUMBER_RE.fullmatch(value):
        return f": {value}"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f': "{escaped}"'
