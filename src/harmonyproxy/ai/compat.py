"""Client compatibility adjustments.

Some coding-assistant clients send very large tool catalogues or omit
``tool_choice`` entirely. The HTTP layer decides which adjustments apply
and hands the result to the core as :class:`CompatibilityFlags`.
"""

from __future__ import annotations

import enum
import logging

from .ai_types import ChatRequest

__all__ = ["CompatibilityFlags", "MAX_COMPAT_TOOLS", "apply_compatibility"]

LOGGER = logging.getLogger(__name__)

MAX_COMPAT_TOOLS = 10


class CompatibilityFlags(enum.Flag):
    """Adjustments applied to a request before it is sent upstream."""

    NONE = 0
    TRIM_TOOLS = enum.auto()
    DEFAULT_TOOL_CHOICE_AUTO = enum.auto()
    CODING_CLIENT = TRIM_TOOLS | DEFAULT_TOOL_CHOICE_AUTO


def apply_compatibility(request: ChatRequest, flags: CompatibilityFlags) -> ChatRequest:
    """Return ``request`` adjusted for ``flags``; the input is never mutated."""

    if not flags:
        return request
    tools = request.tools
    tool_choice = request.tool_choice
    if CompatibilityFlags.TRIM_TOOLS in flags and tools and len(tools) > MAX_COMPAT_TOOLS:
        LOGGER.debug("Trimming tool list from %d to %d entries", len(tools), MAX_COMPAT_TOOLS)
        tools = tools[:MAX_COMPAT_TOOLS]
    if CompatibilityFlags.DEFAULT_TOOL_CHOICE_AUTO in flags and tools and tool_choice is None:
        tool_choice = "auto"
    if tools is request.tools and tool_choice is request.tool_choice:
        return request
    return request.evolve(tools=tools, tool_choice=tool_choice)
