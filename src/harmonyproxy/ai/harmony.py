"""Harmony prompt encoding and response decoding.

The target model family speaks a tag-delimited text dialect. Every
conversation turn is rendered as ``<|role|>\\n...<|end|>`` and tool
invocations use the calling convention::

    <|tool_call|>function_name({"param": "value"})<|end_tool_call|>

Tool results are rendered as ``<|tool_result|>`` blocks carrying the tool
name and its textual output, so they never re-enter the prompt as user or
assistant text. The decoder understands exactly the tags emitted here.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .ai_types import ToolCall, message_text, new_tool_call_id
from .json_repair import parse_loose_object

__all__ = [
    "TOOL_CALL_START",
    "TOOL_CALL_END",
    "TOOL_CALL_RE",
    "CALLING_CONVENTION",
    "SUPPRESSION_PREAMBLE",
    "SUPPRESSION_REMINDER",
    "HarmonyDecodeResult",
    "encode_conversation",
    "decode_response",
    "format_tool_call",
    "narrates_tool_syntax",
    "normalize_tool_marker_text",
    "should_suppress_tools",
]

LOGGER = logging.getLogger(__name__)

END_TAG = "<|end|>"
TOOL_CALL_START = "<|tool_call|>"
TOOL_CALL_END = "<|end_tool_call|>"
TOOL_RESULT_TAG = "<|tool_result|>"
CALLING_CONVENTION = f'{TOOL_CALL_START}function_name({{"param": "value"}}){TOOL_CALL_END}'

BASE_PREAMBLE = "You are a helpful AI assistant."
TOOLS_PREAMBLE = "You are a helpful AI assistant that can use tools when needed."
SUPPRESSION_PREAMBLE = (
    "You are a helpful AI assistant. ABSOLUTELY CRITICAL: You are FORBIDDEN from using ANY tools, "
    "function calls, or XML tags whatsoever. Do NOT use <read_file>, <search_files>, <list_files>, "
    "<codebase_search>, or ANY other tool syntax. You MUST respond ONLY with plain text. NO EXCEPTIONS. "
    "Tools are completely disabled and unavailable for this request. Any attempt to use tools will "
    "result in an error."
)
SUPPRESSION_REMINDER = (
    "REMINDER: You are STRICTLY FORBIDDEN from using any tools or function calls. "
    "Respond with plain text only."
)

# Substrings that indicate a client prompt already narrates its own tool syntax.
TOOL_NARRATION_MARKERS: tuple[str, ...] = ("codebase_search", "read_file", "Tool Use", "<tool_name>")

# Normalizes stylized glyphs inside <|...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u200b"): "",
        ord("\ufeff"): "",
    }
)

TOOL_CALL_RE = re.compile(
    r"<\|tool_call\|>\s*(?P<name>[A-Za-z_][\w.\-]*)\s*\((?P<args>.*?)\)\s*<\|end_tool_call\|>",
    re.DOTALL,
)
_CHANNEL_RE = re.compile(r"<\|channel\|>\s*\w+\s*(?:<\|message\|>)?")
_START_ROLE_RE = re.compile(r"<\|start\|>\s*assistant\b")
_PROTOCOL_TAG_RE = re.compile(r"<\|[a-z_]+\|>")


@dataclass(slots=True, frozen=True)
class HarmonyDecodeResult:
    """Outcome of decoding one Harmony response."""

    clean_text: str
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)

    @property
    def finish_reason(self) -> str:
        return "tool_calls" if self.tool_calls else "stop"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def format_tool_call(name: str, arguments: str | Mapping[str, Any] | None) -> str:
    """Render one call in the calling convention the decoder matches."""

    if arguments is None:
        args_text = "{}"
    elif isinstance(arguments, str):
        args_text = arguments.strip() or "{}"
    else:
        args_text = json.dumps(arguments, ensure_ascii=False)
    return f"{TOOL_CALL_START}{name}({args_text}){TOOL_CALL_END}"


def narrates_tool_syntax(messages: Iterable[Mapping[str, Any]]) -> bool:
    """Return True when the conversation text already describes tool syntax."""

    for message in messages:
        text = message_text(message.get("content"))
        if any(marker in text for marker in TOOL_NARRATION_MARKERS):
            return True
    return False


def should_suppress_tools(
    messages: Sequence[Mapping[str, Any]],
    tool_choice: str | None,
    *,
    detect_narration: bool = True,
) -> bool:
    """Decide whether the prompt must forbid tool use.

    An explicit ``"none"`` always suppresses. Without an explicit choice the
    narration heuristic may suppress as well; any other explicit choice keeps
    tools enabled.
    """

    if tool_choice == "none":
        return True
    if tool_choice is None and detect_narration:
        return narrates_tool_syntax(messages)
    return False


def encode_conversation(
    messages: Sequence[Mapping[str, Any]],
    tools: Sequence[Mapping[str, Any]] | None = None,
    tool_choice: str | Mapping[str, Any] | None = None,
    *,
    add_generation_prompt: bool = True,
    detect_narration: bool = True,
) -> str:
    """Serialize ``messages`` (and the optional tool catalogue) to Harmony text."""

    choice = _choice_mode(tool_choice)
    suppress = should_suppress_tools(messages, choice, detect_narration=detect_narration)
    has_tools = bool(tools)

    if suppress:
        preamble = SUPPRESSION_PREAMBLE
    elif has_tools:
        preamble = TOOLS_PREAMBLE
    else:
        preamble = BASE_PREAMBLE
    parts: list[str] = [_block("system", preamble)]

    if has_tools and not suppress:
        parts.append(_block("system", _render_catalogue(tools or ())))

    # System messages after the last non-system turn are instructions for this turn.
    trailing_start = len(messages)
    while trailing_start > 0 and messages[trailing_start - 1].get("role") == "system":
        trailing_start -= 1
    turn_instructions: list[str] = []

    call_names: dict[str, str] = {}
    for index, message in enumerate(messages):
        role = message.get("role")
        content = message_text(message.get("content"))
        if role == "system":
            if not content:
                continue
            if not suppress:
                parts.append(_block("system", content))
            # Leading client system prompts describe their own tool syntax; drop them while suppressed.
            elif index >= trailing_start and trailing_start > 0:
                turn_instructions.append(content)
        elif role == "user":
            if content:
                parts.append(_block("user", content))
        elif role == "assistant":
            parts.append(_render_assistant(message, content, call_names))
        elif role == "tool":
            if content:
                name = message.get("name") or call_names.get(str(message.get("tool_call_id")), "unknown")
                parts.append(f"{TOOL_RESULT_TAG}\nTool: {name}\nResult: {content}{END_TAG}\n")
        else:
            LOGGER.debug("Skipping message with unsupported role %r", role)

    if suppress:
        parts.append(_block("system", SUPPRESSION_REMINDER))
        parts.extend(_block("system", content) for content in turn_instructions)
    if add_generation_prompt:
        parts.append("<|assistant|>\n")
    return "".join(parts)


def decode_response(text: str | None) -> HarmonyDecodeResult:
    """Extract tool calls and narrative text from a Harmony response.

    Decoding is unconditional: markers are extracted even when the request
    asked for no tools. Arguments that cannot be parsed degrade to ``{}``.
    """

    if not text:
        return HarmonyDecodeResult(clean_text="")
    normalized = normalize_tool_marker_text(text)
    calls: list[ToolCall] = []
    for match in TOOL_CALL_RE.finditer(normalized):
        name = match.group("name")
        arguments, stage = parse_loose_object(match.group("args"))
        if stage != "strict":
            LOGGER.debug("Tool call %s arguments resolved via %s parse", name, stage)
        calls.append(
            ToolCall(
                id=new_tool_call_id(),
                name=name,
                arguments_raw=json.dumps(arguments, ensure_ascii=False),
            )
        )

    cleaned = TOOL_CALL_RE.sub("", normalized)
    cleaned = _START_ROLE_RE.sub("", cleaned)
    cleaned = _CHANNEL_RE.sub("", cleaned)
    cleaned = _PROTOCOL_TAG_RE.sub("", cleaned)
    return HarmonyDecodeResult(clean_text=cleaned.strip(), tool_calls=tuple(calls))


def _choice_mode(tool_choice: str | Mapping[str, Any] | None) -> str | None:
    if isinstance(tool_choice, Mapping):
        value = tool_choice.get("type")
        return str(value) if value else None
    return tool_choice


def _block(role: str, content: str) -> str:
    return f"<|{role}|>\n{content}{END_TAG}\n"


def _render_catalogue(tools: Iterable[Mapping[str, Any]]) -> str:
    lines = ["Available tools:"]
    for tool in tools:
        function = tool.get("function") or {}
        name = function.get("name")
        if not name:
            continue
        lines.append(f"- {name}: {function.get('description') or 'No description'}")
        parameters = function.get("parameters")
        if parameters:
            lines.append(f"  Parameters: {json.dumps(parameters, ensure_ascii=False)}")
    lines.append("")
    lines.append(f"When using tools, format your calls as: {CALLING_CONVENTION}")
    return "\n".join(lines) + "\n"


def _render_assistant(message: Mapping[str, Any], content: str, call_names: dict[str, str]) -> str:
    rendered = ["<|assistant|>\n", content]
    for raw_call in message.get("tool_calls") or ():
        call = ToolCall.from_openai(raw_call)
        call_names[call.id] = call.name
        rendered.append("\n" + format_tool_call(call.name, call.arguments_raw))
    rendered.append(f"{END_TAG}\n")
    return "".join(rendered)
