"""Tests for the Harmony prompt encoder and response decoder."""

from __future__ import annotations

import json

from harmonyproxy.ai.harmony import (
    CALLING_CONVENTION,
    SUPPRESSION_PREAMBLE,
    SUPPRESSION_REMINDER,
    decode_response,
    encode_conversation,
    format_tool_call,
    normalize_tool_marker_text,
    should_suppress_tools,
)

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Get current weather",
        "parameters": {"type": "object", "properties": {"location": {"type": "string"}}, "required": ["location"]},
    },
}


class TestEncodeConversation:
    def test_plain_conversation_without_tools(self) -> None:
        prompt = encode_conversation(
            [
                {"role": "system", "content": "Be terse."},
                {"role": "user", "content": "Hello"},
            ]
        )

        assert prompt.startswith("<|system|>\nYou are a helpful AI assistant.<|end|>\n")
        assert "<|system|>\nBe terse.<|end|>\n" in prompt
        assert "<|user|>\nHello<|end|>\n" in prompt
        assert prompt.endswith("<|assistant|>\n")
        assert "Available tools" not in prompt

    def test_tool_catalogue_lists_each_tool_and_convention(self) -> None:
        prompt = encode_conversation([{"role": "user", "content": "Weather in Paris?"}], [WEATHER_TOOL])

        assert "can use tools when needed" in prompt
        assert "- get_weather: Get current weather" in prompt
        assert '"required": ["location"]' in prompt
        assert CALLING_CONVENTION in prompt

    def test_tool_choice_none_suppresses_tools_and_drops_system_prompts(self) -> None:
        prompt = encode_conversation(
            [
                {"role": "system", "content": "Custom client instructions."},
                {"role": "user", "content": "Summarize"},
            ],
            [WEATHER_TOOL],
            "none",
        )

        assert SUPPRESSION_PREAMBLE in prompt
        assert SUPPRESSION_REMINDER in prompt
        assert "Available tools" not in prompt
        assert "Custom client instructions." not in prompt
        assert prompt.index(SUPPRESSION_REMINDER) > prompt.index("<|user|>\nSummarize")

    def test_trailing_system_instruction_survives_suppression(self) -> None:
        prompt = encode_conversation(
            [
                {"role": "system", "content": "Custom client instructions."},
                {"role": "user", "content": "Weather?"},
                {"role": "tool", "tool_call_id": "c1", "name": "get_weather", "content": "sunny"},
                {"role": "system", "content": "Answer now without tools."},
            ],
            [WEATHER_TOOL],
            "none",
        )

        assert "Custom client instructions." not in prompt
        assert "<|system|>\nAnswer now without tools.<|end|>\n" in prompt
        assert prompt.index("Answer now without tools.") > prompt.index(SUPPRESSION_REMINDER)
        assert prompt.endswith("<|assistant|>\n")

    def test_narration_heuristic_only_applies_without_explicit_choice(self) -> None:
        messages = [{"role": "user", "content": "Use codebase_search to find it"}]

        assert should_suppress_tools(messages, None) is True
        assert should_suppress_tools(messages, "auto") is False
        assert should_suppress_tools(messages, None, detect_narration=False) is False

    def test_assistant_tool_calls_and_results_are_rendered_in_order(self) -> None:
        messages = [
            {"role": "user", "content": "Weather?"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": '{"location": "Oslo"}'}}
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": "Sunny"},
        ]

        prompt = encode_conversation(messages, [WEATHER_TOOL], "auto")

        call_text = '<|tool_call|>get_weather({"location": "Oslo"})<|end_tool_call|>'
        assert call_text in prompt
        assert "<|tool_result|>\nTool: get_weather\nResult: Sunny<|end|>" in prompt
        assert prompt.index(call_text) < prompt.index("<|tool_result|>")

    def test_empty_user_and_tool_messages_are_skipped(self) -> None:
        prompt = encode_conversation(
            [
                {"role": "user", "content": ""},
                {"role": "tool", "tool_call_id": "x", "content": ""},
                {"role": "user", "content": "real"},
            ],
            add_generation_prompt=False,
        )

        assert prompt.count("<|user|>") == 1
        assert "<|tool_result|>" not in prompt
        assert not prompt.endswith("<|assistant|>\n")


class TestDecodeResponse:
    def test_text_without_markers_is_returned_trimmed(self) -> None:
        result = decode_response("  Just an answer.  ")

        assert result.clean_text == "Just an answer."
        assert result.tool_calls == ()
        assert result.finish_reason == "stop"

    def test_single_call_is_extracted(self) -> None:
        result = decode_response(
            'Let me check. <|tool_call|>get_weather({"location": "Paris", "unit": "celsius"})<|end_tool_call|>'
        )

        assert result.clean_text == "Let me check."
        assert result.finish_reason == "tool_calls"
        [call] = result.tool_calls
        assert call.name == "get_weather"
        assert call.id.startswith("call_")
        assert json.loads(call.arguments_raw) == {"location": "Paris", "unit": "celsius"}

    def test_multiple_calls_keep_textual_order(self) -> None:
        text = (
            format_tool_call("first", {"a": 1})
            + " middle "
            + format_tool_call("second", {"b": 2})
        )

        result = decode_response(text)

        assert [call.name for call in result.tool_calls] == ["first", "second"]
        assert result.clean_text == "middle"
        assert len({call.id for call in result.tool_calls}) == 2

    def test_loose_arguments_are_repaired(self) -> None:
        result = decode_response("<|tool_call|>get_weather({location: Paris, days: 3,})<|end_tool_call|>")

        assert json.loads(result.tool_calls[0].arguments_raw) == {"location": "Paris", "days": 3}

    def test_unparseable_arguments_degrade_to_empty_object(self) -> None:
        result = decode_response("<|tool_call|>ping(((not json)<|end_tool_call|>")

        assert result.tool_calls[0].name == "ping"
        assert result.tool_calls[0].arguments_raw == "{}"

    def test_stylized_markers_are_normalized(self) -> None:
        text = '＜｜tool_call｜＞calc({"x": 1})＜｜end_tool_call｜＞'

        assert normalize_tool_marker_text(text) == '<|tool_call|>calc({"x": 1})<|end_tool_call|>'
        assert decode_response(text).tool_calls[0].name == "calc"

    def test_leftover_protocol_tags_are_stripped(self) -> None:
        result = decode_response("<|start|>assistant<|channel|>final<|message|>Done.<|end|>")

        assert result.clean_text == "Done."

    def test_empty_input(self) -> None:
        assert decode_response(None).clean_text == ""
        assert decode_response("").tool_calls == ()

    def test_encoded_call_decodes_back(self) -> None:
        encoded = format_tool_call("get_weather", '{"location": "Rome"}')

        [call] = decode_response(encoded).tool_calls

        assert call.name == "get_weather"
        assert json.loads(call.arguments_raw) == {"location": "Rome"}
