"""Server-sent-event stream reconstruction for Harmony-dialect models.

A streamed Harmony response cannot emit tool calls incrementally: the
``<|tool_call|>`` markers only become recognizable once the whole text is
available. :class:`StreamReconstructor` forwards every upstream line as
soon as it arrives, accumulates the streamed content, and on the ``[DONE]``
sentinel emits one synthetic ``chat.completion.chunk`` carrying any tool
calls found in the accumulated text, followed by the sentinel itself.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Callable, Mapping

from .harmony import HarmonyDecodeResult, decode_response

__all__ = ["DONE_SENTINEL", "StreamAccumulator", "StreamReconstructor", "format_sse"]

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def format_sse(payload: Mapping[str, Any] | str) -> str:
    """Render one SSE ``data:`` event terminated by a blank line."""

    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {body}\n\n"


@dataclass(slots=True)
class StreamAccumulator:
    """Per-stream state; discarded once the stream closes."""

    raw_bytes: int = 0
    text_parts: list[str] = field(default_factory=list)
    saw_tool_call_deltas: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class StreamReconstructor:
    """Re-emit an upstream SSE stream, appending synthesized tool-call chunks."""

    def __init__(
        self,
        model: str,
        *,
        decoder: Callable[[str], HarmonyDecodeResult] = decode_response,
    ) -> None:
        self._model = model
        self._decoder = decoder
        self._state = StreamAccumulator()
        self._finished = False

    @property
    def accumulated_text(self) -> str:
        return self._state.text

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, line: str) -> list[str]:
        """Process one upstream line and return the frames to forward, in order."""

        if self._finished:
            return []
        line = line.rstrip("\r\n")
        self._state.raw_bytes += len(line.encode("utf-8")) + 1
        if not line.startswith(DATA_PREFIX):
            return [line + "\n"]

        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            frames: list[str] = []
            synthetic = self._synthesize_tool_chunk()
            if synthetic is not None:
                frames.append(format_sse(synthetic))
            frames.append(format_sse(DONE_SENTINEL))
            self._finished = True
            return frames

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            return [line + "\n"]
        self._observe(event)
        return [line + "\n"]

    async def reconstruct(self, lines: AsyncIterable[str]) -> AsyncIterator[str]:
        """Yield output frames for every line of ``lines``."""

        async for line in lines:
            for frame in self.feed(line):
                yield frame
            if self._finished:
                break
        if not self._finished:
            LOGGER.warning(
                "Upstream stream ended without %s after %d bytes; no tool calls synthesized",
                DONE_SENTINEL,
                self._state.raw_bytes,
            )

    def _observe(self, event: Any) -> None:
        if not isinstance(event, Mapping):
            return
        choices = event.get("choices") or []
        if not choices or not isinstance(choices[0], Mapping):
            return
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        if content:
            self._state.text_parts.append(str(content))
        if delta.get("tool_calls"):
            # Native fragments are not reliable across chunks; detection waits for the text.
            self._state.saw_tool_call_deltas = True
            LOGGER.debug("Upstream stream carried native tool call fragments")

    def _synthesize_tool_chunk(self) -> dict[str, Any] | None:
        text = self._state.text
        if not text:
            return None
        decoded = self._decoder(text)
        LOGGER.debug(
            "Stream completed: %d chars of content, %d tool call(s) decoded",
            len(text),
            len(decoded.tool_calls),
        )
        if not decoded.has_tool_calls:
            return None
        now = time.time()
        return {
            "id": f"chatcmpl-{int(now * 1000)}",
            "object": "chat.completion.chunk",
            "created": int(now),
            "model": self._model,
            "choices": [
                {
                    "index": 0,
                    "delta": {
                        "tool_calls": [call.to_openai(index=index) for index, call in enumerate(decoded.tool_calls)]
                    },
                    "finish_reason": "tool_calls",
                }
            ],
        }
