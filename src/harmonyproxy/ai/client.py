"""Async inference client built around OpenAI-compatible endpoints.

Requests for Harmony-dialect models are rewritten before they leave the
process: the conversation is encoded into a single prompt message and the
returned text is decoded back into OpenAI-shaped content and tool calls.
Every other model passes through untouched in both directions.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence, cast

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

try:  # pragma: no cover - optional dependency used when installed
    import tiktoken  # type: ignore
except Exception:  # pragma: no cover - optional fallback when package missing
    tiktoken = None

from ..errors import UpstreamError
from ..utils.logging import safe_dumps
from .ai_types import GENERATION_PARAMS, ChatRequest, TokenCounterProtocol, message_text
from .harmony import decode_response, encode_conversation
from .stream import StreamReconstructor

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "ClientSettings",
    "InferenceClient",
    "is_harmony_model",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_TIKTOKEN_WARNING_EMITTED = False
_USER_AGENT = "harmonyproxy/1.0"


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        if tiktoken is None:  # pragma: no cover - depends on optional dependency
            raise RuntimeError("tiktoken is not installed")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text))
        except Exception:  # pragma: no cover - tokenizer failures fall back to the estimate
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        token_module = cast(Any, tiktoken)
        try:
            if encoding_name:
                return token_module.get_encoding(encoding_name)
            return token_module.encoding_for_model(model_name)
        except Exception:  # pragma: no cover - falls back to default encoding
            # Harmony models are not in tiktoken's model table.
            LOGGER.debug("Falling back to o200k_base encoding for model %s", model_name)
            return token_module.get_encoding("o200k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - tokenizer failures fall back to the estimate
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def _log_tiktoken_warning_once() -> None:
    global _TIKTOKEN_WARNING_EMITTED
    if _TIKTOKEN_WARNING_EMITTED:
        return
    _TIKTOKEN_WARNING_EMITTED = True
    LOGGER.warning(
        "tiktoken is not installed; using approximate byte counter for usage estimates. Install the optional "
        "[tokenizers] dependency group for exact counts."
    )


def is_harmony_model(model: str, markers: Sequence[str] = ("gpt-oss",)) -> bool:
    """Return True when ``model`` speaks the Harmony dialect."""

    lowered = (model or "").lower()
    return any(marker.lower() in lowered for marker in markers if marker)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the inference client."""

    base_url: str
    api_key: str
    model: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    harmony_model_markers: tuple[str, ...] = ("gpt-oss",)
    default_params: Mapping[str, Any] = field(default_factory=dict)
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> ClientSettings:
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers or {}),
            harmony_model_markers=tuple(settings.harmony_model_markers),
            default_params={"max_tokens": settings.max_tokens, "temperature": settings.temperature},
            debug_logging=settings.debug_logging,
        )


class InferenceClient:
    """Async client for the remote chat-completion endpoint with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def is_harmony(self, model: str) -> bool:
        return is_harmony_model(model, self._settings.harmony_model_markers)

    def build_body(self, request: ChatRequest, *, stream: bool = False) -> Dict[str, Any]:
        """Build the upstream request body, applying the Harmony rewrite when needed."""

        messages: list[dict[str, Any]] = list(request.messages)
        tools = request.tools
        tool_choice = request.tool_choice

        if self.is_harmony(request.model):
            choice_mode = request.tool_choice_mode
            prompt = encode_conversation(
                request.messages,
                None if choice_mode == "none" else tools,
                tool_choice,
            )
            messages = [{"role": "user", "content": prompt}]
            if choice_mode == "none":
                tools = None
                tool_choice = None
            elif tools and tool_choice is None:
                tool_choice = "auto"

        body: Dict[str, Any] = {"model": request.model, "messages": messages}
        for key, value in self._settings.default_params.items():
            if value is not None:
                body[key] = value
        for key in GENERATION_PARAMS:
            value = request.params.get(key)
            if value is not None:
                body[key] = value
        if tools:
            body["tools"] = list(tools)
        if tool_choice is not None:
            body["tool_choice"] = tool_choice
        if stream:
            body["stream"] = True
        return body

    async def complete(self, request: ChatRequest) -> Dict[str, Any]:
        """Run one buffered completion and return it as a plain dict."""

        body = self.build_body(request)
        harmony = self.is_harmony(request.model)
        LOGGER.debug(
            "Starting chat completion via %s with %d message(s) (harmony=%s)",
            request.model,
            len(request.messages),
            harmony,
        )
        if self._settings.debug_logging:
            LOGGER.debug("Upstream request body: %s", safe_dumps(body))

        completion: Any = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    completion = await self._client.chat.completions.create(**body)
        except APIStatusError as exc:
            raise self._upstream_error(exc) from exc
        except (APIConnectionError, httpx.HTTPError) as exc:
            raise UpstreamError(f"Upstream request failed: {exc}") from exc

        response = _as_dict(completion)
        if self._settings.debug_logging:
            LOGGER.debug("Upstream response: %s", safe_dumps(response))
        if harmony:
            self._rewrite_harmony_choice(response)
        if not response.get("usage"):
            response["usage"] = self._estimate_usage(body, response)
        return response

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield SSE frames (each newline-terminated) for a streamed completion."""

        lines = self._stream_lines(self.build_body(request, stream=True))
        if not self.is_harmony(request.model):
            async for line in lines:
                yield line + "\n"
            return
        reconstructor = StreamReconstructor(request.model)
        async for frame in reconstructor.reconstruct(lines):
            yield frame

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            try:
                response = await self._client.models.list()
            except APIStatusError as exc:
                raise self._upstream_error(exc) from exc
            except (APIConnectionError, httpx.HTTPError) as exc:
                raise UpstreamError(f"Upstream request failed: {exc}") from exc
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def count_tokens(self, text: str, *, model: str | None = None) -> int:
        if not text:
            return 0
        return self._token_registry.count(model or self._settings.model, text)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    async def _stream_lines(self, body: Mapping[str, Any]) -> AsyncIterator[str]:
        LOGGER.debug("Starting streamed chat completion via %s", body.get("model"))
        if self._settings.debug_logging:
            LOGGER.debug("Upstream request body: %s", safe_dumps(body))
        started = False
        try:
            async for attempt in self._retrying():
                with attempt:
                    async with self._client.chat.completions.with_streaming_response.create(**body) as response:
                        try:
                            async for line in response.iter_lines():
                                started = True
                                yield line
                        except (APIConnectionError, httpx.HTTPError) as exc:
                            # Lines already reached the caller; a retry would duplicate them.
                            if not started:
                                raise
                            raise UpstreamError(f"Upstream stream interrupted: {exc}") from exc
        except APIStatusError as exc:
            raise self._upstream_error(exc) from exc
        except (APIConnectionError, httpx.HTTPError) as exc:
            raise UpstreamError(f"Upstream request failed: {exc}") from exc

    def _rewrite_harmony_choice(self, response: Dict[str, Any]) -> None:
        choices = response.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content")
        if not content:
            return
        decoded = decode_response(message_text(content))
        message["content"] = decoded.clean_text
        if decoded.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in decoded.tool_calls]
            choice["finish_reason"] = decoded.finish_reason
            LOGGER.debug("Decoded %d Harmony tool call(s)", len(decoded.tool_calls))
        choice["message"] = message

    def _estimate_usage(self, body: Mapping[str, Any], response: Mapping[str, Any]) -> Dict[str, int]:
        model = str(body.get("model") or "")
        prompt_text = "\n".join(message_text(message.get("content")) for message in body.get("messages") or [])
        completion_text = ""
        choices = response.get("choices") or []
        if choices:
            completion_text = message_text((choices[0].get("message") or {}).get("content"))
        prompt_tokens = self.count_tokens(prompt_text, model=model)
        completion_tokens = self.count_tokens(completion_text, model=model)
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = {"User-Agent": _USER_AGENT}
        if settings.default_headers:
            headers.update(settings.default_headers)
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            default_headers=headers,
            # Retries are handled by tenacity in _retrying().
            max_retries=0,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        counter = self._build_token_counter(model_name)
        if counter is None:
            return
        try:
            self._token_registry.register(model_name, counter)
        except ValueError:
            LOGGER.debug("Unable to register token counter for model %s", model_name)

    def _build_token_counter(self, model_name: str) -> TokenCounterProtocol | None:
        if not model_name:
            return None
        if tiktoken is None:
            _log_tiktoken_warning_once()
            return ApproxByteCounter(model_name=model_name)
        try:
            return TiktokenCounter(model_name)
        except Exception as exc:  # pragma: no cover - tokenizer setup is best effort
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            return ApproxByteCounter(model_name=model_name)

    def _retrying(self) -> AsyncRetrying:
        # Only transport failures and rate limits are retried; other statuses surface immediately.
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    @staticmethod
    def _upstream_error(exc: APIStatusError) -> UpstreamError:
        body = ""
        response = getattr(exc, "response", None)
        if response is not None:
            try:
                body = response.text
            except Exception:  # pragma: no cover - unread streaming bodies
                body = ""
        status = getattr(exc, "status_code", None)
        LOGGER.error("Upstream API error %s: %s", status, body[:500] or exc)
        return UpstreamError(
            f"Upstream request failed: {status} - {body or exc}",
            upstream_status=status,
            body=body,
        )


def _as_dict(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, Mapping):
        return dict(payload)
    dump = getattr(payload, "model_dump", None)
    if dump is None:
        raise TypeError(f"Unsupported completion payload: {type(payload)!r}")
    return cast(Dict[str, Any], dump(mode="json", exclude_none=True))
