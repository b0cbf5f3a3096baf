"""FastAPI application exposing the OpenAI-compatible HTTP surface."""

from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException

from . import __version__
from .ai.ai_types import ChatRequest
from .ai.client import ClientSettings, InferenceClient
from .ai.compat import CompatibilityFlags
from .ai.orchestration import (
    ChatHandler,
    CompletionHandler,
    ExecutorConfig,
    OrchestratorOptions,
    ToolExecutor,
    ToolOrchestrator,
    ToolRegistry,
)
from .ai.stream import DONE_SENTINEL, format_sse
from .ai.tools import register_builtin_tools
from .errors import ProxyError, RequestValidationError
from .services.settings import Settings
from .utils.logging import safe_dumps

__all__ = ["build_orchestrator", "create_app", "detect_compatibility"]

LOGGER = logging.getLogger(__name__)

_CODING_CLIENT_MARKERS = ("cline", "roo", "vscode", "cursor", "kilo")
_COMPAT_TOOL_THRESHOLD = 5
_STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def detect_compatibility(user_agent: str | None, request: ChatRequest) -> CompatibilityFlags:
    """Decide which compatibility adjustments a request needs."""

    agent = (user_agent or "").lower()
    if any(marker in agent for marker in _CODING_CLIENT_MARKERS):
        return CompatibilityFlags.CODING_CLIENT
    tools = request.tools or []
    if tools and request.tool_choice_mode == "none":
        return CompatibilityFlags.CODING_CLIENT
    names = {(tool.get("function") or {}).get("name") for tool in tools}
    if len(tools) > _COMPAT_TOOL_THRESHOLD and "ask_followup_question" in names:
        return CompatibilityFlags.CODING_CLIENT
    return CompatibilityFlags.NONE


def build_orchestrator(settings: Settings, *, client: InferenceClient | None = None) -> ToolOrchestrator:
    """Wire the inference client, tool registry and executor into an orchestrator."""

    client = client or InferenceClient(ClientSettings.from_settings(settings))
    registry = ToolRegistry()
    if settings.include_builtin_tools:
        register_builtin_tools(registry, Path(settings.workspace_root) if settings.workspace_root else None)
    executor = ToolExecutor(
        registry,
        ExecutorConfig(
            default_timeout=settings.tool_timeout,
            max_concurrent=settings.max_concurrent_tools,
            log_arguments=settings.debug_logging,
            log_results=settings.debug_logging,
        ),
    )
    options = OrchestratorOptions(
        enable_auto_tool_execution=settings.enable_auto_tool_execution,
        max_tool_iterations=settings.max_tool_iterations,
        include_builtin_tools=settings.include_builtin_tools,
    )
    return ToolOrchestrator(ChatHandler(client), executor, options)


def _error_response(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "code": None}},
    )


async def _read_chat_request(request: Request) -> ChatRequest:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RequestValidationError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise RequestValidationError("Request body must be a JSON object")
    return ChatRequest.from_payload(payload)


async def _primed_stream(frames: AsyncIterator[str]) -> AsyncIterator[str]:
    """Pull the first frame eagerly so upstream failures surface as HTTP errors."""

    iterator = frames.__aiter__()
    try:
        first = await anext(iterator)
    except StopAsyncIteration:
        first = None

    async def _body() -> AsyncIterator[str]:
        if first is not None:
            yield first
        try:
            async for frame in iterator:
                yield frame
        except ProxyError as exc:
            LOGGER.error("Stream aborted: %s", exc.message)
            yield format_sse(exc.to_dict())
            yield format_sse(DONE_SENTINEL)

    return _body()


def create_app(settings: Settings | None = None, handler: CompletionHandler | None = None) -> FastAPI:
    """Create the proxy application; ``handler`` defaults to a fully wired orchestrator."""

    settings = settings or Settings()
    started_at = time.monotonic()
    owns_handler = handler is None
    handler = handler or build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_handler and isinstance(handler, ToolOrchestrator):
            await handler.handler.client.aclose()

    app = FastAPI(title="Harmony Proxy", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.handler = handler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "User-Agent"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        start = time.perf_counter()
        LOGGER.info(
            "%s %s %s (user-agent=%s)",
            request_id,
            request.method,
            request.url.path,
            request.headers.get("user-agent", "unknown"),
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        LOGGER.info(
            "%s completed status=%d in %.1fms",
            request_id,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        LOGGER.warning("Request failed (%d): %s", exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _error_response(404, f"Route {request.method} {request.url.path} not found", "not_found_error")
        return _error_response(exc.status_code, str(exc.detail), "invalid_request_error")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error while serving %s", request.url.path)
        return _error_response(500, "Internal server error", "internal_server_error")

    @app.get("/")
    async def index() -> dict[str, Any]:
        return {
            "name": "harmonyproxy",
            "version": __version__,
            "model": settings.model,
            "endpoints": ["/health", "/v1/models", "/v1/tools", "/v1/chat/completions"],
            "features": ["harmony-format", "tool-calling", "auto-tool-execution", "streaming"],
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": int(time.time()),
            "uptime": round(time.monotonic() - started_at, 1),
        }

    @app.get("/v1/models")
    async def models() -> dict[str, Any]:
        return await handler.list_models()

    @app.get("/v1/tools")
    async def tools() -> dict[str, Any]:
        if not isinstance(handler, ToolOrchestrator):
            return {"object": "list", "data": [], "stats": {}}
        return {"object": "list", "data": handler.available_tools(), "stats": handler.stats()}

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        chat_request = await _read_chat_request(request)
        LOGGER.debug("%s request payload: %s", request.state.request_id, safe_dumps(chat_request.to_payload()))
        flags = detect_compatibility(request.headers.get("user-agent"), chat_request)
        if flags:
            LOGGER.debug("Compatibility adjustments for %s: %s", request.state.request_id, flags)
        if chat_request.stream:
            frames = await _primed_stream(handler.stream(chat_request, flags=flags))
            return StreamingResponse(frames, media_type="text/event-stream", headers=_STREAM_HEADERS)
        return await handler.complete(chat_request, flags=flags)

    return app
