"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from harmonyproxy.ai.client import ClientSettings, InferenceClient, TokenCounterRegistry, ApproxByteCounter
from harmonyproxy.services.settings import Settings

from helpers import FakeAsyncOpenAI

_ENV_NAMES = (
    "GROQ_API_KEY",
    "HARMONYPROXY_API_KEY",
    "HARMONYPROXY_BASE_URL",
    "MODEL_NAME",
    "HARMONYPROXY_MODEL",
    "HOST",
    "PORT",
    "MAX_TOKENS",
    "TEMPERATURE",
    "HARMONYPROXY_WORKSPACE",
    "HARMONYPROXY_AUTO_TOOLS",
    "HARMONYPROXY_BUILTIN_TOOLS",
    "HARMONYPROXY_DEBUG_LOGGING",
    "HARMONYPROXY_REQUEST_TIMEOUT",
    "HARMONYPROXY_TOOL_TIMEOUT",
    "HARMONYPROXY_MAX_TOOL_ITERATIONS",
    "HARMONYPROXY_MAX_CONCURRENT_TOOLS",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(api_key="test-key", workspace_root=str(tmp_path))


@pytest.fixture
def client_settings() -> ClientSettings:
    return ClientSettings(
        base_url="https://example.invalid/v1",
        api_key="test-key",
        model="openai/gpt-oss-20b",
        max_retries=1,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )


@pytest.fixture
def make_client(client_settings):
    def _factory(fake: FakeAsyncOpenAI, **overrides) -> InferenceClient:
        settings = client_settings
        for key, value in overrides.items():
            setattr(settings, key, value)
        registry = TokenCounterRegistry(fallback=ApproxByteCounter())
        return InferenceClient(settings, client=fake, token_registry=registry)  # type: ignore[arg-type]

    return _factory
