"""Shared fixtures for the usage proxy test suite."""

from types import MappingProxyType
from unittest.mock import AsyncMock, MagicMock

import pytest

from usage_proxy.config.settings import get_settings
from usage_proxy.policy.base import CallState
from usage_proxy.policy.wordlist import load_wordlist
from usage_proxy.stats.models import StatsRecord

TENANT_KEY = "up-" + "a1B2c3D4" * 6
CHAT_TENANT_KEY = "up-chat" + "x" * 44
UPSTREAM_KEY = "Bearer sk-" + "Z9y8X7w6" * 6
AZURE_UPSTREAM_KEY = "Bearer " + "0a1b2c3d" * 4


@pytest.fixture(autouse=True)
def fresh_settings():
    """Every test starts from freshly read settings and wordlists."""
    get_settings.cache_clear()
    load_wordlist.cache_clear()
    yield
    get_settings.cache_clear()
    load_wordlist.cache_clear()


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(LOCAL_MODE="true", POLICY_MAX_TOKENS="100")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


@pytest.fixture
def valid_headers() -> dict:
    return {"x-up-api-key": TENANT_KEY, "authorization": UPSTREAM_KEY}


@pytest.fixture
def chat_request_body() -> dict:
    """Standard chat completions request body."""
    return {
        "model": "gpt-3.5-turbo",
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "Hello, how are you?"},
        ],
    }


@pytest.fixture
def chat_response_body() -> dict:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": "I am fine, thank you."},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 9, "completion_tokens": 6, "total_tokens": 15},
    }


def make_config(**overrides) -> MappingProxyType:
    """Local defaults with selected options overridden."""
    return MappingProxyType({**get_settings().local_defaults(), **overrides})


def make_state(
    request: dict | None = None,
    response: dict | None = None,
    endpoint: str = "/v1/chat/completions",
    forwarder=None,
    **config,
) -> CallState:
    return CallState(
        endpoint=endpoint,
        config=make_config(**config),
        stats=StatsRecord(endpoint=endpoint),
        request=request or {},
        response=response,
        upstream_key=UPSTREAM_KEY,
        upstream_base="https://api.openai.com",
        forwarder=forwarder,
    )


def mock_http_response(status_code: int = 200, json_body=None, content: bytes | None = None):
    """MagicMock standing in for an httpx.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_body
    if content is None:
        content = b"{}" if json_body is not None else b""
    response.content = content
    response.raise_for_status = MagicMock()
    return response


def mock_http_client() -> AsyncMock:
    client = AsyncMock()
    client.is_closed = False
    return client
