"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, marker handling,
automatic API test skipping and small transport/provider doubles.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import httpx
import pytest

from castor.cancellation import CancellationToken
from castor.context import RequestConfig
from castor.providers.base import DefinedProvider, define_handler, define_provider

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class ScriptedTransport:
    """Transport double that answers from a scripted sequence.

    Items are responses, exceptions to raise, or callables receiving the
    request. An exhausted script answers ``200 {}``.
    """

    script: list[Any] = field(default_factory=list)
    requests: list[RequestConfig] = field(default_factory=list)
    cancels: list[CancellationToken | None] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def __call__(
        self, request: RequestConfig, *, cancel: CancellationToken | None = None
    ) -> httpx.Response:
        self.requests.append(request)
        self.cancels.append(cancel)
        if cancel is not None:
            cancel.raise_if_aborted()
        if not self.script:
            return httpx.Response(200, json={})
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return item(request)


async def _aiter(chunks: Iterable[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def sse_response(*chunks: bytes | str, status_code: int = 200) -> httpx.Response:
    """Build a streaming ``text/event-stream`` response from raw chunks."""
    raw = [c.encode() if isinstance(c, str) else c for c in chunks]
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=_aiter(raw),
    )


def make_provider(
    name: str = "fake",
    *,
    url: str = "https://fake.test/v1/call",
    transformers: Iterable[Any] = (),
    capabilities: Iterable[str] = ("completion",),
) -> DefinedProvider:
    """Provider double whose handler posts ``{"model": ..., "q": ...}`` to *url*."""
    supported = frozenset(capabilities)

    def build(ctx: Any) -> dict[str, Any]:
        return {"url": url, "body": {"model": ctx.model, "q": ctx.config.get("q")}}

    handler = define_handler(build, list(transformers))
    return define_provider(
        name, lambda ctx: handler if ctx.capability in supported else None
    )


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def provider_factory() -> Callable[..., DefinedProvider]:
    return make_provider


@pytest.fixture
def sse_factory() -> Callable[..., httpx.Response]:
    return sse_response


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears OPENAI_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith("OPENAI_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

# Cheapest chat model that still exercises the full wire format.
_OPENAI_TEST_MODEL = "gpt-5-nano"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def openai_test_model():
    """Return the model to use for OpenAI API tests."""
    return _OPENAI_TEST_MODEL
