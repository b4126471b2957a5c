"""Transport primitive: send one request descriptor, return the raw response.

The transport does not read the body. Callers decide whether to buffer it
(``await response.aread()``) or consume it incrementally, and must close it
(``await response.aclose()``) when they discard it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from castor.cancellation import guarded

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from castor.cancellation import CancellationToken
    from castor.context import RequestConfig

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Callable that performs one HTTP exchange."""

    async def __call__(
        self, request: RequestConfig, *, cancel: CancellationToken | None = None
    ) -> httpx.Response:
        """Send *request* and return the response with its body unread."""
        ...


def _request_kwargs(request: RequestConfig) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"headers": request.headers}
    body = request.body
    if isinstance(body, (bytes, bytearray, str)):
        kwargs["content"] = body
    elif isinstance(body, Mapping):
        kwargs["data"] = body
    elif body is not None:
        kwargs["content"] = body
    params = request.extra.get("params")
    if params is not None:
        kwargs["params"] = params
    return kwargs


class HttpxTransport:
    """Transport backed by a shared ``httpx.AsyncClient``.

    The client is created lazily when not injected. Its own timeout is
    disabled; per-call timeouts are enforced by the call's cancellation
    token so a single deadline covers retries and backoff sleeps.

    An owned client is bound to the event loop that created it. When the
    transport is used from a different running loop (for example a second
    ``asyncio.run()``), a fresh client is created for that loop and the old
    one is dropped. Injected clients are used as-is; keeping them on one
    loop is the caller's responsibility.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if not self._owns_client:
            assert self._client is not None
            return self._client
        loop = asyncio.get_running_loop()
        if self._client is None or self._loop is not loop:
            if self._client is not None:
                logger.debug("Event loop changed; replacing the owned HTTP client")
            self._client = httpx.AsyncClient(timeout=None)
            self._loop = loop
        return self._client

    async def __call__(
        self, request: RequestConfig, *, cancel: CancellationToken | None = None
    ) -> httpx.Response:
        client = self._get_client()
        http_request = client.build_request(
            request.method, request.url, **_request_kwargs(request)
        )
        logger.debug("Sending %s %s", request.method, request.url)
        return await guarded(client.send(http_request, stream=True), cancel)

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._loop = None

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def iter_body(
    response: httpx.Response, cancel: CancellationToken | None = None
) -> AsyncIterator[bytes]:
    """Yield the response body in chunks, honouring *cancel* between reads."""
    iterator = response.aiter_bytes().__aiter__()
    while True:
        chunk = await guarded(_next_chunk(iterator), cancel)
        if chunk is None:
            return
        yield chunk
