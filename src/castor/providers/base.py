"""Provider protocol: minimal interface for upstream backends.

A provider is a named source of handlers, one per capability it supports.
A handler knows where to send a request and how to decode the response;
the execution engine owns transport, retries and fallback.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from castor.context import CallContext

ResponseTransformer = Callable[["CallContext"], Awaitable[None]]
"""Async step that reads ``ctx.response.raw`` and writes ``ctx.response.data``."""


@runtime_checkable
class Handler(Protocol):
    """Per-capability request builder and response decoder."""

    @property
    def response_transformers(self) -> Sequence[ResponseTransformer]:
        """Ordered decode steps. Empty means the automatic JSON/SSE set."""
        ...

    def get_request_config(self, ctx: CallContext) -> Mapping[str, Any]:
        """Return url/method/headers/body (and any extras) for *ctx*."""
        ...


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: a name and a handler lookup."""

    @property
    def name(self) -> str:
        """Provider name used in errors and logs."""
        ...

    def get_handler(self, ctx: CallContext) -> Handler | None:
        """Return the handler for ``ctx.capability``, or None if unsupported."""
        ...


@dataclass(frozen=True)
class DefinedHandler:
    """Handler assembled from plain callables. See :func:`define_handler`."""

    request_builder: Callable[[CallContext], Mapping[str, Any]]
    response_transformers: tuple[ResponseTransformer, ...] = ()

    def get_request_config(self, ctx: CallContext) -> Mapping[str, Any]:
        return self.request_builder(ctx)


@dataclass(frozen=True)
class DefinedProvider:
    """Provider assembled from plain callables. See :func:`define_provider`."""

    name: str
    handler_lookup: Callable[[CallContext], Handler | None]

    def get_handler(self, ctx: CallContext) -> Handler | None:
        return self.handler_lookup(ctx)


def define_handler(
    get_request_config: Callable[[CallContext], Mapping[str, Any]],
    response_transformers: Sequence[ResponseTransformer] = (),
) -> DefinedHandler:
    """Validate and freeze a handler built from functions."""
    if not callable(get_request_config):
        raise ConfigurationError("define_handler: get_request_config must be callable")
    return DefinedHandler(get_request_config, tuple(response_transformers))


def define_provider(
    name: str, get_handler: Callable[[CallContext], Handler | None]
) -> DefinedProvider:
    """Validate and freeze a provider built from functions.

    Example:
        provider = define_provider("acme", lambda ctx: acme_chat)
        dispatcher.route({"provider": "acme"}, provider)
    """
    if not isinstance(name, str) or not name:
        raise ConfigurationError(
            'define_provider: "name" is required and must be a non-empty string'
        )
    if not callable(get_handler):
        raise ConfigurationError('define_provider: "get_handler" must be callable')
    return DefinedProvider(name, get_handler)
