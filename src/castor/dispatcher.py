"""Dispatcher: the call surface tying routing, pipeline, retry and fallback together.

A call resolves its configuration once, expands the ``model`` key into an
ordered list of candidate targets and tries them in turn. Each candidate
gets a fresh :class:`~castor.context.CallContext`: its identifier is
parsed, a provider and handler are bound through the route chain, the
handler's request descriptor is merged in, and the interceptor pipeline
runs with the retrying transport step innermost. The first candidate to
succeed wins; if all fail, the last error is raised.

Example:
    dispatcher = create_dispatcher().auto_route()
    reply = await dispatcher.completion(model="gpt-4o-mini", messages=[...])

    async for chunk in dispatcher.completion(
        model=["openai/gpt-4o", "gpt-4o-mini"], messages=[...], stream=True
    ):
        ...
"""

from __future__ import annotations

from collections.abc import Mapping
import inspect
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from castor._http import JSON_CONTENT_TYPE, is_json_media_type, media_type
from castor.cancellation import CancellationToken
from castor.config import DEFAULTS, deep_merge, execution_settings, normalize_targets
from castor.context import CallContext
from castor.discovery import auto_discovery
from castor.errors import ConfigurationError, RequestTimeoutError
from castor.identifiers import parse_identifier
from castor.pipeline import compose
from castor.retry import create_transport_interceptor
from castor.routing import (
    AutoRoute,
    ConditionRoute,
    ResolverRoute,
    RouteCondition,
    resolve_route,
)
from castor.transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from castor.config import ExecutionSettings
    from castor.discovery import AutoDiscovery
    from castor.pipeline import Interceptor
    from castor.providers.base import Provider
    from castor.routing import MatchPattern, RouteEntry
    from castor.transport import Transport

logger = logging.getLogger(__name__)


class Dispatcher:
    """Route capability calls to providers with retries and fallback.

    Registration methods return ``self`` so they can be chained. Registration
    is expected to finish before calls start; calls only read it.

    Args:
        transport: Sends request descriptors. Defaults to an
            :class:`~castor.transport.HttpxTransport`.
        discovery: Backs :meth:`auto_route`. Defaults to the shared
            process-wide :data:`~castor.discovery.auto_discovery`.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        discovery: AutoDiscovery | None = None,
    ) -> None:
        self._interceptors: list[Interceptor] = []
        self._routes: list[RouteEntry] = []
        self._global_config: dict[str, Any] = {}
        self._capability_configs: dict[str, dict[str, Any]] = {}
        self._transport: Transport = transport if transport is not None else HttpxTransport()
        self._discovery = discovery if discovery is not None else auto_discovery

    # --- registration ---

    def use(self, interceptor: Interceptor) -> Dispatcher:
        """Append an interceptor. Earlier registrations wrap later ones."""
        if not callable(interceptor):
            raise ConfigurationError(
                "use() expects an async interceptor function",
                hint="Register providers with route(), not use().",
            )
        self._interceptors.append(interceptor)
        return self

    def route(
        self,
        condition: (
            Mapping[str, MatchPattern]
            | RouteCondition
            | Callable[[CallContext], Provider | None]
        ),
        provider: Provider | None = None,
    ) -> Dispatcher:
        """Append a route.

        ``route({"model": re.compile("^gpt-")}, provider)`` commits to
        *provider* when the condition matches. ``route(resolver)`` calls
        ``resolver(ctx)`` and skips the entry when it returns a falsy value.
        """
        if isinstance(condition, (Mapping, RouteCondition)):
            if provider is None:
                raise ConfigurationError("Provider is required for a condition route")
            if isinstance(condition, Mapping):
                condition = RouteCondition.from_mapping(condition)
            self._routes.append(ConditionRoute(condition, provider))
            return self
        if callable(condition):
            if provider is not None:
                raise ConfigurationError(
                    "A resolver route takes no provider argument",
                    hint="Return the provider from the resolver instead.",
                )
            self._routes.append(ResolverRoute(condition))
            return self
        raise ConfigurationError(
            f"route() expects a condition mapping or a resolver, got {type(condition).__name__}"
        )

    def auto_route(self) -> Dispatcher:
        """Append an auto-discovery entry to the route chain."""
        self._routes.append(AutoRoute())
        return self

    def configure(
        self,
        config_or_capability: Mapping[str, Any] | str,
        config: Mapping[str, Any] | None = None,
    ) -> Dispatcher:
        """Merge into the global config, or into one capability's config.

        ``configure({...})`` updates the global layer;
        ``configure("completion", {...})`` updates the per-capability layer.
        """
        if isinstance(config_or_capability, str):
            existing = self._capability_configs.get(config_or_capability)
            self._capability_configs[config_or_capability] = deep_merge(existing, config)
            return self
        if config is not None:
            raise ConfigurationError(
                "configure() takes a capability name when given two arguments"
            )
        self._global_config = deep_merge(self._global_config, config_or_capability)
        return self

    # --- calls ---

    def completion(self, **params: Any) -> Any:
        """Chat completion. Await the result, or iterate it when ``stream=True``."""
        return self.invoke("completion", **params)

    def embedding(self, **params: Any) -> Any:
        """Embedding vectors for ``input``. Await the result."""
        return self.invoke("embedding", **params)

    def speech(self, **params: Any) -> Any:
        """Synthesized audio bytes for ``input``, or SSE deltas with ``stream=True``."""
        return self.invoke("speech", **params)

    def image_generation(self, **params: Any) -> Any:
        return self.invoke("image_generation", **params)

    def invoke(self, capability: str, **params: Any) -> Any:
        """Run *capability* with per-call *params*.

        Configuration problems raise here, before anything is awaited.

        Returns:
            An awaitable resolving to the decoded payload, or, when the
            resolved config sets ``stream``, an async iterator whose first
            pull runs the whole call.
        """
        config, targets, settings = self._resolve_config(capability, params)
        if settings.stream:
            return self._execute_stream(capability, config, targets, settings)
        return self._execute(capability, config, targets, settings)

    async def aclose(self) -> None:
        """Close the transport when it supports closing."""
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    # --- internals ---

    def _resolve_config(
        self, capability: str, params: Mapping[str, Any]
    ) -> tuple[dict[str, Any], list[str], ExecutionSettings]:
        config = deep_merge(
            DEFAULTS,
            self._global_config,
            self._capability_configs.get(capability),
            params,
        )
        targets = normalize_targets(config)
        settings = execution_settings(config)

        on_fallback = config.get("on_fallback")
        if on_fallback is not None and not callable(on_fallback):
            raise ConfigurationError("on_fallback must be callable")
        cancel = config.get("cancel")
        if cancel is not None and not isinstance(cancel, CancellationToken):
            raise ConfigurationError(
                f"cancel must be a CancellationToken, got {type(cancel).__name__}"
            )
        return config, targets, settings

    def _open_token(
        self, config: Mapping[str, Any], settings: ExecutionSettings
    ) -> CancellationToken:
        timeout_s = settings.timeout / 1000 if settings.timeout is not None else None
        return CancellationToken.linked(config.get("cancel"), timeout_s=timeout_s)

    async def _execute(
        self,
        capability: str,
        config: dict[str, Any],
        targets: list[str],
        settings: ExecutionSettings,
    ) -> Any:
        cancel = self._open_token(config, settings)
        try:
            ctx = await self._run_with_fallback(capability, config, targets, cancel)
        finally:
            cancel.dispose()
        return ctx.response.data

    async def _execute_stream(
        self,
        capability: str,
        config: dict[str, Any],
        targets: list[str],
        settings: ExecutionSettings,
    ) -> AsyncIterator[Any]:
        cancel = self._open_token(config, settings)
        try:
            ctx = await self._run_with_fallback(capability, config, targets, cancel)
            stream = ctx.response.data
            if stream is None:
                return
            try:
                async for item in stream:
                    yield item
            except Exception as exc:
                if (
                    cancel.is_timeout
                    and settings.timeout is not None
                    and not isinstance(exc, RequestTimeoutError)
                ):
                    raise RequestTimeoutError(settings.timeout) from exc
                raise
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        finally:
            cancel.dispose()

    async def _run_with_fallback(
        self,
        capability: str,
        config: dict[str, Any],
        targets: list[str],
        cancel: CancellationToken,
    ) -> CallContext:
        pipeline = compose([*self._interceptors, create_transport_interceptor(self._transport)])
        on_fallback = config.get("on_fallback")
        last_error: Exception | None = None

        for i, target in enumerate(targets):
            ctx: CallContext | None = None
            try:
                ctx = self._create_context(capability, config, target, cancel)
                await pipeline(ctx)
            except Exception as exc:
                last_error = exc
                if ctx is not None:
                    ctx.error = exc
                    ctx.end_time = time.monotonic()
                if i < len(targets) - 1:
                    next_target = targets[i + 1]
                    logger.warning(
                        "Target %s failed (%s: %s); falling back to %s",
                        target,
                        type(exc).__name__,
                        exc,
                        next_target,
                    )
                    if on_fallback is not None:
                        await _maybe_await(on_fallback(exc, target, next_target))
                continue

            ctx.end_time = time.monotonic()
            return ctx

        if last_error is None:  # pragma: no cover
            raise RuntimeError("fallback loop ran without candidates")
        raise last_error

    def _create_context(
        self,
        capability: str,
        config: dict[str, Any],
        target: str,
        cancel: CancellationToken,
    ) -> CallContext:
        parsed = parse_identifier(target)
        ctx = CallContext.from_identifier(capability, config, parsed, cancel=cancel)
        resolve_route(ctx, self._routes, self._discovery)
        if ctx.handler is None:  # pragma: no cover
            raise RuntimeError("route resolution returned without a handler")

        request = ctx.request
        request.merge(ctx.handler.get_request_config(ctx))
        if "content-type" not in request.headers:
            request.headers["Content-Type"] = JSON_CONTENT_TYPE
        body = request.body
        if (
            body is not None
            and not isinstance(body, (str, bytes, bytearray))
            and is_json_media_type(media_type(request.headers))
        ):
            request.body = json.dumps(body)
        return ctx


async def _maybe_await(value: Awaitable[Any] | Any) -> None:
    if inspect.isawaitable(value):
        await value


def create_dispatcher(
    *,
    transport: Transport | None = None,
    discovery: AutoDiscovery | None = None,
) -> Dispatcher:
    """Return a new, independent :class:`Dispatcher`."""
    return Dispatcher(transport=transport, discovery=discovery)


#: Shared instance for zero-setup use. Its default transport opens a fresh
#: HTTP client per event loop, so it survives repeated ``asyncio.run()``.
dispatcher = Dispatcher()
