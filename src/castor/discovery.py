"""Auto-discovery: lazy, cached provider lookup by provider key.

Backs :meth:`Dispatcher.auto_route`. Providers are found through an explicit
registry of loaders keyed by provider name. The registry starts with the
built-in providers and the ``castor.providers`` entry-point group, so
installed plugin distributions are picked up without extra wiring.

Each key is loaded at most once per process: successes are kept in
``loaded`` and failures in ``failed``. Neither map is ever evicted.
"""

from __future__ import annotations

from importlib.metadata import entry_points
import logging
import threading
from typing import TYPE_CHECKING, Any

from castor.identifiers import DEFAULT_PROVIDER_KEY

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from castor.context import CallContext
    from castor.providers.base import Provider

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "castor.providers"

#: Provider used when no key could be inferred from the target.
FALLBACK_PROVIDER = "openai"


def _load_builtin_openai() -> Any:
    from castor.providers import openai

    return openai


def _extract_provider(loaded: Any) -> Provider | None:
    """Accept a provider, or a module/object exposing ``auto_provider``."""
    provider = getattr(loaded, "auto_provider", loaded)
    if provider is None or not callable(getattr(provider, "get_handler", None)):
        return None
    return provider


def builtin_loaders() -> dict[str, Callable[[], Any]]:
    """Return loaders for built-in providers plus installed entry points."""
    loaders: dict[str, Callable[[], Any]] = {"openai": _load_builtin_openai}
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        loaders.setdefault(ep.name.lower(), ep.load)
    return loaders


class AutoDiscovery:
    """Resolve providers for :class:`~castor.routing.AutoRoute` entries.

    Args:
        loaders: Provider key -> zero-argument loader. Each loader returns a
            provider or an object with an ``auto_provider`` attribute.
            Defaults to :func:`builtin_loaders`.
    """

    def __init__(self, loaders: Mapping[str, Callable[[], Any]] | None = None) -> None:
        self._loaders: dict[str, Callable[[], Any]] | None = (
            dict(loaders) if loaders is not None else None
        )
        self.loaded: dict[str, Provider] = {}
        self.failed: set[str] = set()
        self._lock = threading.Lock()

    def register(self, key: str, loader: Callable[[], Any]) -> None:
        """Add a loader for *key*. Keys already attempted keep their outcome."""
        self._registry()[key.lower()] = loader

    def _registry(self) -> dict[str, Callable[[], Any]]:
        if self._loaders is None:
            self._loaders = builtin_loaders()
        return self._loaders

    @staticmethod
    def normalize_key(norm_provider: str | None) -> str | None:
        if not norm_provider:
            return None
        key = norm_provider.lower()
        return FALLBACK_PROVIDER if key == DEFAULT_PROVIDER_KEY else key

    def load(self, key: str) -> Provider | None:
        """Return the provider for *key*, running its loader at most once."""
        with self._lock:
            if key in self.failed:
                return None
            cached = self.loaded.get(key)
            if cached is not None:
                return cached

            loader = self._registry().get(key)
            if loader is None:
                logger.debug("No provider loader registered for %r", key)
                self.failed.add(key)
                return None
            try:
                provider = _extract_provider(loader())
            except Exception as e:
                logger.debug("Provider loader for %r failed: %s", key, e)
                self.failed.add(key)
                return None
            if provider is None:
                logger.debug("Provider loader for %r yielded no provider", key)
                self.failed.add(key)
                return None
            self.loaded[key] = provider
            return provider

    def resolve(self, ctx: CallContext) -> Provider | None:
        """Return a provider able to serve *ctx*, or None to skip the route.

        Exceptions raised by ``get_handler`` propagate to the caller.
        """
        key = self.normalize_key(ctx.norm_provider)
        if key is None:
            return None
        provider = self.load(key)
        if provider is None:
            return None
        if provider.get_handler(ctx) is None:
            return None
        return provider


#: Shared process-wide instance used by dispatchers unless one is injected.
auto_discovery = AutoDiscovery()
