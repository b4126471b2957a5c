"""Route chain: pattern matching and provider/handler binding.

Routes are evaluated in registration order and the first match wins. A
matching condition or a resolver returning a provider *commits*: if that
provider has no handler for the call's capability the chain stops with
:class:`UnsupportedCapabilityError` instead of trying later entries.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import re
from typing import TYPE_CHECKING, Union

from castor.errors import ConfigurationError, NoProviderError, UnsupportedCapabilityError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.context import CallContext
    from castor.discovery import AutoDiscovery
    from castor.providers.base import Provider

logger = logging.getLogger(__name__)

MatchPattern = Union[
    str,
    re.Pattern[str],
    Sequence[Union[str, re.Pattern[str]]],
    Callable[[str], bool],
]

_CONDITION_FIELDS = ("target", "model", "provider")


def match_pattern(pattern: MatchPattern, value: str) -> bool:
    """Return True when *pattern* matches *value* (compared lowercased).

    - ``str``: case-insensitive exact match
    - ``re.Pattern``: ``search`` against the lowercased value
    - list/tuple: logical OR, short-circuiting; empty never matches
    - callable: predicate receiving the lowercased value
    """
    lowered = value.lower()
    if isinstance(pattern, str):
        return pattern.lower() == lowered
    if isinstance(pattern, re.Pattern):
        return pattern.search(lowered) is not None
    if isinstance(pattern, (list, tuple)):
        return any(match_pattern(p, lowered) for p in pattern)
    if callable(pattern):
        return bool(pattern(lowered))
    return False


@dataclass(frozen=True)
class RouteCondition:
    """Match one dimension of the parsed target.

    ``target`` matches ``ctx.norm_target`` (``"provider/model"``), ``model``
    matches ``ctx.norm_model`` and ``provider`` matches ``ctx.norm_provider``.
    """

    field: str
    pattern: MatchPattern

    @classmethod
    def from_mapping(cls, condition: Mapping[str, MatchPattern]) -> RouteCondition:
        keys = [k for k in _CONDITION_FIELDS if k in condition]
        if len(keys) != 1 or len(condition) != 1:
            raise ConfigurationError(
                f"Route condition must name exactly one of {_CONDITION_FIELDS}, "
                f"got {sorted(condition)}",
                hint='e.g. {"model": re.compile(r"^gpt-")} or {"provider": "openai"}',
            )
        return cls(keys[0], condition[keys[0]])

    def matches(self, ctx: CallContext) -> bool:
        if self.field == "target":
            return match_pattern(self.pattern, ctx.norm_target)
        if self.field == "model":
            return match_pattern(self.pattern, ctx.norm_model)
        return match_pattern(self.pattern, ctx.norm_provider)


@dataclass(frozen=True)
class ConditionRoute:
    condition: RouteCondition
    provider: Provider


@dataclass(frozen=True)
class ResolverRoute:
    resolver: Callable[[CallContext], Provider | None]


@dataclass(frozen=True)
class AutoRoute:
    pass


RouteEntry = Union[ConditionRoute, ResolverRoute, AutoRoute]


def bind_provider(ctx: CallContext, provider: Provider) -> None:
    """Bind *provider* and its handler for ``ctx.capability`` onto *ctx*."""
    ctx.provider = provider
    handler = provider.get_handler(ctx)
    if handler is None:
        raise UnsupportedCapabilityError(provider.name, ctx.capability)
    ctx.handler = handler


def resolve_route(
    ctx: CallContext,
    entries: Sequence[RouteEntry],
    discovery: AutoDiscovery | None = None,
) -> None:
    """Walk *entries* and bind the first matching provider onto *ctx*.

    Raises:
        UnsupportedCapabilityError: A route committed to a provider that
            lacks a handler for the capability.
        NoProviderError: No entry produced a provider.
    """
    for entry in entries:
        if isinstance(entry, ConditionRoute):
            if not entry.condition.matches(ctx):
                continue
            provider = entry.provider
        elif isinstance(entry, ResolverRoute):
            provider = entry.resolver(ctx)
            if not provider:
                continue
        else:
            if discovery is None:
                continue
            provider = discovery.resolve(ctx)
            if provider is None:
                continue

        logger.debug(
            "Route matched target=%s provider=%s entry=%s",
            ctx.target,
            provider.name,
            type(entry).__name__,
        )
        bind_provider(ctx, provider)
        return

    raise NoProviderError(ctx.target)
