"""Request-building helpers for provider handlers.

Credentials and endpoints resolve in order: the call's configuration
(a value, or a callable receiving the context), then an environment
variable, then a default. A project ``.env`` file is loaded on import.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from dotenv import load_dotenv

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.context import CallContext

load_dotenv()


def join_path(base: str, path: str) -> str:
    """Join *base* and *path* with exactly one slash between them.

    Example:
        join_path("https://api.example.com/v1/", "/chat")
        # => "https://api.example.com/v1/chat"
    """
    base = base if base.endswith("/") else base + "/"
    path = path[1:] if path.startswith("/") else path
    return base + path


def build_query(params: Mapping[str, Any]) -> str:
    """Encode *params* as a query string with a leading ``?``.

    Falsy values are dropped and list values repeat their key. Returns an
    empty string when nothing remains.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, str(item)) for item in value)
        else:
            pairs.append((key, str(value)))
    qs = urlencode(pairs)
    return f"?{qs}" if qs else ""


def _config_value(ctx: CallContext, key: str) -> str | None:
    value = ctx.config.get(key)
    if callable(value):
        value = value(ctx)
    return value if value else None


def _env(name: str | None) -> str | None:
    if not name:
        return None
    return os.environ.get(name) or None


def resolve_api_key(ctx: CallContext, *, env_name: str | None = None) -> str | None:
    """Return ``api_key`` from config, else the *env_name* variable."""
    return _config_value(ctx, "api_key") or _env(env_name)


def resolve_api_base(
    ctx: CallContext, *, env_name: str | None = None, default: str | None = None
) -> str | None:
    """Return ``api_base`` from config, else *env_name*, else *default*."""
    return _config_value(ctx, "api_base") or _env(env_name) or default


def resolve_api_path(ctx: CallContext, *, default: str | None = None) -> str | None:
    """Return ``api_path`` from config, else *default*."""
    return _config_value(ctx, "api_path") or default
