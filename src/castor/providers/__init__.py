"""Provider protocol and helpers for defining providers."""

from .base import (
    DefinedHandler,
    DefinedProvider,
    Handler,
    Provider,
    ResponseTransformer,
    define_handler,
    define_provider,
)

__all__ = [
    "DefinedHandler",
    "DefinedProvider",
    "Handler",
    "Provider",
    "ResponseTransformer",
    "define_handler",
    "define_provider",
]
