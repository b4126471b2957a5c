"""Castor: one call surface for interchangeable AI model providers.

Public API:
    - Dispatcher / dispatcher / create_dispatcher(): routing, retries, fallback
    - define_provider() / define_handler(): plug in a backend
    - CancellationToken: cooperative cancellation for one call
    - Transformers: json_transformer, sse_transformer, bytes_transformer
    - Helpers: join_path, build_query, resolve_api_key/base/path
"""

from __future__ import annotations

import logging

from castor.cancellation import CancellationToken
from castor.config import DEFAULTS, deep_merge
from castor.context import CallContext, RequestConfig, ResponseHolder
from castor.discovery import AutoDiscovery, auto_discovery
from castor.dispatcher import Dispatcher, create_dispatcher, dispatcher
from castor.errors import (
    CastorError,
    ConfigurationError,
    InvalidIdentifierError,
    NoProviderError,
    ProviderError,
    ReentrantContinuationError,
    RequestAbortedError,
    RequestTimeoutError,
    UnsupportedCapabilityError,
)
from castor.helpers import (
    build_query,
    join_path,
    resolve_api_base,
    resolve_api_key,
    resolve_api_path,
)
from castor.identifiers import ParsedIdentifier, parse_identifier
from castor.pipeline import compose
from castor.providers.base import Handler, Provider, define_handler, define_provider
from castor.retry import RetryPolicy
from castor.routing import match_pattern
from castor.transformers import (
    AUTO_TRANSFORMERS,
    bytes_transformer,
    json_transformer,
    sse_transformer,
)
from castor.transport import HttpxTransport, Transport

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-dispatch")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

__all__ = [
    "AUTO_TRANSFORMERS",
    "DEFAULTS",
    "AutoDiscovery",
    "CallContext",
    "CancellationToken",
    "CastorError",
    "ConfigurationError",
    "Dispatcher",
    "Handler",
    "HttpxTransport",
    "InvalidIdentifierError",
    "NoProviderError",
    "ParsedIdentifier",
    "Provider",
    "ProviderError",
    "ReentrantContinuationError",
    "RequestAbortedError",
    "RequestConfig",
    "RequestTimeoutError",
    "ResponseHolder",
    "RetryPolicy",
    "Transport",
    "UnsupportedCapabilityError",
    "auto_discovery",
    "build_query",
    "bytes_transformer",
    "compose",
    "create_dispatcher",
    "deep_merge",
    "define_handler",
    "define_provider",
    "dispatcher",
    "join_path",
    "json_transformer",
    "match_pattern",
    "parse_identifier",
    "resolve_api_base",
    "resolve_api_key",
    "resolve_api_path",
    "sse_transformer",
]
