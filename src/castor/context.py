"""Call context: the single mutable record threaded through one attempt."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.cancellation import CancellationToken
    from castor.identifiers import ParsedIdentifier
    from castor.providers.base import Handler, Provider

_REQUEST_FIELDS = frozenset({"url", "method", "headers", "body"})


@dataclass
class RequestConfig:
    """HTTP request descriptor built by a handler and sent by the transport.

    Interceptors may read and modify it before the transport step runs.
    Keys a handler returns beyond url/method/headers/body land in ``extra``.
    """

    url: str = ""
    method: str = "POST"
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, values: Mapping[str, Any]) -> None:
        """Overlay handler-provided *values* onto this descriptor."""
        for key, value in values.items():
            if key == "headers":
                self.headers = httpx.Headers(value)
            elif key in _REQUEST_FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value


@dataclass
class ResponseHolder:
    """Raw transport response plus the decoded payload written by transformers."""

    raw: httpx.Response | None = None
    data: Any = None


@dataclass
class CallContext:
    """State for one fallback candidate.

    Created fresh for every candidate and never reused. By the time the
    interceptor pipeline runs, ``provider`` and ``handler`` are bound.
    """

    capability: str
    config: dict[str, Any]
    target: str
    provider_key: str
    model: str
    norm_provider: str
    norm_model: str
    request: RequestConfig = field(default_factory=RequestConfig)
    response: ResponseHolder = field(default_factory=ResponseHolder)
    provider: Provider | None = None
    handler: Handler | None = None
    cancel: CancellationToken | None = None
    state: dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)
    end_time: float | None = None
    error: BaseException | None = None

    @property
    def norm_target(self) -> str:
        return f"{self.norm_provider}/{self.norm_model}"

    @property
    def provider_name(self) -> str:
        return self.provider.name if self.provider is not None else "unknown"

    @classmethod
    def from_identifier(
        cls,
        capability: str,
        config: dict[str, Any],
        parsed: ParsedIdentifier,
        *,
        cancel: CancellationToken | None = None,
    ) -> CallContext:
        return cls(
            capability=capability,
            config=config,
            target=parsed.target,
            provider_key=parsed.provider_key,
            model=parsed.model,
            norm_provider=parsed.norm_provider,
            norm_model=parsed.norm_model,
            cancel=cancel,
        )
