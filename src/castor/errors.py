"""Exception hierarchy for Castor."""

from __future__ import annotations


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class InvalidIdentifierError(CastorError):
    """A target identifier is malformed (empty or with empty components)."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(
            f"Invalid target identifier {target!r}: {reason}",
            hint='Use "provider/model" or a bare model name, e.g. "openai/gpt-4o".',
        )
        self.target = target
        self.reason = reason


class NoProviderError(CastorError):
    """The route chain was exhausted without binding a provider."""

    def __init__(self, target: str) -> None:
        super().__init__(
            f"No provider found for {target!r}",
            hint="Register a matching route() or enable auto_route().",
        )
        self.target = target


class UnsupportedCapabilityError(CastorError):
    """A provider matched but has no handler for the requested capability."""

    def __init__(self, provider: str, capability: str) -> None:
        super().__init__(
            f"Provider {provider!r} does not support capability {capability!r}"
        )
        self.provider = provider
        self.capability = capability


class ProviderError(CastorError):
    """An upstream provider answered with a terminal non-2xx response.

    Carries structured fields so callers can branch on ``status_code``
    without parsing the message.
    """

    def __init__(
        self,
        provider: str,
        status_code: int,
        body: str,
        *,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(f"[{provider}] HTTP {status_code}: {body}")
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.retry_after_s = retry_after_s


class RequestTimeoutError(CastorError):
    """The configured call timeout elapsed. Never retried."""

    def __init__(self, timeout_ms: float) -> None:
        super().__init__(f"Request timed out after {timeout_ms:g}ms")
        self.timeout_ms = timeout_ms


class RequestAbortedError(CastorError):
    """The call was cancelled through its cancellation token."""

    def __init__(self, reason: object = None) -> None:
        message = "Request aborted" if reason is None else f"Request aborted: {reason}"
        super().__init__(message)
        self.reason = reason


class ReentrantContinuationError(CastorError):
    """An interceptor called its continuation more than once."""

    def __init__(self) -> None:
        super().__init__(
            "call_next() called multiple times",
            hint="Each interceptor may await call_next() at most once.",
        )
