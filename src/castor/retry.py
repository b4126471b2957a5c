"""Bounded retry for one logical request, plus the innermost pipeline layer.

Design goals:
- Explicit state (policy + attempt counter), recomputed per call
- Status classification by code, never by message text
- Every sleep and transport call races the call's cancellation token
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import logging
import math
import random
from typing import TYPE_CHECKING

from castor._http import RETRY_AFTER_STATUS_CODES, is_retryable_status
from castor.cancellation import guarded
from castor.config import execution_settings
from castor.errors import ProviderError, RequestTimeoutError
from castor.transformers import AUTO_TRANSFORMERS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

    from castor.config import ExecutionSettings
    from castor.context import CallContext, RequestConfig
    from castor.pipeline import CallNext, Interceptor
    from castor.transport import Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds. Delays are in milliseconds."""

    max_retries: int = 0
    base_delay_ms: float = 0
    max_delay_ms: float = 0

    def __post_init__(self) -> None:
        """Reject negative bounds."""
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("RetryPolicy.base_delay_ms must be >= 0")
        if self.max_delay_ms < 0:
            raise ValueError("RetryPolicy.max_delay_ms must be >= 0")

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay_ms=settings.retry_delay,
            max_delay_ms=settings.max_retry_delay,
        )


def parse_retry_after_ms(
    value: str | None, *, now: datetime | None = None
) -> float | None:
    """Parse a ``Retry-After`` header (delta seconds or HTTP date) into ms.

    Returns None when the header is absent or unparseable. Dates in the past
    yield 0.
    """
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        seconds = float(trimmed)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            return None
        return max(0.0, seconds * 1000)

    try:
        when = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds() * 1000)


def compute_backoff_ms(
    policy: RetryPolicy, attempt: int, retry_after_ms: float | None = None
) -> float:
    """Delay before the attempt after *attempt* (0-based), clamped to the max.

    A server-provided delay wins over exponential backoff. Otherwise the
    delay is ``base * 2**attempt`` jittered uniformly into ``[0.5x, 1.0x]``.
    """
    if retry_after_ms is not None:
        return min(max(0.0, retry_after_ms), policy.max_delay_ms)
    exp = policy.base_delay_ms * (2**attempt)
    jittered = random.uniform(exp * 0.5, exp)  # noqa: S311
    return min(jittered, policy.max_delay_ms)


class RetryController:
    """Run one request with bounded retries for a single call context.

    Args:
        ctx: The candidate's call context; ``ctx.response.raw`` is updated
            after every transport call and ``ctx.cancel`` is honoured.
        policy: Effective retry policy.
        transport: Transport used for each attempt.
        timeout_ms: Configured call timeout, used only to classify
            timeout aborts as :class:`RequestTimeoutError`.
    """

    def __init__(
        self,
        ctx: CallContext,
        policy: RetryPolicy,
        transport: Transport,
        *,
        timeout_ms: float | None = None,
    ) -> None:
        self._ctx = ctx
        self._policy = policy
        self._transport = transport
        self._timeout_ms = timeout_ms

    async def run(
        self,
        request: RequestConfig,
        on_success: Callable[[httpx.Response], Awaitable[None]],
    ) -> None:
        """Send *request* until it succeeds, fails terminally or runs out.

        Raises:
            ProviderError: Non-retryable status, or retries exhausted.
            RequestTimeoutError: The configured timeout elapsed.
        """
        cancel = self._ctx.cancel
        max_retries = self._policy.max_retries

        for attempt in range(max_retries + 1):
            is_last = attempt == max_retries
            try:
                response = await self._transport(request, cancel=cancel)
            except Exception as exc:
                timeout = self._timeout_error()
                if timeout is not None:
                    raise timeout from exc
                if isinstance(exc, (ProviderError, RequestTimeoutError)):
                    raise
                if is_last or (cancel is not None and cancel.aborted):
                    raise
                delay_ms = compute_backoff_ms(self._policy, attempt)
                logger.debug(
                    "Transport error on attempt %d/%d for %s (%s); retrying in %.0fms",
                    attempt + 1,
                    max_retries + 1,
                    self._ctx.target,
                    type(exc).__name__,
                    delay_ms,
                )
                await self._sleep(delay_ms)
                continue

            self._ctx.response.raw = response
            if response.is_success:
                try:
                    await on_success(response)
                except Exception as exc:
                    timeout = self._timeout_error()
                    if timeout is not None and not isinstance(exc, RequestTimeoutError):
                        raise timeout from exc
                    raise
                return

            await self._handle_http_failure(response, attempt, is_last=is_last)

        # The last attempt always returns or raises.
        raise RuntimeError("retry loop exhausted without a result")  # pragma: no cover

    async def _handle_http_failure(
        self, response: httpx.Response, attempt: int, *, is_last: bool
    ) -> None:
        status = response.status_code
        retry_after_ms = None
        if status in RETRY_AFTER_STATUS_CODES:
            retry_after_ms = parse_retry_after_ms(response.headers.get("retry-after"))

        if is_last or not is_retryable_status(status):
            try:
                await guarded(response.aread(), self._ctx.cancel)
            except Exception as exc:
                timeout = self._timeout_error()
                if timeout is not None:
                    raise timeout from exc
                raise
            raise ProviderError(
                self._ctx.provider_name,
                status,
                response.text,
                retry_after_s=None if retry_after_ms is None else retry_after_ms / 1000,
            )

        await response.aclose()
        delay_ms = compute_backoff_ms(self._policy, attempt, retry_after_ms)
        logger.debug(
            "HTTP %d on attempt %d/%d for %s; retrying in %.0fms",
            status,
            attempt + 1,
            self._policy.max_retries + 1,
            self._ctx.target,
            delay_ms,
        )
        await self._sleep(delay_ms)

    def _timeout_error(self) -> RequestTimeoutError | None:
        cancel = self._ctx.cancel
        if cancel is None or not cancel.is_timeout or self._timeout_ms is None:
            return None
        return RequestTimeoutError(self._timeout_ms)

    async def _sleep(self, delay_ms: float) -> None:
        cancel = self._ctx.cancel
        if cancel is None:
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            return
        try:
            await cancel.sleep(delay_ms / 1000)
        except Exception as exc:
            timeout = self._timeout_error()
            if timeout is not None:
                raise timeout from exc
            raise


def create_transport_interceptor(transport: Transport) -> Interceptor:
    """Return the innermost pipeline layer: retried send, then decode.

    The layer ignores its continuation. On a 2xx response it runs the bound
    handler's response transformers in order, or the automatic JSON/SSE
    set when the handler declares none.
    """
    async def send(ctx: CallContext, call_next: CallNext) -> None:
        del call_next
        handler = ctx.handler
        if handler is None:
            raise RuntimeError("transport step reached without a bound handler")
        settings = execution_settings(ctx.config)
        controller = RetryController(
            ctx,
            RetryPolicy.from_settings(settings),
            transport,
            timeout_ms=settings.timeout,
        )
        transformers = tuple(handler.response_transformers) or AUTO_TRANSFORMERS

        async def on_success(response: httpx.Response) -> None:
            for transformer in transformers:
                await transformer(ctx)
            if ctx.response.data is None:
                await response.aclose()

        await controller.run(ctx.request, on_success)

    return send
