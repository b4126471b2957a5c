"""Retry controller: status classification, backoff and cancellation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from castor._http import is_retryable_status
from castor.cancellation import CancellationToken
from castor.context import CallContext
from castor.errors import ProviderError, RequestAbortedError, RequestTimeoutError
from castor.identifiers import parse_identifier
from castor.retry import (
    RetryController,
    RetryPolicy,
    compute_backoff_ms,
    parse_retry_after_ms,
)
from castor.routing import bind_provider

pytestmark = pytest.mark.unit


def _ctx(provider_factory, cancel: CancellationToken | None = None) -> CallContext:
    ctx = CallContext.from_identifier(
        "completion", {}, parse_identifier("fake/m"), cancel=cancel
    )
    bind_provider(ctx, provider_factory("fake"))
    return ctx


class _SuccessSpy:
    def __init__(self) -> None:
        self.responses: list[httpx.Response] = []

    async def __call__(self, response: httpx.Response) -> None:
        self.responses.append(response)


# =============================================================================
# Status classification
# =============================================================================


@pytest.mark.parametrize(
    "status", [408, 409, 425, 429, 500, 502, 503, 504, 507, 508, 509, 520, 524, 599]
)
def test_retryable_statuses(status: int) -> None:
    assert is_retryable_status(status)


@pytest.mark.parametrize("status", [400, 401, 403, 404, 422, 501, 505])
def test_non_retryable_statuses(status: int) -> None:
    assert not is_retryable_status(status)


# =============================================================================
# Delay computation
# =============================================================================


def test_retry_after_seconds_and_dates() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    later = format_datetime(now + timedelta(seconds=3), usegmt=True)
    earlier = format_datetime(now - timedelta(seconds=3), usegmt=True)

    assert parse_retry_after_ms("2") == 2000
    assert parse_retry_after_ms(" 0.5 ") == 500
    assert parse_retry_after_ms("-4") == 0
    assert parse_retry_after_ms(later, now=now) == pytest.approx(3000)
    assert parse_retry_after_ms(earlier, now=now) == 0
    assert parse_retry_after_ms(None) is None
    assert parse_retry_after_ms("") is None
    assert parse_retry_after_ms("soon") is None


def test_backoff_is_jittered_within_bounds() -> None:
    policy = RetryPolicy(max_retries=5, base_delay_ms=100, max_delay_ms=10_000)
    for attempt in range(4):
        exp = 100 * 2**attempt
        for _ in range(50):
            delay = compute_backoff_ms(policy, attempt)
            assert exp * 0.5 <= delay <= exp


def test_backoff_and_retry_after_are_clamped() -> None:
    policy = RetryPolicy(max_retries=5, base_delay_ms=1_000, max_delay_ms=1_500)

    assert compute_backoff_ms(policy, 4) == 1_500
    assert compute_backoff_ms(policy, 0, retry_after_ms=60_000) == 1_500
    assert compute_backoff_ms(policy, 0, retry_after_ms=200) == 200


def test_policy_rejects_negative_values() -> None:
    with pytest.raises(ValueError, match="max_retries"):
        RetryPolicy(max_retries=-1)
    with pytest.raises(ValueError, match="base_delay_ms"):
        RetryPolicy(base_delay_ms=-1)


# =============================================================================
# Controller
# =============================================================================


@pytest.mark.asyncio
async def test_retries_429_until_success(transport, provider_factory) -> None:
    transport.script = [
        httpx.Response(429, text="slow"),
        httpx.Response(429, text="slow"),
        httpx.Response(200, json={"ok": True}),
    ]
    ctx = _ctx(provider_factory)
    spy = _SuccessSpy()

    await RetryController(ctx, RetryPolicy(max_retries=2), transport).run(
        ctx.request, spy
    )

    assert transport.calls == 3
    assert len(spy.responses) == 1
    assert ctx.response.raw is spy.responses[0]
    assert ctx.response.raw.status_code == 200


@pytest.mark.asyncio
async def test_exhausted_retries_raise_last_status(transport, provider_factory) -> None:
    transport.script = [
        httpx.Response(500, text="first"),
        httpx.Response(500, text="second"),
        httpx.Response(500, text="third"),
    ]
    ctx = _ctx(provider_factory)
    spy = _SuccessSpy()

    with pytest.raises(ProviderError) as exc:
        await RetryController(ctx, RetryPolicy(max_retries=2), transport).run(
            ctx.request, spy
        )

    assert transport.calls == 3
    assert exc.value.status_code == 500
    assert exc.value.body == "third"
    assert exc.value.provider == "fake"
    assert spy.responses == []


@pytest.mark.asyncio
async def test_501_is_never_retried(transport, provider_factory) -> None:
    transport.script = [httpx.Response(501, text="nope")]
    ctx = _ctx(provider_factory)

    with pytest.raises(ProviderError) as exc:
        await RetryController(ctx, RetryPolicy(max_retries=5), transport).run(
            ctx.request, _SuccessSpy()
        )

    assert transport.calls == 1
    assert exc.value.status_code == 501


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(transport, provider_factory) -> None:
    transport.script = [httpx.Response(400, text='{"error":"bad"}')]
    ctx = _ctx(provider_factory)

    with pytest.raises(ProviderError) as exc:
        await RetryController(ctx, RetryPolicy(max_retries=3), transport).run(
            ctx.request, _SuccessSpy()
        )

    assert transport.calls == 1
    assert exc.value.body == '{"error":"bad"}'


@pytest.mark.asyncio
async def test_retry_after_on_final_attempt_is_attached(
    transport, provider_factory
) -> None:
    transport.script = [httpx.Response(429, headers={"retry-after": "7"}, text="slow")]
    ctx = _ctx(provider_factory)

    with pytest.raises(ProviderError) as exc:
        await RetryController(ctx, RetryPolicy(max_retries=0), transport).run(
            ctx.request, _SuccessSpy()
        )

    assert exc.value.retry_after_s == 7


@pytest.mark.asyncio
async def test_retry_after_drives_the_sleep(transport, provider_factory) -> None:
    transport.script = [
        httpx.Response(503, headers={"retry-after": "0"}),
        httpx.Response(200, json={}),
    ]
    ctx = _ctx(provider_factory)
    # A base delay this long would hang the test if Retry-After were ignored.
    policy = RetryPolicy(max_retries=1, base_delay_ms=60_000, max_delay_ms=60_000)

    await asyncio.wait_for(
        RetryController(ctx, policy, transport).run(ctx.request, _SuccessSpy()),
        timeout=5,
    )

    assert transport.calls == 2


@pytest.mark.asyncio
async def test_transport_errors_are_retried(transport, provider_factory) -> None:
    transport.script = [httpx.ConnectError("down"), httpx.Response(200, json={})]
    ctx = _ctx(provider_factory)
    spy = _SuccessSpy()

    await RetryController(ctx, RetryPolicy(max_retries=1), transport).run(
        ctx.request, spy
    )

    assert transport.calls == 2
    assert len(spy.responses) == 1


@pytest.mark.asyncio
async def test_transport_error_on_last_attempt_is_raised_unchanged(
    transport, provider_factory
) -> None:
    err = httpx.ConnectError("down")
    transport.script = [err]
    ctx = _ctx(provider_factory)

    with pytest.raises(httpx.ConnectError) as exc:
        await RetryController(ctx, RetryPolicy(max_retries=0), transport).run(
            ctx.request, _SuccessSpy()
        )

    assert exc.value is err


@pytest.mark.asyncio
async def test_classified_errors_are_not_retried(transport, provider_factory) -> None:
    transport.script = [ProviderError("upstream", 500, "x"), httpx.Response(200)]
    ctx = _ctx(provider_factory)

    with pytest.raises(ProviderError):
        await RetryController(ctx, RetryPolicy(max_retries=3), transport).run(
            ctx.request, _SuccessSpy()
        )

    assert transport.calls == 1


@pytest.mark.asyncio
async def test_success_callback_failure_is_not_retried(
    transport, provider_factory
) -> None:
    transport.script = [httpx.Response(200, json={}), httpx.Response(200, json={})]
    ctx = _ctx(provider_factory)
    calls = 0

    async def failing(response: httpx.Response) -> None:
        nonlocal calls
        calls += 1
        raise KeyError("decode")

    with pytest.raises(KeyError):
        await RetryController(ctx, RetryPolicy(max_retries=3), transport).run(
            ctx.request, failing
        )

    assert calls == 1
    assert transport.calls == 1


@pytest.mark.asyncio
async def test_timeout_abort_becomes_request_timeout(transport, provider_factory) -> None:
    cancel = CancellationToken()
    cancel.cancel(TimeoutError("deadline"))
    ctx = _ctx(provider_factory, cancel)

    with pytest.raises(RequestTimeoutError) as exc:
        await RetryController(
            ctx, RetryPolicy(max_retries=3), transport, timeout_ms=250
        ).run(ctx.request, _SuccessSpy())

    assert exc.value.timeout_ms == 250
    assert transport.calls == 1


@pytest.mark.asyncio
async def test_non_timeout_abort_is_not_retried(transport, provider_factory) -> None:
    cancel = CancellationToken()
    cancel.cancel("user left")
    ctx = _ctx(provider_factory, cancel)

    with pytest.raises(RequestAbortedError):
        await RetryController(
            ctx, RetryPolicy(max_retries=3), transport, timeout_ms=250
        ).run(ctx.request, _SuccessSpy())

    assert transport.calls == 1


@pytest.mark.asyncio
async def test_abort_during_backoff_interrupts_sleep(transport, provider_factory) -> None:
    transport.script = [httpx.Response(500), httpx.Response(200)]
    cancel = CancellationToken()
    ctx = _ctx(provider_factory, cancel)
    policy = RetryPolicy(max_retries=1, base_delay_ms=60_000, max_delay_ms=60_000)

    loop = asyncio.get_running_loop()
    loop.call_later(0.01, cancel.cancel, "stop")

    with pytest.raises(RequestAbortedError):
        await asyncio.wait_for(
            RetryController(ctx, policy, transport).run(ctx.request, _SuccessSpy()),
            timeout=5,
        )

    assert transport.calls == 1


@pytest.mark.asyncio
async def test_timeout_during_backoff_is_classified(transport, provider_factory) -> None:
    transport.script = [httpx.Response(502), httpx.Response(200)]
    cancel = CancellationToken.linked(timeout_s=0.01)
    ctx = _ctx(provider_factory, cancel)
    policy = RetryPolicy(max_retries=1, base_delay_ms=60_000, max_delay_ms=60_000)

    try:
        with pytest.raises(RequestTimeoutError):
            await asyncio.wait_for(
                RetryController(ctx, policy, transport, timeout_ms=10).run(
                    ctx.request, _SuccessSpy()
                ),
                timeout=5,
            )
    finally:
        cancel.dispose()

    assert transport.calls == 1
