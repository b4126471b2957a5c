"""Cooperative cancellation for a single call.

A :class:`CancellationToken` is set at most once, with a *reason*. Every
suspension point inside a call (transport I/O, backoff sleeps, stream body
reads) races against the token, so cancelling it interrupts the call at the
next await rather than at the next poll.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, TypeVar

from castor.errors import RequestAbortedError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CancellationToken:
    """Token for cooperative cancellation across one call.

    Usage:
        token = CancellationToken()
        result = await token.run(client.send(request))
        ...
        token.cancel("user navigated away")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: object = None
        self._callbacks: list[Callable[[CancellationToken], None]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._unlinks: list[Callable[[], None]] = []

    # --- state ---

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> object:
        return self._reason

    @property
    def is_timeout(self) -> bool:
        """Whether the token was aborted for a timeout-classified reason."""
        if not self.aborted:
            return False
        reason = self._reason
        if isinstance(reason, TimeoutError):
            return True
        return isinstance(reason, str) and "timeout" in reason.lower()

    def exception(self) -> BaseException:
        """Return the exception to raise for the abort reason."""
        reason = self._reason
        if isinstance(reason, BaseException):
            return reason
        return RequestAbortedError(reason)

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise self.exception()

    # --- transitions ---

    def cancel(self, reason: object = None) -> None:
        """Abort the token. Later calls are no-ops."""
        if self.aborted:
            return
        self._reason = reason if reason is not None else RequestAbortedError()
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb(self)

    def add_done_callback(self, cb: Callable[[CancellationToken], None]) -> None:
        if self.aborted:
            cb(self)
            return
        self._callbacks.append(cb)

    def remove_done_callback(self, cb: Callable[[CancellationToken], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(cb)

    def dispose(self) -> None:
        """Stop the timeout timer and detach from linked parent tokens."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()

    # --- construction ---

    @classmethod
    def linked(
        cls, *parents: CancellationToken | None, timeout_s: float | None = None
    ) -> CancellationToken:
        """Return a token aborted by any parent or after *timeout_s* seconds.

        Must be called with a running event loop when *timeout_s* is set.
        """
        token = cls()
        for parent in parents:
            if parent is None:
                continue
            if parent.aborted:
                token.cancel(parent.reason)
                continue

            def _forward(p: CancellationToken) -> None:
                token.cancel(p.reason)

            parent.add_done_callback(_forward)
            token._unlinks.append(
                lambda p=parent, cb=_forward: p.remove_done_callback(cb)
            )

        if timeout_s is not None and not token.aborted:
            loop = asyncio.get_running_loop()
            token._timer = loop.call_later(
                timeout_s,
                token.cancel,
                TimeoutError(f"call exceeded timeout of {timeout_s:g}s"),
            )
        return token

    # --- suspension points ---

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising the abort reason if cancelled first."""
        self.raise_if_aborted()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise self.exception()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it if the token is aborted first."""
        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self.exception()

        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.debug("Abandoned in-flight operation: %r", self._reason)
        raise self.exception()


async def guarded(awaitable: Awaitable[T], cancel: CancellationToken | None) -> T:
    """Await *awaitable* under *cancel* when a token is present."""
    if cancel is None:
        return await awaitable
    return await cancel.run(awaitable)
