"""Interceptor pipeline: onion-style composition around the transport step.

An interceptor is ``async def interceptor(ctx, call_next)``. Code before
``await call_next()`` runs on the way in, code after it on the way out.
Not calling ``call_next`` short-circuits every deeper layer. Exceptions
raised at any depth surface at each outer ``await call_next()``, so outer
layers can observe and clean up with ``try``/``finally``.

Example:
    async def timing(ctx, call_next):
        started = time.monotonic()
        try:
            await call_next()
        finally:
            ctx.state["elapsed_s"] = time.monotonic() - started
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from typing import TYPE_CHECKING

from castor.errors import ReentrantContinuationError

if TYPE_CHECKING:
    from castor.context import CallContext

CallNext = Callable[[], Awaitable[None]]
Interceptor = Callable[["CallContext", CallNext], Awaitable[None]]


async def _finished() -> None:
    return None


async def _reject(exc: BaseException) -> None:
    raise exc


def compose(interceptors: Sequence[Interceptor]) -> Callable[[CallContext], Awaitable[None]]:
    """Compose *interceptors* into a single ``async run(ctx)`` callable.

    The index guard lives in each ``run`` invocation, so one composed
    pipeline can serve many concurrent contexts. Continuation ordering is
    tracked by that index, not by inspecting the call stack.

    Each active layer holds one suspended coroutine frame while it awaits
    ``call_next``, so nesting depth is bounded by the interpreter's
    recursion limit (``sys.getrecursionlimit()``, 1000 by default). Stacks
    of a few hundred layers are fine; beyond that a ``RecursionError``
    surfaces from the innermost layers.
    """
    stack = tuple(interceptors)

    async def run(ctx: CallContext) -> None:
        index = -1

        def dispatch(i: int) -> Awaitable[None]:
            nonlocal index
            if i <= index:
                return _reject(ReentrantContinuationError())
            index = i
            if i >= len(stack):
                return _finished()
            return stack[i](ctx, partial(dispatch, i + 1))

        await dispatch(0)

    return run
