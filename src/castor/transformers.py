"""Response transformers: decode ``ctx.response.raw`` into ``ctx.response.data``.

A transformer is ``async def transformer(ctx) -> None``. Handlers list them
in order; an empty list selects :data:`AUTO_TRANSFORMERS`, where each step
only acts on the content type it understands.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from castor._http import is_json_media_type, is_sse_media_type, media_type
from castor.cancellation import guarded
from castor.streaming import decode_sse

if TYPE_CHECKING:
    from castor.context import CallContext
    from castor.providers.base import ResponseTransformer


async def json_transformer(ctx: CallContext) -> None:
    """Buffer and parse an ``application/json`` body."""
    raw = ctx.response.raw
    if raw is None or not is_json_media_type(media_type(raw.headers)):
        return
    await guarded(raw.aread(), ctx.cancel)
    ctx.response.data = raw.json()


async def sse_transformer(ctx: CallContext) -> None:
    """Expose a ``text/event-stream`` body as a lazy async iterator of payloads.

    The body is not read here; it is consumed as the caller iterates and
    closed when iteration ends.
    """
    raw = ctx.response.raw
    if raw is None or not is_sse_media_type(media_type(raw.headers)):
        return
    ctx.response.data = decode_sse(raw, ctx.cancel)


async def bytes_transformer(ctx: CallContext) -> None:
    """Buffer the body as raw bytes regardless of content type."""
    raw = ctx.response.raw
    if raw is None:
        return
    ctx.response.data = await guarded(raw.aread(), ctx.cancel)


AUTO_TRANSFORMERS: tuple[ResponseTransformer, ...] = (json_transformer, sse_transformer)
