from __future__ import annotations

import httpx
import pytest

from castor.context import CallContext
from castor.identifiers import parse_identifier
from castor.transformers import (
    AUTO_TRANSFORMERS,
    bytes_transformer,
    json_transformer,
    sse_transformer,
)

pytestmark = pytest.mark.unit


def _ctx(response: httpx.Response | None) -> CallContext:
    ctx = CallContext.from_identifier("completion", {}, parse_identifier("fake/m"))
    ctx.response.raw = response
    return ctx


async def _run_auto(ctx: CallContext) -> None:
    for transformer in AUTO_TRANSFORMERS:
        await transformer(ctx)


@pytest.mark.asyncio
async def test_json_transformer_parses_json_bodies() -> None:
    ctx = _ctx(
        httpx.Response(
            200,
            headers={"content-type": "application/json; charset=utf-8"},
            content=b'{"id": "abc"}',
        )
    )
    await json_transformer(ctx)
    assert ctx.response.data == {"id": "abc"}


@pytest.mark.asyncio
async def test_json_transformer_ignores_other_content_types() -> None:
    ctx = _ctx(httpx.Response(200, text="plain"))
    await json_transformer(ctx)
    assert ctx.response.data is None


@pytest.mark.asyncio
async def test_transformers_tolerate_missing_response() -> None:
    ctx = _ctx(None)
    await json_transformer(ctx)
    await sse_transformer(ctx)
    await bytes_transformer(ctx)
    assert ctx.response.data is None


@pytest.mark.asyncio
async def test_sse_transformer_exposes_lazy_iterator(sse_factory) -> None:
    ctx = _ctx(sse_factory('data: {"delta":"hi"}\n\n', "data: [DONE]\n\n"))
    await sse_transformer(ctx)

    assert ctx.response.raw is not None
    assert not ctx.response.raw.is_stream_consumed
    assert [item async for item in ctx.response.data] == [{"delta": "hi"}]


@pytest.mark.asyncio
async def test_bytes_transformer_reads_raw_body() -> None:
    ctx = _ctx(httpx.Response(200, content=b"\x00\x01audio"))
    await bytes_transformer(ctx)
    assert ctx.response.data == b"\x00\x01audio"


@pytest.mark.asyncio
async def test_auto_set_picks_decoder_by_content_type(sse_factory) -> None:
    json_ctx = _ctx(httpx.Response(200, json={"n": 1}))
    await _run_auto(json_ctx)
    assert json_ctx.response.data == {"n": 1}

    sse_ctx = _ctx(sse_factory("data: raw text\n\n"))
    await _run_auto(sse_ctx)
    assert [item async for item in sse_ctx.response.data] == ["raw text"]
