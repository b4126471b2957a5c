"""Incremental server-sent-events decoding.

Turns a byte stream into a lazy, single-pass sequence of payloads. Each
frame's ``data:`` lines are joined with newlines; frames without data are
skipped; the ``[DONE]`` sentinel ends the sequence. Payloads that look like
JSON objects or arrays are parsed best-effort and fall back to text.
"""

from __future__ import annotations

import codecs
import json
from typing import TYPE_CHECKING, Any

from castor.transport import iter_body

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

    import httpx

    from castor.cancellation import CancellationToken

DONE_SENTINEL = "[DONE]"
_FRAME_DELIMITER = "\n\n"
_DATA_PREFIX = "data:"


def extract_data(frame: str) -> str | None:
    """Join the ``data:`` lines of one frame, or None if it has none."""
    lines: list[str] = []
    for line in frame.split("\n"):
        if not line.startswith(_DATA_PREFIX):
            continue
        value = line[len(_DATA_PREFIX) :]
        lines.append(value[1:] if value.startswith(" ") else value)
    if not lines:
        return None
    return "\n".join(lines)


def parse_payload(data: str) -> Any:
    """Parse JSON-looking payloads; return trimmed text otherwise. Never raises."""
    trimmed = data.strip()
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    ):
        try:
            return json.loads(trimmed)
        except ValueError:
            pass
    return trimmed


async def iter_sse_data(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield the joined data text of each frame until the sentinel."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        buffer = buffer.replace("\r\n", "\n")
        while True:
            idx = buffer.find(_FRAME_DELIMITER)
            if idx == -1:
                break
            frame, buffer = buffer[:idx], buffer[idx + len(_FRAME_DELIMITER) :]
            data = extract_data(frame)
            if data is None:
                continue
            if data.strip() == DONE_SENTINEL:
                return
            yield data


async def iter_sse_payloads(chunks: AsyncIterable[bytes]) -> AsyncIterator[Any]:
    """Yield decoded payloads from an SSE byte stream."""
    async for data in iter_sse_data(chunks):
        yield parse_payload(data)


async def decode_sse(
    response: httpx.Response, cancel: CancellationToken | None = None
) -> AsyncIterator[Any]:
    """Decode an SSE response body lazily, closing the response when done."""
    try:
        async for payload in iter_sse_payloads(iter_body(response, cancel)):
            yield payload
    finally:
        await response.aclose()
