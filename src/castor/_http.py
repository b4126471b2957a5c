"""Small HTTP-related constants and helpers shared across Castor.

Status classification and content-type checks used by retry and decoding.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

# Explicit allow-list. Anything >= 500 is also retryable unless excluded below.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset(
    {408, 409, 425, 429, 500, 502, 503, 504, 507, 508, 509, 520, 521, 522, 523, 524}
)
NON_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({501, 505})

# Statuses whose Retry-After header is honoured.
RETRY_AFTER_STATUS_CODES: frozenset[int] = frozenset({429, 503})

JSON_CONTENT_TYPE = "application/json"
SSE_CONTENT_TYPE = "text/event-stream"


def is_retryable_status(status_code: int) -> bool:
    """Return True when an HTTP status may succeed on a later attempt."""
    if status_code in NON_RETRYABLE_STATUS_CODES:
        return False
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def media_type(headers: httpx.Headers) -> str:
    """Return the lowercased media type of a Content-Type header, sans params."""
    raw = headers.get("content-type", "")
    return raw.split(";", 1)[0].strip().lower()


def is_json_media_type(value: str) -> bool:
    return value == JSON_CONTENT_TYPE


def is_sse_media_type(value: str) -> bool:
    return value.startswith(SSE_CONTENT_TYPE)
