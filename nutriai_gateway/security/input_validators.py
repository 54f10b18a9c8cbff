"""Input validation and sanitization.

Provides ``sanitize_string()`` for null-byte stripping and Unicode NFC
normalization, ``is_number()`` for JSON-number checks, and
``read_json_body()`` which reads a request body under a byte limit.
"""

from __future__ import annotations

import json
import math
import unicodedata
from typing import Any

from starlette.requests import Request

from nutriai_gateway.core.errors import InvalidRequestError


def sanitize_string(value: str) -> str:
    """Strip null bytes and normalize to Unicode NFC."""
    value = value.replace("\x00", "")
    value = unicodedata.normalize("NFC", value)
    return value


def is_number(value: Any) -> bool:
    """True for finite JSON numbers; booleans are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


async def read_body(request: Request, max_bytes: int) -> bytes:
    """Read the raw body, refusing anything larger than *max_bytes*.

    A declared ``Content-Length`` over the limit is rejected before any
    bytes are read; otherwise the stream is counted as it arrives.
    """
    declared = request.headers.get("Content-Length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise InvalidRequestError("Request body too large")

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > max_bytes:
            raise InvalidRequestError("Request body too large")
        chunks.append(chunk)

    body = b"".join(chunks)
    if not body:
        raise InvalidRequestError("Request body required")
    return body


async def read_json_body(request: Request, max_bytes: int) -> Any:
    """Read and decode a JSON body; 400-class errors for every failure."""
    raw = await read_body(request, max_bytes)
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise InvalidRequestError("Malformed JSON body") from None
