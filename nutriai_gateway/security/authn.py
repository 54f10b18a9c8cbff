"""AuthGuard: shared-token authentication and CORS origin resolution.

Callers present the gateway secret either as ``Authorization: Bearer <token>``
or in the ``X-API-Token`` header.  The comparison is constant-time: lengths
are checked first (a mismatch returns ``False`` without touching the
bytes), then ``hmac.compare_digest`` compares equal-length buffers.

The token is never logged.
"""

from __future__ import annotations

import hmac
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

_BEARER_PREFIX = "Bearer "
_API_TOKEN_HEADER = "X-API-Token"

_CORS_ALLOW_METHODS = "GET,POST,OPTIONS"
_CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-API-Token"
_CORS_MAX_AGE = "86400"


# ── Auth metrics ────────────────────────────────────────────────────────


@dataclass
class AuthMetrics:
    """Simple counters for auth events."""

    tokens_accepted: int = 0
    tokens_rejected: int = 0

    def record_acceptance(self) -> None:
        self.tokens_accepted += 1

    def record_rejection(self) -> None:
        self.tokens_rejected += 1

    def reset(self) -> None:
        """Reset all counters (useful for testing)."""
        self.tokens_accepted = 0
        self.tokens_rejected = 0


# ── Token helpers ───────────────────────────────────────────────────────


def extract_token(headers: Mapping[str, str]) -> str:
    """Return the presented token, or ``""`` when none was sent.

    The bearer token wins over ``X-API-Token`` when both are present.
    """
    auth_header = headers.get("Authorization") or headers.get("authorization") or ""
    if auth_header.startswith(_BEARER_PREFIX):
        bearer = auth_header[len(_BEARER_PREFIX) :].strip()
        if bearer:
            return bearer
    token = headers.get(_API_TOKEN_HEADER) or headers.get(_API_TOKEN_HEADER.lower()) or ""
    return token.strip()


def tokens_match(presented: str, expected: str) -> bool:
    """Constant-time comparison of two tokens.

    Unequal lengths short-circuit to ``False``; equal-length buffers are
    compared with ``hmac.compare_digest`` so timing does not depend on the
    position of the first mismatched byte.
    """
    a = presented.encode("utf-8")
    b = expected.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


# ── Guard ───────────────────────────────────────────────────────────────


class AuthGuard:
    """Decides whether a request is authorized and which origin may read it.

    Args:
        required:        When ``False`` every request is authorized.
        token:           Shared secret; an empty secret authorizes nobody.
        allowed_origins: Exact origins, or ``["*"]`` for any origin.
    """

    def __init__(self, required: bool = True, token: str = "", allowed_origins: Iterable[str] = ()) -> None:
        self.required = required
        self._token = token
        self.allowed_origins = [origin for origin in allowed_origins if origin]
        self.metrics = AuthMetrics()

    @property
    def misconfigured(self) -> bool:
        """Auth is required but no secret is set, so every call will be rejected."""
        return self.required and not self._token

    def is_authorized(self, headers: Mapping[str, str]) -> bool:
        if not self.required:
            return True

        presented = extract_token(headers)
        if not presented or not self._token:
            self.metrics.record_rejection()
            return False

        if tokens_match(presented, self._token):
            self.metrics.record_acceptance()
            return True
        self.metrics.record_rejection()
        return False

    def resolve_origin(self, origin: str | None) -> str | None:
        """Return the ``Access-Control-Allow-Origin`` value for *origin*, if any."""
        if not origin or not self.allowed_origins:
            return None
        if "*" in self.allowed_origins:
            return "*"
        return origin if origin in self.allowed_origins else None

    def cors_headers(self, origin: str | None) -> dict[str, str]:
        """CORS headers for a response to *origin*.

        Unlisted origins get no ``Access-Control-Allow-Origin``; the request
        still proceeds, but browsers will block cross-origin reads.
        """
        headers: dict[str, str] = {}
        allowed = self.resolve_origin(origin)
        if allowed:
            headers["Access-Control-Allow-Origin"] = allowed
            headers["Vary"] = "Origin"
        headers["Access-Control-Allow-Methods"] = _CORS_ALLOW_METHODS
        headers["Access-Control-Allow-Headers"] = _CORS_ALLOW_HEADERS
        headers["Access-Control-Max-Age"] = _CORS_MAX_AGE
        return headers
