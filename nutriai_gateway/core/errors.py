"""Structured errors for the nutriai-gateway service.

Every failure path produces an ``AppError``: a taxonomy tag (``ErrorKind``),
a user-facing message, a retryable flag, a timestamp and an error id, with
optional diagnostic context kept apart from what the caller sees.
Instances are read-only once created.

``classify_status`` and ``classify_exception`` turn raw upstream failures
into ``AppError`` instances for retry and circuit-breaker decisions.
"""

from __future__ import annotations

import asyncio
import json
import math
import secrets
import time
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

import httpx
from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Stable machine-readable error codes."""

    VALIDATION = "validation"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"


def generate_error_id() -> str:
    """Return a unique id of the form ``err_<epoch-ms>_<random>``."""
    return f"err_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class AppError(Exception):
    """Base exception for all gateway errors.

    Attributes are exposed as read-only properties; ``context`` is a
    read-only view of a private copy.
    """

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR
    default_status: int = 502
    default_message: str = "An unexpected error occurred."
    default_retryable: bool = False

    def __init__(
        self,
        user_message: str | None = None,
        *,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        upstream_status: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self._user_message = user_message or self.default_message
        self._retryable = self.default_retryable if retryable is None else retryable
        self._status_code = status_code or self.default_status
        self._retry_after = None if retry_after is None else max(0.0, retry_after)
        self._upstream_status = upstream_status
        self._context = MappingProxyType(dict(context or {}))
        self._timestamp = datetime.now(UTC).isoformat()
        self._error_id = generate_error_id()
        super().__init__(self._user_message)

    @property
    def user_message(self) -> str:
        return self._user_message

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def status_code(self) -> int:
        return self._status_code

    @property
    def retry_after(self) -> float | None:
        """Seconds the caller should wait before retrying, when known."""
        return self._retry_after

    @property
    def upstream_status(self) -> int | None:
        return self._upstream_status

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def timestamp(self) -> str:
        return self._timestamp

    @property
    def error_id(self) -> str:
        return self._error_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self._user_message!r})"


class InvalidRequestError(AppError):
    """Malformed, oversized or empty request body."""

    kind = ErrorKind.VALIDATION
    default_status = 400
    default_message = "Invalid request."


class UnauthorizedError(AppError):
    """Missing or invalid gateway token."""

    kind = ErrorKind.AUTH
    default_status = 401
    default_message = "Unauthorized"


class RateLimitExceededError(AppError):
    """Per-client request window exhausted."""

    kind = ErrorKind.RATE_LIMIT
    default_status = 429
    default_message = "Rate limit exceeded. Please retry later."


class ServiceUnavailableError(AppError):
    """The gateway cannot serve the request right now."""

    kind = ErrorKind.SERVICE_UNAVAILABLE
    default_status = 503
    default_message = "The service is temporarily unavailable. Please try again later."


class CircuitOpenError(ServiceUnavailableError):
    """Raised when a circuit breaker is open and the call is rejected.

    Never retryable for the current call; ``retry_after`` tells the caller
    when the breaker will admit a probe.
    """

    def __init__(self, backend_name: str, retry_after: float) -> None:
        self.backend_name = backend_name
        wait = max(0.0, retry_after)
        super().__init__(
            f"AI service temporarily unavailable. Please wait {retry_after_seconds(wait)} seconds and try again.",
            retryable=False,
            retry_after=wait,
            context={"circuit": backend_name},
        )


class UpstreamError(AppError):
    """Transport failure or non-2xx response from the upstream API."""

    kind = ErrorKind.UPSTREAM_ERROR
    default_status = 502
    default_message = "Upstream AI request failed."


class UpstreamTimeoutError(AppError):
    """Upstream call exceeded its timeout."""

    kind = ErrorKind.TIMEOUT
    default_status = 504
    default_message = "Request timeout. The AI service is taking too long to respond."
    default_retryable = True


class UpstreamParseError(AppError):
    """Upstream answered with content that could not be understood."""

    kind = ErrorKind.PARSE_ERROR
    default_status = 502
    default_message = "Unable to process the response. Please try again."


def retry_after_seconds(seconds: float) -> int:
    """Round a wait time up to whole seconds for ``Retry-After`` (minimum 1)."""
    return max(1, math.ceil(seconds))


# ── Classification ──────────────────────────────────────────────────────


def _upstream_message(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    nested = body.get("error")
    if isinstance(nested, dict) and nested.get("message"):
        return str(nested["message"])
    message = body.get("message")
    return message if isinstance(message, str) else ""


def classify_status(
    status_code: int,
    body: Any = None,
    *,
    retry_after: float | None = None,
    retryable_status_codes: frozenset[int] = frozenset({429, 500, 502, 503, 504}),
) -> AppError:
    """Map a non-2xx upstream status to an ``AppError``."""
    context = {"status": status_code}
    detail = _upstream_message(body)
    if detail:
        context["upstream_message"] = detail

    if status_code in (401, 403):
        return UpstreamError(
            "AI service authorization failed. Please contact your administrator.",
            retryable=False,
            upstream_status=status_code,
            context=context,
        )
    if status_code == 429 or "rate limit" in detail.lower():
        return RateLimitExceededError(
            "Too many requests. Please wait a moment before trying again.",
            retryable=True,
            retry_after=retry_after,
            upstream_status=status_code,
            context=context,
        )
    if status_code == 503:
        return ServiceUnavailableError(
            retryable=True,
            upstream_status=status_code,
            context=context,
        )
    if status_code >= 500:
        return UpstreamError(
            "A server error occurred. Please try again later.",
            retryable=status_code in retryable_status_codes,
            upstream_status=status_code,
            context=context,
        )
    return UpstreamError(
        detail or "The API returned an unexpected response.",
        retryable=status_code in retryable_status_codes,
        upstream_status=status_code,
        context=context,
    )


def classify_exception(exc: BaseException, context: Mapping[str, Any] | None = None) -> AppError:
    """Convert any exception raised by an operation into an ``AppError``."""
    if isinstance(exc, AppError):
        return exc
    ctx = dict(context or {})
    ctx["exception"] = type(exc).__name__

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return UpstreamTimeoutError("The request timed out. Please try again.", context=ctx)
    if isinstance(exc, httpx.HTTPStatusError):
        body: Any = None
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        from nutriai_gateway.resilience.backoff import parse_retry_after

        return classify_status(
            exc.response.status_code,
            body,
            retry_after=parse_retry_after(exc.response.headers.get("Retry-After")),
        )
    if isinstance(exc, httpx.TransportError):
        return UpstreamError(
            "A network error occurred. Please try again.",
            retryable=True,
            context=ctx,
        )
    if isinstance(exc, json.JSONDecodeError):
        return UpstreamParseError(context=ctx)
    return UpstreamError(str(exc) or "An unexpected error occurred.", retryable=False, context=ctx)


# ── Response envelope ───────────────────────────────────────────────────


class ErrorDetail(BaseModel):
    message: str
    code: str
    error_id: str | None = None


class ErrorResponse(BaseModel):
    """Structured error body: ``{"error": {"message", "code", "error_id"}}``.

    Never carries stack traces or diagnostic context.
    """

    error: ErrorDetail

    @classmethod
    def from_exception(cls, exc: Exception) -> "ErrorResponse":
        """Create from an exception; unhandled exceptions leak nothing."""
        if isinstance(exc, AppError):
            return cls(error=ErrorDetail(message=exc.user_message, code=exc.kind.value, error_id=exc.error_id))
        return cls(error=ErrorDetail(message="An internal error occurred", code="internal_error"))

    @classmethod
    def from_message(cls, message: str, code: str) -> "ErrorResponse":
        return cls(error=ErrorDetail(message=message, code=code))
