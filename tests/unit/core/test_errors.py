"""Structured error tests.

Covers the AppError hierarchy, read-only attributes, status/exception
classification and the JSON error envelope (no stack traces).
"""

import asyncio
import json
import re

import httpx
import pytest

from nutriai_gateway.core.errors import (
    AppError,
    CircuitOpenError,
    ErrorKind,
    ErrorResponse,
    InvalidRequestError,
    RateLimitExceededError,
    ServiceUnavailableError,
    UnauthorizedError,
    UpstreamError,
    UpstreamParseError,
    UpstreamTimeoutError,
    classify_exception,
    classify_status,
    generate_error_id,
    retry_after_seconds,
)


# ── Error hierarchy ────────────────────────────────────────────────────


class TestErrorHierarchy:
    @pytest.mark.parametrize(
        ("cls", "kind", "status"),
        [
            (InvalidRequestError, ErrorKind.VALIDATION, 400),
            (UnauthorizedError, ErrorKind.AUTH, 401),
            (RateLimitExceededError, ErrorKind.RATE_LIMIT, 429),
            (ServiceUnavailableError, ErrorKind.SERVICE_UNAVAILABLE, 503),
            (UpstreamError, ErrorKind.UPSTREAM_ERROR, 502),
            (UpstreamTimeoutError, ErrorKind.TIMEOUT, 504),
            (UpstreamParseError, ErrorKind.PARSE_ERROR, 502),
        ],
    )
    def test_kind_and_status(self, cls, kind, status) -> None:
        err = cls()
        assert isinstance(err, AppError)
        assert err.kind == kind
        assert err.status_code == status

    def test_unauthorized_message(self) -> None:
        assert UnauthorizedError().user_message == "Unauthorized"

    def test_timeout_is_retryable(self) -> None:
        assert UpstreamTimeoutError().retryable is True

    def test_validation_not_retryable(self) -> None:
        assert InvalidRequestError("bad").retryable is False

    def test_circuit_open_is_service_unavailable(self) -> None:
        err = CircuitOpenError("chat-completions", 9.2)
        assert isinstance(err, ServiceUnavailableError)
        assert err.status_code == 503
        assert err.retryable is False
        assert err.retry_after == pytest.approx(9.2)
        assert err.backend_name == "chat-completions"
        assert "wait 10 seconds" in err.user_message


class TestAppErrorAttributes:
    def test_error_id_format(self) -> None:
        assert re.fullmatch(r"err_\d+_[0-9a-f]{9}", generate_error_id())

    def test_error_ids_unique(self) -> None:
        assert InvalidRequestError().error_id != InvalidRequestError().error_id

    def test_timestamp_is_iso(self) -> None:
        err = UpstreamError()
        assert "T" in err.timestamp
        assert err.timestamp.endswith("+00:00")

    def test_attributes_read_only(self) -> None:
        err = UpstreamError("boom")
        with pytest.raises(AttributeError):
            err.user_message = "changed"  # type: ignore[misc]
        with pytest.raises(AttributeError):
            err.retryable = True  # type: ignore[misc]

    def test_context_copied_and_immutable(self) -> None:
        ctx = {"status": 500}
        err = UpstreamError(context=ctx)
        ctx["status"] = 200
        assert err.context["status"] == 500
        with pytest.raises(TypeError):
            err.context["status"] = 1  # type: ignore[index]

    def test_negative_retry_after_clamped(self) -> None:
        assert ServiceUnavailableError(retry_after=-3).retry_after == 0.0


class TestRetryAfterSeconds:
    @pytest.mark.parametrize(("value", "expected"), [(0, 1), (0.2, 1), (1.0, 1), (9.01, 10), (10, 10)])
    def test_rounds_up_minimum_one(self, value, expected) -> None:
        assert retry_after_seconds(value) == expected


# ── Classification ─────────────────────────────────────────────────────


class TestClassifyStatus:
    def test_auth_failure_not_retryable(self) -> None:
        err = classify_status(401)
        assert isinstance(err, UpstreamError)
        assert err.retryable is False
        assert err.upstream_status == 401

    def test_429_is_rate_limit(self) -> None:
        err = classify_status(429, retry_after=12.0)
        assert isinstance(err, RateLimitExceededError)
        assert err.retryable is True
        assert err.retry_after == 12.0

    def test_rate_limit_message_detected(self) -> None:
        err = classify_status(400, {"error": {"message": "Rate limit reached for requests"}})
        assert err.kind == ErrorKind.RATE_LIMIT

    def test_unrelated_message_not_rate_limit(self) -> None:
        err = classify_status(400, {"error": {"message": "Failed to generate output"}})
        assert err.kind == ErrorKind.UPSTREAM_ERROR
        assert err.retryable is False

    def test_503_is_service_unavailable(self) -> None:
        err = classify_status(503)
        assert err.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert err.retryable is True

    def test_500_retryable(self) -> None:
        assert classify_status(500).retryable is True

    def test_501_not_retryable(self) -> None:
        assert classify_status(501).retryable is False

    def test_upstream_message_kept_in_context(self) -> None:
        err = classify_status(400, {"error": {"message": "bad model"}})
        assert err.context["upstream_message"] == "bad model"


class TestClassifyException:
    def test_app_error_passthrough(self) -> None:
        original = InvalidRequestError("nope")
        assert classify_exception(original) is original

    @pytest.mark.parametrize("exc", [asyncio.TimeoutError(), TimeoutError(), httpx.ReadTimeout("slow")])
    def test_timeouts(self, exc) -> None:
        err = classify_exception(exc)
        assert isinstance(err, UpstreamTimeoutError)
        assert err.retryable is True

    def test_transport_error(self) -> None:
        err = classify_exception(httpx.ConnectError("refused"))
        assert err.kind == ErrorKind.UPSTREAM_ERROR
        assert err.retryable is True
        assert err.context["exception"] == "ConnectError"

    def test_http_status_error(self) -> None:
        request = httpx.Request("POST", "https://upstream.test/chat/completions")
        response = httpx.Response(429, headers={"Retry-After": "7"}, json={"error": {"message": "slow down"}}, request=request)
        err = classify_exception(httpx.HTTPStatusError("429", request=request, response=response))
        assert isinstance(err, RateLimitExceededError)
        assert err.retry_after == 7.0

    def test_json_decode_error(self) -> None:
        with pytest.raises(json.JSONDecodeError) as info:
            json.loads("{not json")
        assert isinstance(classify_exception(info.value), UpstreamParseError)

    def test_unknown_error_not_retryable(self) -> None:
        err = classify_exception(RuntimeError("weird"))
        assert err.retryable is False
        assert err.kind == ErrorKind.UPSTREAM_ERROR


# ── ErrorResponse envelope ─────────────────────────────────────────────


class TestErrorResponse:
    def test_from_app_error(self) -> None:
        err = InvalidRequestError("Request body required")
        body = ErrorResponse.from_exception(err).model_dump()
        assert body["error"]["message"] == "Request body required"
        assert body["error"]["code"] == "validation"
        assert body["error"]["error_id"] == err.error_id

    def test_unhandled_error_leaks_nothing(self) -> None:
        body = ErrorResponse.from_exception(ValueError("secret /etc/passwd")).model_dump_json()
        assert "passwd" not in body
        assert "internal_error" in body

    def test_context_not_serialized(self) -> None:
        err = UpstreamError(context={"upstream_message": "internal detail"})
        assert "internal detail" not in ErrorResponse.from_exception(err).model_dump_json()
