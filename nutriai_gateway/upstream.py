"""UpstreamDispatcher: breaker-guarded, retried calls to the LLM HTTP API.

Each gateway endpoint maps to an ``UpstreamRoute`` (API path plus the name
of the circuit breaker guarding it).  ``UpstreamDispatcher.send()`` performs
one logical request:

1. ``pre_check`` the route's breaker (raises ``CircuitOpenError`` when open).
2. Make one attempt; the attempt returns ``Success`` or ``Failure`` instead
   of raising.
3. On a retryable failure with budget left, wait the ``BackoffPolicy`` delay
   (upstream ``Retry-After`` on 429) and go to 1.
4. Otherwise return the upstream response (a final non-2xx response is
   relayed verbatim) or raise the classified ``AppError``.

The response returned is the one read during the breaker-guarded attempt;
there is never a second round trip for the same logical request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from nutriai_gateway.core.config import Settings
from nutriai_gateway.core.errors import (
    AppError,
    UpstreamError,
    UpstreamParseError,
    UpstreamTimeoutError,
    classify_status,
)
from nutriai_gateway.resilience.backoff import BackoffOptions, BackoffPolicy, parse_retry_after
from nutriai_gateway.resilience.circuit_breaker import CircuitBreakerRegistry
from nutriai_gateway.resilience.outcome import Failure, Outcome, Success

logger = logging.getLogger(__name__)

# ── Data classes ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UpstreamRoute:
    """Route definition for one upstream operation.

    Attributes:
        path:    API path appended to ``UPSTREAM_BASE_URL``.
        breaker: Name of the circuit breaker guarding the route.
    """

    path: str
    breaker: str


@dataclass
class UpstreamResult:
    """The single upstream response for a logical request.

    Attributes:
        status_code:  HTTP status code from the upstream.
        content:      Raw response body, relayed without re-encoding.
        content_type: Upstream ``Content-Type`` (JSON when absent).
        headers:      Response headers as a plain dict.
        elapsed_ms:   Round-trip time of the final attempt in milliseconds.
    """

    status_code: int
    content: bytes
    content_type: str = "application/json"
    headers: dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            UpstreamParseError: The body is not valid JSON.
        """
        try:
            return json.loads(self.content)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise UpstreamParseError(context={"status": self.status_code}) from None


# ── Route table ─────────────────────────────────────────────────────────

ROUTES: dict[str, UpstreamRoute] = {
    "chat": UpstreamRoute(path="/chat/completions", breaker="chat-completions"),
    "transcribe": UpstreamRoute(path="/audio/transcriptions", breaker="audio-transcriptions"),
}


def backoff_from_settings(settings: Settings) -> BackoffPolicy:
    """Build the request retry policy from ``RETRY_*`` settings."""
    return BackoffPolicy(
        BackoffOptions(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            multiplier=settings.RETRY_MULTIPLIER,
            jitter=settings.RETRY_JITTER,
        )
    )


# ── Dispatcher ──────────────────────────────────────────────────────────


class UpstreamDispatcher:
    """Sends gateway requests to the upstream LLM API.

    Args:
        settings: Application settings (base URL, credential, timeout).
        registry: Circuit breakers, one per route.
        backoff:  Retry policy; built from settings when omitted.
        client:   Shared ``httpx.AsyncClient``; tests inject one with a
                  ``MockTransport``.  Created lazily when omitted.
        sleep:    Coroutine used for backoff waits.
    """

    def __init__(
        self,
        settings: Settings,
        registry: CircuitBreakerRegistry,
        backoff: BackoffPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = settings.UPSTREAM_BASE_URL.rstrip("/")
        self.routes = dict(ROUTES)
        self.backoff = backoff or backoff_from_settings(settings)
        self._api_key = settings.UPSTREAM_API_KEY
        self._timeout = settings.timeout_seconds
        self._registry = registry
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def circuit_breakers(self) -> CircuitBreakerRegistry:
        """Expose the breaker registry for health/admin endpoints."""
        return self._registry

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def send(
        self,
        route_name: str,
        *,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> UpstreamResult:
        """Send one logical request for *route_name*.

        Returns:
            The upstream response: 2xx, or the final non-2xx response once
            retries are exhausted or the status is not retryable.

        Raises:
            ValueError: If *route_name* is not in the route table.
            CircuitOpenError: The route's breaker rejected the call.
            UpstreamTimeoutError: Every allowed attempt timed out.
            UpstreamError: The upstream could not be reached.
        """
        route = self.routes.get(route_name)
        if route is None:
            raise ValueError(f"Unknown upstream route: {route_name}")

        url = f"{self.base_url}{route.path}"
        breaker = self._registry.get(route.breaker)
        attempt = 0

        while True:
            attempt += 1
            await breaker.pre_check()
            try:
                outcome = await self._attempt(url, json=json, data=data, files=files)
            except BaseException:
                await breaker.release()
                raise

            if isinstance(outcome, Success):
                await breaker.on_success()
                return outcome.value

            error = outcome.error
            if error.retryable:
                await breaker.on_failure(error.kind.value)
            else:
                # Non-retryable status: the upstream is reachable.
                await breaker.on_success()

            if error.retryable and self.backoff.should_retry(attempt, error.upstream_status):
                delay_ms = self.backoff.delay_for(attempt, error.upstream_status, error.retry_after)
                logger.warning(
                    "%s failed for %s (attempt %d/%d, %s), retrying in %.0fms",
                    route_name,
                    url,
                    attempt,
                    self.backoff.options.max_retries + 1,
                    error.kind.value,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                continue

            if outcome.value is not None:
                return outcome.value
            raise error

    async def _attempt(
        self,
        url: str,
        *,
        json: Any,
        data: dict[str, Any] | None,
        files: dict[str, Any] | None,
    ) -> Outcome[UpstreamResult]:
        """Execute a single attempt; never raises for upstream failures."""
        client = self._get_client()
        headers = {"Authorization": f"Bearer {self._api_key}"}
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.post(url, headers=headers, json=json, data=data, files=files, timeout=self._timeout),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            return Failure(UpstreamTimeoutError(context={"url": url, "exception": type(exc).__name__}))
        except httpx.RequestError as exc:
            return Failure(
                UpstreamError(retryable=True, context={"url": url, "exception": type(exc).__name__}),
            )

        result = UpstreamResult(
            status_code=response.status_code,
            content=response.content,
            content_type=response.headers.get("content-type", "application/json"),
            headers=dict(response.headers),
            elapsed_ms=round((time.monotonic() - start) * 1000, 2),
        )
        if result.ok:
            return Success(result)
        return Failure(self._classify(response), result)

    def _classify(self, response: httpx.Response) -> AppError:
        try:
            body = response.json()
        except ValueError:
            body = None
        return classify_status(
            response.status_code,
            body,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            retryable_status_codes=self.backoff.options.retryable_status_codes,
        )

    async def close(self) -> None:
        """Close the HTTP client if the dispatcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
