"""ResilientClient: run arbitrary async operations under a circuit breaker.

Consumer-side counterpart of the gateway's upstream dispatcher, for Python
code that calls the AI service directly (e.g. a meal-planning prompt)::

    breaker = registry.get("meal-planner")
    client = ResilientClient(breaker, BackoffPolicy(BackoffOptions(max_retries=2)))
    plan = await client.execute(lambda: api.generate_plan(prompt))

Before each attempt the breaker is consulted; an open breaker fails fast
with a ``CircuitOpenError`` and the operation is not invoked.  Failures are
classified into ``AppError`` instances; retryable ones are retried with
backoff while budget remains.  ``state`` reports the outcome of the last
call, and ``subscribe()`` forwards breaker transitions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from nutriai_gateway.core.errors import AppError, classify_exception
from nutriai_gateway.resilience.backoff import BackoffPolicy
from nutriai_gateway.resilience.circuit_breaker import CircuitBreaker, CircuitSnapshot, CircuitState
from nutriai_gateway.resilience.outcome import Failure, Outcome, Success

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class OperationState:
    """Status of the most recent ``execute`` call."""

    status: OperationStatus = OperationStatus.IDLE
    error: AppError | None = None
    last_updated: str | None = None


class ResilientClient:
    """Breaker-supervised, retrying executor for async operations.

    Args:
        breaker: Circuit breaker shared by every operation of this client.
        backoff: Retry policy (defaults to ``BackoffPolicy()``).
        timeout: Optional per-attempt timeout in seconds.
        sleep:   Coroutine used for backoff waits.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        backoff: BackoffPolicy | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.breaker = breaker
        self.backoff = backoff or BackoffPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._state = OperationState()

    @property
    def state(self) -> OperationState:
        return self._state

    @property
    def circuit_state(self) -> CircuitState:
        return self.breaker.state

    def subscribe(self, listener: Callable[[CircuitSnapshot], None]) -> Callable[[], None]:
        """Receive breaker snapshots on every transition; returns unsubscribe."""
        return self.breaker.subscribe(listener)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* with breaker checks and retries.

        Raises:
            CircuitOpenError: The breaker is open; *operation* was not called.
            AppError: The classified terminal failure.
            asyncio.CancelledError: Propagated untouched; state returns to idle.
        """
        self._set_state(OperationStatus.LOADING)
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.breaker.pre_check()
            except AppError as exc:
                self._set_state(OperationStatus.ERROR, exc)
                raise

            try:
                outcome = await self._attempt(operation)
            except asyncio.CancelledError:
                await self.breaker.release()
                self._set_state(OperationStatus.IDLE)
                raise

            if isinstance(outcome, Success):
                await self.breaker.on_success()
                status = OperationStatus.SUCCESS
                if self.breaker.state != CircuitState.CLOSED:
                    status = OperationStatus.DEGRADED
                self._set_state(status)
                return outcome.value

            error = outcome.error
            if error.retryable and self.backoff.should_retry(attempt, error.upstream_status):
                await self.breaker.release()
                delay_ms = self.backoff.delay_for(attempt, error.upstream_status, error.retry_after)
                logger.warning(
                    "Operation failed (%s, attempt %d), retrying in %.0fms",
                    error.kind.value,
                    attempt,
                    delay_ms,
                )
                try:
                    await self._sleep(delay_ms / 1000)
                except asyncio.CancelledError:
                    self._set_state(OperationStatus.IDLE)
                    raise
                continue

            if error.retryable:
                await self.breaker.on_failure(error.kind.value)
            else:
                await self.breaker.release()
            self._set_state(OperationStatus.ERROR, error)
            raise error

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> Outcome[T]:
        try:
            if self.timeout is None:
                value = await operation()
            else:
                value = await asyncio.wait_for(operation(), timeout=self.timeout)
        except Exception as exc:
            return Failure(classify_exception(exc))
        return Success(value)

    def _set_state(self, status: OperationStatus, error: AppError | None = None) -> None:
        self._state = replace(
            self._state,
            status=status,
            error=error,
            last_updated=datetime.now(UTC).isoformat(),
        )
