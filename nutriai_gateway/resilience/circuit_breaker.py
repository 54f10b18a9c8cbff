"""Async circuit breaker for the upstream LLM API.

Implements the standard three-state circuit breaker:

    CLOSED    →  (failure_threshold reached)  →  OPEN
    OPEN      →  (cooldown elapsed)           →  HALF_OPEN
    HALF_OPEN →  (probe succeeds)             →  CLOSED
    HALF_OPEN →  (probe fails)                →  OPEN (longer cooldown)

The cooldown grows with every consecutive trip: it is the unjittered
``BackoffPolicy`` delay for the current trip count, capped at
``max_recovery_timeout``.  Every transition is pushed synchronously to
subscribers as a read-only ``CircuitSnapshot``.

Named breakers live in an explicit ``CircuitBreakerRegistry`` owned by the
application; there is no module-level instance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from nutriai_gateway.core.errors import CircuitOpenError
from nutriai_gateway.resilience.backoff import BackoffOptions, BackoffPolicy

logger = logging.getLogger(__name__)

# Number of state transitions kept for diagnostics
_TRANSITION_HISTORY = 50


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class StateTransition:
    from_state: CircuitState
    to_state: CircuitState
    timestamp: str


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of a breaker, handed to subscribers and health checks."""

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: str | None
    next_attempt_in: float | None
    trip_count: int
    total_calls: int
    total_failures: int
    total_rejections: int
    total_successes: int
    failures_by_kind: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


Listener = Callable[[CircuitSnapshot], None]


class CircuitBreaker:
    """Async-safe circuit breaker for a single upstream operation.

    Args:
        name:                  Human-readable name (for logging/errors).
        failure_threshold:     Consecutive failures before opening the circuit.
        recovery_timeout:      Seconds the circuit stays OPEN after the first trip.
        max_recovery_timeout:  Upper bound for the growing cooldown.
        half_open_max:         Max concurrent probes in HALF_OPEN state.
        clock:                 Monotonic time source in seconds.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        max_recovery_timeout: float = 300.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.max_recovery_timeout = max(recovery_timeout, max_recovery_timeout)
        self.half_open_max = half_open_max
        self._clock = clock
        self._cooldown = BackoffPolicy(
            BackoffOptions(
                base_delay_ms=recovery_timeout * 1000,
                max_delay_ms=self.max_recovery_timeout * 1000,
                multiplier=2.0,
                jitter=False,
            )
        )

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trip_count = 0
        self._last_failure_at: datetime | None = None
        self._next_attempt_at: float | None = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0
        self.failures_by_kind: dict[str, int] = {}
        self.transitions: deque[StateTransition] = deque(maxlen=_TRANSITION_HISTORY)

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Return the current state, reporting OPEN as HALF_OPEN once due."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def trip_count(self) -> int:
        return self._trip_count

    @property
    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 otherwise)."""
        if self._state != CircuitState.OPEN or self._next_attempt_at is None:
            return 0.0
        return max(0.0, self._next_attempt_at - self._clock())

    def current_cooldown(self) -> float:
        """Cooldown in seconds the next trip would apply."""
        return self._cooldown.unjittered_delay(self._trip_count + 1) / 1000

    # ── Core call wrapper ────────────────────────────────────────────

    async def pre_check(self) -> None:
        """Check whether a call is allowed; raise if circuit is open.

        Must be called **before** the actual upstream dispatch.
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    self.total_rejections += 1
                    raise CircuitOpenError(self.name, self.retry_after)
                self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max:
                    self.total_rejections += 1
                    raise CircuitOpenError(self.name, 1.0)
                self._half_open_calls += 1

            self.total_calls += 1

    async def on_success(self) -> None:
        """Record a successful call; close the circuit if probing.

        A late success while OPEN (a call admitted before the trip) only
        clears the failure count; the circuit stays open until its probe.
        """
        async with self._lock:
            self.total_successes += 1
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._trip_count = 0
                self._half_open_calls = 0
                self._next_attempt_at = None
                self._transition(CircuitState.CLOSED)

    async def on_failure(self, kind: str = "upstream_error") -> None:
        """Record a failed call; potentially open the circuit."""
        async with self._lock:
            self._failure_count += 1
            self.total_failures += 1
            self.failures_by_kind[kind] = self.failures_by_kind.get(kind, 0) + 1
            self._last_failure_at = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = 0
                self._trip()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._trip()

    async def release(self) -> None:
        """Free a HALF_OPEN probe slot for a call that ended without outcome."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    async def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        async with self._lock:
            self._failure_count = 0
            self._trip_count = 0
            self._half_open_calls = 0
            self._next_attempt_at = None
            self._transition(CircuitState.CLOSED, force=True)

    async def force_open(self) -> None:
        """Open the circuit immediately (operator action)."""
        async with self._lock:
            self._half_open_calls = 0
            self._trip()

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for state changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> CircuitSnapshot:
        """Return a read-only snapshot for health/metrics and subscribers."""
        return CircuitSnapshot(
            name=self.name,
            state=self.state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at.isoformat() if self._last_failure_at else None,
            next_attempt_in=round(self.retry_after, 3) if self._state == CircuitState.OPEN else None,
            trip_count=self._trip_count,
            total_calls=self.total_calls,
            total_failures=self.total_failures,
            total_rejections=self.total_rejections,
            total_successes=self.total_successes,
            failures_by_kind=dict(self.failures_by_kind),
        )

    # ── Internals (caller holds the lock) ────────────────────────────

    def _cooldown_elapsed(self) -> bool:
        return self._next_attempt_at is None or self._clock() >= self._next_attempt_at

    def _trip(self) -> None:
        self._trip_count += 1
        cooldown = self._cooldown.unjittered_delay(self._trip_count) / 1000
        self._next_attempt_at = self._clock() + cooldown
        self._transition(CircuitState.OPEN, force=True)
        logger.warning(
            "Circuit '%s' opened after %d failure(s); next probe in %.1fs (trip %d)",
            self.name,
            self._failure_count,
            cooldown,
            self._trip_count,
        )

    def _transition(self, new_state: CircuitState, *, force: bool = False) -> None:
        if new_state == self._state and not force:
            return
        previous = self._state
        self._state = new_state
        self.transitions.append(
            StateTransition(previous, new_state, datetime.now(UTC).isoformat()),
        )
        if previous != new_state:
            logger.warning("Circuit '%s' state: %s -> %s", self.name, previous.value, new_state.value)
        self._notify()

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in tuple(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Circuit '%s' listener failed", self.name)


class CircuitBreakerRegistry:
    """Manages named ``CircuitBreaker`` instances.

    Usage::

        registry = CircuitBreakerRegistry(failure_threshold=5, recovery_timeout=60.0)
        cb = registry.get("chat-completions")
        await cb.pre_check()
        # ... dispatch ...
        await cb.on_success()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        max_recovery_timeout: float = 300.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = failure_threshold
        self._recovery = recovery_timeout
        self._max_recovery = max_recovery_timeout
        self._half_open_max = half_open_max
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        """Return (or create) the circuit breaker for *name*."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name=name,
                failure_threshold=self._threshold,
                recovery_timeout=self._recovery,
                max_recovery_timeout=self._max_recovery,
                half_open_max=self._half_open_max,
                clock=self._clock,
            )
        return self._breakers[name]

    @property
    def names(self) -> list[str]:
        return list(self._breakers)

    def all_snapshots(self) -> list[dict[str, Any]]:
        """Return snapshots for every registered breaker."""
        return [cb.snapshot().to_dict() for cb in self._breakers.values()]

    async def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        for cb in self._breakers.values():
            await cb.reset()
