"""Exponential backoff with jitter.

``BackoffPolicy.delay(attempt)`` is pure given its ``BackoffOptions`` and
random source:

    delay = min(base_delay_ms * multiplier ** (attempt - 1), max_delay_ms)

With jitter enabled the delay is scaled by a factor drawn from
``[0.75, 1.25]`` so that clients recovering from a shared outage do not
retry in lockstep.  Attempts are 1-based.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

# Jitter band (±25%)
JITTER_LOW = 0.75
JITTER_HIGH = 1.25

# Upper bound honoured for an upstream Retry-After on 429 responses
RATE_LIMIT_MAX_DELAY_MS = 60000.0

DEFAULT_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class BackoffOptions:
    """Immutable retry configuration."""

    max_retries: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    multiplier: float = 2.0
    jitter: bool = True
    retryable_status_codes: frozenset[int] = field(default=DEFAULT_RETRYABLE_STATUS_CODES)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        object.__setattr__(self, "retryable_status_codes", frozenset(self.retryable_status_codes))


class BackoffPolicy:
    """Computes retry delays and retry eligibility.

    Args:
        options: Backoff configuration.
        rng:     Random source returning floats in ``[0, 1)``; injectable
                 so tests can pin the jitter factor.
    """

    def __init__(self, options: BackoffOptions | None = None, rng: Callable[[], float] = random.random) -> None:
        self.options = options or BackoffOptions()
        self._rng = rng

    def unjittered_delay(self, attempt: int) -> float:
        """Exponential delay in milliseconds for *attempt*, capped."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        opts = self.options
        try:
            raw = opts.base_delay_ms * (opts.multiplier ** (attempt - 1))
        except OverflowError:
            return opts.max_delay_ms
        return min(raw, opts.max_delay_ms)

    def delay(self, attempt: int) -> float:
        """Delay in milliseconds before retry number *attempt*."""
        base = self.unjittered_delay(attempt)
        if not self.options.jitter:
            return base
        factor = JITTER_LOW + self._rng() * (JITTER_HIGH - JITTER_LOW)
        return base * factor

    def should_retry(self, attempt: int, status_code: int | None = None) -> bool:
        """Whether a failed *attempt* may be retried.

        ``status_code=None`` means the failure was a transport error or a
        timeout, which is always eligible while budget remains.
        """
        if attempt > self.options.max_retries:
            return False
        if status_code is None:
            return True
        return status_code in self.options.retryable_status_codes

    def delay_for(self, attempt: int, status_code: int | None = None, retry_after: float | None = None) -> float:
        """Delay in milliseconds, preferring the upstream ``Retry-After`` on 429."""
        if status_code == 429 and retry_after is not None:
            return min(retry_after * 1000, RATE_LIMIT_MAX_DELAY_MS)
        return self.delay(attempt)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Accepts delta-seconds (``"120"``) or an HTTP date.  Returns ``None`` for
    missing or unparseable values.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds) if seconds == seconds else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    current = now or datetime.now(UTC)
    return max(0.0, (when - current).total_seconds())
