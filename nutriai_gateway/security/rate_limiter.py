"""In-memory per-client rate limiter.

Fixed-window counter keyed by client identifier (IP address or the first
``X-Forwarded-For`` entry).  ``check()`` is synchronous, so the
read-then-write on the shared map cannot interleave with other requests on
the event loop.

State lives in the process only: each gateway instance counts
independently, and counts are lost on restart.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.requests import Request

_logger = logging.getLogger("nutriai_gateway.security")

# Cap on tracked client windows
_DEFAULT_MAX_ENTRIES: int = 10000


@dataclass
class RateWindowEntry:
    """Request count for one client inside one window."""

    count: int
    reset_at: float  # Epoch seconds


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate-limit check."""

    allowed: bool
    reset_at: float
    limit: int
    remaining: int

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, rounded up (minimum 1)."""
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimiter:
    """Per-client fixed-window request counter.

    Args:
        window_ms:    Window length in milliseconds.
        max_requests: Requests allowed per client per window.
        clock:        Time source in epoch seconds.
        max_entries:  Hard cap on tracked clients; expired windows are pruned
                      first, then the oldest live windows are dropped.
    """

    def __init__(
        self,
        window_ms: int = 60000,
        max_requests: int = 60,
        clock: Callable[[], float] = time.time,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
    ) -> None:
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.window_seconds = window_ms / 1000
        self.max_requests = max_requests
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, RateWindowEntry] = {}

    def now(self) -> float:
        return self._clock()

    def check(self, client_id: str) -> RateLimitDecision:
        """Count a request from *client_id* and decide whether it may proceed."""
        now = self._clock()
        entry = self._entries.get(client_id)

        if entry is None or entry.reset_at <= now:
            if entry is None and len(self._entries) >= self.max_entries:
                self._make_room(now)
            entry = RateWindowEntry(count=1, reset_at=now + self.window_seconds)
            self._entries[client_id] = entry
            return self._decision(True, entry)

        if entry.count >= self.max_requests:
            return self._decision(False, entry)

        entry.count += 1
        return self._decision(True, entry)

    def prune(self, now: float | None = None) -> int:
        """Evict expired windows; return how many were removed."""
        current = self._clock() if now is None else now
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= current]
        for key in expired:
            del self._entries[key]
        if expired:
            _logger.debug("Pruned %d expired rate-limit windows", len(expired))
        return len(expired)

    def _make_room(self, now: float) -> None:
        """Keep the map under ``max_entries``: prune, then drop the oldest windows."""
        self.prune(now)
        evicted = 0
        while self._entries and len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda key: self._entries[key].reset_at)
            del self._entries[oldest]
            evicted += 1
        if evicted:
            _logger.warning("Rate-limit map full (%d); evicted %d live window(s)", self.max_entries, evicted)

    def reset(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _decision(self, allowed: bool, entry: RateWindowEntry) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=allowed,
            reset_at=entry.reset_at,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - entry.count),
        )


def client_ip(request: Request) -> str:
    """Extract the client key for rate limiting.

    Priority: first ``X-Forwarded-For`` entry > socket address > ``"unknown"``.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    client = request.client
    return client.host if client else "unknown"
