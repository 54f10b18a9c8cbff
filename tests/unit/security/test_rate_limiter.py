"""In-memory rate limiter tests.

Covers fixed-window counting, window reset, Retry-After rounding,
rate-limit headers, pruning and client IP extraction.
"""

import pytest
from starlette.requests import Request

from nutriai_gateway.security.rate_limiter import RateLimiter, client_ip


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("10.0.0.1", 5555)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/ai/chat",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestFixedWindow:
    def test_first_request_allowed(self):
        limiter = RateLimiter(window_ms=60000, max_requests=2, clock=FakeClock())
        decision = limiter.check("a")
        assert decision.allowed is True
        assert decision.remaining == 1

    def test_sixty_first_request_rejected(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=60000, max_requests=60, clock=clock)
        results = [limiter.check("client").allowed for _ in range(61)]
        assert results[:60] == [True] * 60
        assert results[60] is False

    def test_rejection_keeps_reset_at(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=60000, max_requests=1, clock=clock)
        first = limiter.check("a")
        clock.now += 30
        second = limiter.check("a")
        assert second.allowed is False
        assert second.reset_at == first.reset_at
        assert second.retry_after(clock.now) == 30

    def test_window_resets_at_boundary(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=60000, max_requests=1, clock=clock)
        limiter.check("a")
        clock.now += 60
        assert limiter.check("a").allowed is True

    def test_keys_independent(self):
        limiter = RateLimiter(window_ms=60000, max_requests=1, clock=FakeClock())
        assert limiter.check("a").allowed is True
        assert limiter.check("b").allowed is True
        assert limiter.check("a").allowed is False

    def test_never_exceeds_max_within_window(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=1000, max_requests=5, clock=clock)
        accepted_per_window: dict[float, int] = {}
        for _ in range(200):
            decision = limiter.check("k")
            if decision.allowed:
                accepted_per_window[decision.reset_at] = accepted_per_window.get(decision.reset_at, 0) + 1
            clock.now += 0.037
        assert len(accepted_per_window) > 1
        assert max(accepted_per_window.values()) == 5

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(window_ms=0)


class TestRetryAfter:
    @pytest.mark.parametrize(("remaining", "expected"), [(59.2, 60), (0.4, 1), (0.0, 1), (-2.0, 1)])
    def test_rounded_up_minimum_one(self, remaining, expected):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=60000, max_requests=1, clock=clock)
        decision = limiter.check("a")
        assert decision.retry_after(decision.reset_at - remaining) == expected

    def test_headers(self):
        limiter = RateLimiter(window_ms=60000, max_requests=3, clock=FakeClock(100.0))
        headers = limiter.check("a").headers()
        assert headers == {"X-RateLimit-Limit": "3", "X-RateLimit-Remaining": "2", "X-RateLimit-Reset": "160"}


class TestPruning:
    def test_prune_removes_expired(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=1000, max_requests=5, clock=clock)
        limiter.check("old")
        clock.now += 2
        limiter.check("new")
        assert limiter.prune() == 1
        assert len(limiter) == 1

    def test_auto_prune_when_full(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=1000, max_requests=5, clock=clock, max_entries=3)
        for key in ("a", "b", "c"):
            limiter.check(key)
        clock.now += 2
        limiter.check("d")
        assert len(limiter) == 1

    def test_map_capped_when_all_windows_live(self):
        clock = FakeClock()
        limiter = RateLimiter(window_ms=60000, max_requests=1, clock=clock, max_entries=2)
        limiter.check("a")
        clock.now += 1
        limiter.check("b")
        clock.now += 1
        limiter.check("c")
        assert len(limiter) == 2
        # "a" held the oldest window and was dropped, so it starts afresh
        assert limiter.check("a").allowed is True
        assert limiter.check("c").allowed is False
        assert len(limiter) == 2

    def test_reset(self):
        limiter = RateLimiter(clock=FakeClock())
        limiter.check("a")
        limiter.reset()
        assert len(limiter) == 0


class TestClientIp:
    def test_first_forwarded_entry(self):
        req = _request({"X-Forwarded-For": "203.0.113.7, 10.0.0.2"})
        assert client_ip(req) == "203.0.113.7"

    def test_socket_address(self):
        assert client_ip(_request()) == "10.0.0.1"

    def test_blank_forwarded_falls_back(self):
        assert client_ip(_request({"X-Forwarded-For": " , 10.0.0.9"})) == "10.0.0.1"

    def test_unknown(self):
        assert client_ip(_request(client=None)) == "unknown"

