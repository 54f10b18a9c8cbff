"""Resilience patterns: circuit breaker, backoff and attempt outcomes.

Protects the gateway and its callers from a failing upstream LLM API:
named circuit breakers stop calls after repeated failures, and
exponential backoff with jitter spaces out retries.
"""

from nutriai_gateway.resilience.backoff import (
    BackoffOptions,
    BackoffPolicy,
    parse_retry_after,
)
from nutriai_gateway.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitSnapshot,
    CircuitState,
)
from nutriai_gateway.resilience.outcome import Failure, Outcome, Success

__all__ = [
    "BackoffOptions",
    "BackoffPolicy",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitSnapshot",
    "CircuitState",
    "Failure",
    "Outcome",
    "Success",
    "parse_retry_after",
]
