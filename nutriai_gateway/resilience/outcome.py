"""Per-attempt results for retry loops.

Each attempt returns ``Success`` or ``Failure`` instead of raising, and the
retry loop inspects the tag.  A ``Failure`` may still carry the value the
attempt produced (e.g. a non-2xx upstream response that should be relayed
once retries are exhausted).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from nutriai_gateway.core.errors import AppError

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failure(Generic[T]):
    error: AppError
    value: T | None = None


Outcome = Success[T] | Failure[T]
