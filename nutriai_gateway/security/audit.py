"""AuditMiddleware, security events and terminal-error logging.

``AuditEntry`` is one JSONL record per request (who, what, outcome).  Entries
never include request bodies or tokens.  ``log_security_event`` reports auth
failures and similar events with a severity; ``log_terminal_error`` records
every error returned to a caller with its stable kind code and timestamp.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from nutriai_gateway.core.errors import AppError

_security_logger = logging.getLogger("nutriai_gateway.security")
_audit_logger = logging.getLogger("nutriai_gateway.audit")
_error_logger = logging.getLogger("nutriai_gateway.errors")


# ── SecuritySeverity ────────────────────────────────────────────────────


class SecuritySeverity(enum.Enum):
    """Severity levels for security events."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ── AuditEntry ──────────────────────────────────────────────────────────


@dataclass
class AuditEntry:
    """Structured audit record for one gateway request."""

    request_id: str = ""
    client_ip: str = ""
    method: str = ""
    path: str = ""
    status_code: int = 0
    latency_ms: float = 0.0
    error_code: str | None = None
    timestamp: str = ""

    def to_json(self) -> str:
        """Serialize to a single-line JSON string (JSONL-safe)."""
        return json.dumps(asdict(self), separators=(",", ":"), default=str)


def create_audit_entry(
    *,
    request_id: str,
    client_ip: str,
    method: str,
    path: str,
    status_code: int,
    latency_ms: float,
    error_code: str | None = None,
) -> AuditEntry:
    """Factory for ``AuditEntry`` with an automatic timestamp."""
    return AuditEntry(
        request_id=request_id,
        client_ip=client_ip,
        method=method,
        path=path,
        status_code=status_code,
        latency_ms=latency_ms,
        error_code=error_code,
        timestamp=datetime.now(UTC).isoformat(),
    )


# ── Event logging ───────────────────────────────────────────────────────


def log_security_event(
    event_type: str,
    severity: SecuritySeverity,
    detail: str,
    request_id: str = "",
) -> None:
    """Log a security event with severity.

    CRITICAL severity logs at ERROR level; others at WARNING.
    """
    msg = f"SECURITY_EVENT event={event_type} severity={severity.value} detail='{detail}' request_id={request_id}"
    if severity == SecuritySeverity.CRITICAL:
        _security_logger.error(msg)
    else:
        _security_logger.warning(msg)


def log_terminal_error(error: AppError, request_id: str = "", path: str = "") -> None:
    """Log an error that ends a request: kind, status, id and timestamp.

    Only the diagnostic context is logged alongside; the user message is
    what the caller sees and is not repeated here.
    """
    level = logging.ERROR if error.status_code >= 500 else logging.WARNING
    _error_logger.log(
        level,
        "TERMINAL_ERROR kind=%s status=%d error_id=%s timestamp=%s path=%s request_id=%s context=%s",
        error.kind.value,
        error.status_code,
        error.error_id,
        error.timestamp,
        path,
        request_id,
        dict(error.context),
    )


# ── AuditMiddleware ─────────────────────────────────────────────────────


class AuditMiddleware(BaseHTTPMiddleware):
    """Appends one JSONL audit entry per request when ``log_path`` is set."""

    def __init__(self, app: Any, log_path: str = "") -> None:
        super().__init__(app)
        self.log_path = log_path

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if not self.log_path:
            return await call_next(request)

        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000

        entry = create_audit_entry(
            request_id=getattr(request.state, "request_id", ""),
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=round(latency_ms, 2),
            error_code=getattr(request.state, "error_kind", None),
        )

        try:
            path = Path(self.log_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "a") as f:
                await f.write(entry.to_json() + "\n")
        except OSError:
            _audit_logger.exception("Failed to write audit entry to %s", self.log_path)

        return response
