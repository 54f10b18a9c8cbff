"""CORS middleware backed by ``AuthGuard`` origin resolution.

Outermost middleware of the gateway: every response gets the CORS headers,
and any ``OPTIONS`` request is answered with ``204`` and those headers only,
before authentication, rate limiting or routing run.
"""

from __future__ import annotations

from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from nutriai_gateway.security.authn import AuthGuard


class GatewayCORSMiddleware(BaseHTTPMiddleware):
    """Apply CORS headers and short-circuit preflight requests."""

    def __init__(self, app: Any, guard: AuthGuard) -> None:
        super().__init__(app)
        self.guard = guard

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        headers = self.guard.cors_headers(request.headers.get("Origin"))

        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
