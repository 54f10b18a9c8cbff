"""FastAPI application entrypoint.

``create_app()`` wires the gateway: settings, the circuit-breaker registry,
the rate limiter, the auth guard and the upstream dispatcher are built once
and stored on ``app.state``.

Request pipeline for ``POST /api/ai/chat``:

    CORS (preflight → 204) → routing (405/404) → auth (401)
    → upstream credential (503) → rate limit (429) → body (400)
    → payload validation (400) → upstream via breaker + retry
    → relay with ``Cache-Control: no-store``

``POST /api/ai/transcribe`` follows the same pipeline with an audio body.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nutriai_gateway.core.config import Settings, get_ssl_config
from nutriai_gateway.core.errors import (
    AppError,
    ErrorResponse,
    RateLimitExceededError,
    ServiceUnavailableError,
    UnauthorizedError,
    UpstreamParseError,
    retry_after_seconds,
)
from nutriai_gateway.models.schemas import (
    ChatCompletionRequest,
    HealthResponse,
    MisconfiguredResponse,
    TranscriptionRequest,
    TranscriptionResponse,
)
from nutriai_gateway.resilience.circuit_breaker import CircuitBreakerRegistry
from nutriai_gateway.security.audit import (
    AuditMiddleware,
    SecuritySeverity,
    log_security_event,
    log_terminal_error,
)
from nutriai_gateway.security.authn import AuthGuard
from nutriai_gateway.security.cors import GatewayCORSMiddleware
from nutriai_gateway.security.input_validators import read_json_body
from nutriai_gateway.security.rate_limiter import RateLimiter, client_ip
from nutriai_gateway.upstream import UpstreamDispatcher, UpstreamResult

logger = logging.getLogger(__name__)

_NO_STORE = {"Cache-Control": "no-store"}
_MISSING_UPSTREAM_KEY = "OpenAI API key is not configured on the server."


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ── Dependencies ────────────────────────────────────────────────────────


async def require_auth(request: Request) -> None:
    """Reject callers without a valid gateway token."""
    guard: AuthGuard = request.app.state.auth_guard
    if not guard.is_authorized(request.headers):
        log_security_event(
            "auth_failure",
            SecuritySeverity.MEDIUM,
            f"{request.method} {request.url.path} from {client_ip(request)}",
            request_id=getattr(request.state, "request_id", ""),
        )
        raise UnauthorizedError()


async def require_upstream_credential(request: Request) -> None:
    """Fail with 503 when the gateway has no upstream API key."""
    settings: Settings = request.app.state.settings
    if not settings.UPSTREAM_API_KEY:
        raise ServiceUnavailableError(_MISSING_UPSTREAM_KEY, context={"setting": "UPSTREAM_API_KEY"})


async def enforce_rate_limit(request: Request) -> None:
    """Count the request against the caller's window; 429 when exhausted."""
    limiter: RateLimiter = request.app.state.rate_limiter
    key = client_ip(request)
    decision = limiter.check(key)
    request.state.rate_limit = decision
    if not decision.allowed:
        log_security_event(
            "rate_limited",
            SecuritySeverity.LOW,
            f"client={key} limit={decision.limit}",
            request_id=getattr(request.state, "request_id", ""),
        )
        raise RateLimitExceededError(
            retry_after=decision.retry_after(limiter.now()),
            context={"client": key},
        )


_GUARDED = [
    Depends(require_auth),
    Depends(require_upstream_credential),
    Depends(enforce_rate_limit),
]


def _extra_headers(request: Request) -> dict[str, str]:
    headers = dict(_NO_STORE)
    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        headers.update(decision.headers())
    return headers


def _relay(request: Request, result: UpstreamResult) -> Response:
    """Relay the upstream status, content type and body verbatim."""
    headers = _extra_headers(request)
    if result.status_code == 429 and "retry-after" in result.headers:
        headers["Retry-After"] = result.headers["retry-after"]
    headers["Content-Type"] = result.content_type
    return Response(content=result.content, status_code=result.status_code, headers=headers)


# ── Routes ──────────────────────────────────────────────────────────────

router = APIRouter()


@router.get("/api/health", dependencies=[Depends(require_auth)])
async def health(request: Request) -> JSONResponse:
    """Return ``ok`` with circuit snapshots, or 503 when misconfigured."""
    settings: Settings = request.app.state.settings
    if not settings.UPSTREAM_API_KEY:
        body = MisconfiguredResponse(message=_MISSING_UPSTREAM_KEY, timestamp=_now_iso())
        return JSONResponse(status_code=503, content=body.model_dump(), headers=_NO_STORE)

    registry: CircuitBreakerRegistry = request.app.state.circuit_breakers
    body = HealthResponse(
        status="ok",
        timestamp=_now_iso(),
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        circuits=registry.all_snapshots(),
    )
    return JSONResponse(content=body.model_dump(), headers=_NO_STORE)


@router.post("/api/ai/chat", dependencies=_GUARDED)
async def chat(request: Request) -> Response:
    settings: Settings = request.app.state.settings
    body = await read_json_body(request, settings.MAX_BODY_BYTES)
    payload = ChatCompletionRequest.from_body(
        body,
        default_model=settings.MODEL,
        default_temperature=settings.DEFAULT_TEMPERATURE,
        default_max_tokens=settings.DEFAULT_MAX_TOKENS,
    )

    dispatcher: UpstreamDispatcher = request.app.state.dispatcher
    result = await dispatcher.send("chat", json=payload.to_upstream())
    return _relay(request, result)


@router.post("/api/ai/transcribe", dependencies=_GUARDED)
async def transcribe(request: Request) -> Response:
    """Forward a base64 data-URL recording to the transcription API."""
    settings: Settings = request.app.state.settings
    body = await read_json_body(request, settings.MAX_AUDIO_BODY_BYTES)
    upload = TranscriptionRequest.from_body(body)

    dispatcher: UpstreamDispatcher = request.app.state.dispatcher
    result = await dispatcher.send(
        "transcribe",
        data={"model": settings.TRANSCRIBE_MODEL, "language": settings.TRANSCRIBE_LANGUAGE},
        files={"file": (upload.filename, upload.audio, upload.mime_type)},
    )
    if not result.ok:
        return _relay(request, result)

    parsed = result.json()
    text = parsed.get("text") if isinstance(parsed, dict) else None
    if not isinstance(text, str):
        raise UpstreamParseError(context={"route": "transcribe", "status": result.status_code})
    return JSONResponse(content=TranscriptionResponse(text=text).model_dump(), headers=_extra_headers(request))


@router.post("/api/admin/circuits/reset", dependencies=[Depends(require_auth)])
async def reset_circuits(request: Request) -> JSONResponse:
    """Operator recovery: force every circuit breaker to CLOSED."""
    registry: CircuitBreakerRegistry = request.app.state.circuit_breakers
    await registry.reset_all()
    logger.warning("All circuit breakers reset by operator (%d)", len(registry.names))
    return JSONResponse(
        content={"status": "reset", "circuits": registry.all_snapshots()},
        headers=_NO_STORE,
    )


# ── Exception handlers ──────────────────────────────────────────────────


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an ``AppError`` as the JSON error envelope."""
    request.state.error_kind = exc.kind.value
    log_terminal_error(exc, request_id=getattr(request.state, "request_id", ""), path=request.url.path)

    headers = _extra_headers(request)
    if exc.retry_after is not None:
        headers["Retry-After"] = str(retry_after_seconds(exc.retry_after))
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.from_exception(exc).model_dump(exclude_none=True),
        headers=headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """404/405 and other routing errors in the same envelope."""
    message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
    headers = dict(exc.headers or {})
    headers.update(_NO_STORE)
    return JSONResponse(status_code=exc.status_code, content={"error": {"message": message}}, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse.from_exception(exc).model_dump(exclude_none=True),
        headers=_NO_STORE,
    )


# ── Middleware ──────────────────────────────────────────────────────────


async def request_id_middleware(request: Request, call_next) -> Response:
    """Assign or preserve a unique request ID on every request.

    Unexpected exceptions are rendered here so the 500 still passes through
    the CORS middleware and carries the request ID.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception as exc:
        response = await unhandled_error_handler(request, exc)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Application factory ─────────────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    registry: CircuitBreakerRegistry | None = None,
    rate_limiter: RateLimiter | None = None,
    http_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FastAPI:
    """Build the gateway app; collaborators may be injected for tests."""
    settings = settings or Settings()
    registry = registry or CircuitBreakerRegistry(
        failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
        max_recovery_timeout=settings.CIRCUIT_BREAKER_MAX_RECOVERY_SECONDS,
    )
    rate_limiter = rate_limiter or RateLimiter(
        window_ms=settings.RATE_LIMIT_WINDOW_MS,
        max_requests=settings.RATE_LIMIT_MAX,
    )
    guard = AuthGuard(
        required=settings.AUTH_REQUIRED,
        token=settings.AUTH_TOKEN,
        allowed_origins=settings.allowed_origins,
    )
    dispatcher = UpstreamDispatcher(settings, registry, client=http_client, sleep=sleep)

    if guard.misconfigured:
        logger.error("AI_PROXY_AUTH_TOKEN must be set when authentication is required; all requests will be rejected")
    if not settings.UPSTREAM_API_KEY:
        logger.warning("Upstream API key is not configured; AI endpoints will answer 503")

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await dispatcher.close()

    app = FastAPI(title=settings.SERVICE_NAME, version=settings.SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.circuit_breakers = registry
    app.state.rate_limiter = rate_limiter
    app.state.auth_guard = guard
    app.state.dispatcher = dispatcher

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)

    # Starlette add_middleware prepends, so LAST added = OUTERMOST.
    # Order: CORS → RequestID → Audit → [routes]
    app.add_middleware(AuditMiddleware, log_path=settings.AUDIT_LOG_PATH)
    app.middleware("http")(request_id_middleware)
    app.add_middleware(GatewayCORSMiddleware, guard=guard)
    return app


app = create_app()


def run() -> None:
    """Start the gateway under uvicorn (TLS when configured)."""
    settings = Settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    ssl_kwargs = get_ssl_config(settings) or {}
    uvicorn.run(
        "nutriai_gateway.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        **ssl_kwargs,
    )


if __name__ == "__main__":
    run()
