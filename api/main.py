"""
api/main.py -- FastAPI application entry point for SessionGuard.

Exposes the session/token control plane over HTTP: login, refresh, logout,
session listing and revocation, and the caller's own audit trail.

Run with:      uvicorn asgi:app --reload

Middleware: Starlette wraps each add_middleware() call around the ones
registered before it, so the request meets them in reverse registration
order: request log, slowapi throttle, CORS, then the Host allow-list
closest to the routes. Every rejection is therefore still logged.

Lifespan handles startup (service graph, prune task) and shutdown (cancel
prune task, drain notifications, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.container import build_services, prune_all
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import GENERIC_AUTH_MESSAGE, AuthError, InvalidRequest, RateLimited
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionguard.api")

# ---------------------------------------------------------------------------
# Background prune task
# ---------------------------------------------------------------------------


async def _prune_loop(app: FastAPI) -> None:
    """Run the retention rules every prune_interval_seconds.

    prune_all() is blocking database work, so it runs on a worker thread via
    asyncio.to_thread and the event loop keeps serving requests. A failed
    pass is logged and the loop carries on; the next pass retries it.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    services = app.state.services
    while True:
        await asyncio.sleep(services.settings.prune_interval_seconds)
        try:
            await asyncio.to_thread(prune_all, services)
        except Exception:
            logger.exception("Prune pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph on startup and tear it down on shutdown.

    The prune task references app.state.services, so services must exist
    before it starts.
    """
    logger.info("SessionGuard API starting up")
    services = build_services(get_settings())
    app.state.services = services
    app.state.prune_task = asyncio.create_task(_prune_loop(app))

    yield

    app.state.prune_task.cancel()
    services.close()
    logger.info("SessionGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGuard API",
    description="Session, token and login-security control plane.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Host allow-list and CORS origins both come from Settings (ALLOWED_HOSTS,
# CORS_ORIGINS) so deployments widen them without code changes.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# slowapi finds its Limiter on app.state.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Latency is reported on every response. The Authorization header is
# never logged.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    # Health checks would drown everything else at INFO.
    level = logging.DEBUG if request.url.path.endswith("/health") else logging.INFO
    logger.log(
        level,
        "%s %s -> %d in %.1fms from %s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves through _error() so clients parse one envelope shape,
# {"error": {"code", "message", "detail"}}, whatever the status code.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def request_flood_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """slowapi tripped: too many requests from this address, regardless of outcome."""
    retry_after = int(getattr(exc, "retry_after", 60))
    logger.warning("Request throttle tripped path=%s limit=%s", request.url.path, exc.detail)
    return _error(429, "rate_limited", "Too many requests.", headers={"Retry-After": str(retry_after)})


@app.exception_handler(RateLimited)
async def login_throttle_handler(request: Request, exc: RateLimited) -> JSONResponse:
    """The identifier or IP login gate tripped. The reason is logged, not returned."""
    logger.info("Login throttled reason=%s path=%s", exc.reason, request.url.path)
    return _error(429, "rate_limited", exc.message, headers={"Retry-After": str(exc.retry_after)})


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest) -> JSONResponse:
    return _error(400, exc.code, exc.message)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Every other control-plane rejection is the same 401.

    Unknown user, wrong password, locked account, bot, rotated refresh token
    and inactive session all look alike from outside.
    """
    return _error(401, "unauthorized", GENERIC_AUTH_MESSAGE, headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Request bodies can carry passwords, so only field locations and messages go back.
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return _error(422, "validation_error", "Request validation failed.", detail=problems)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass structured dict details through as the error body; wrap plain strings."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """The traceback goes to the log only, never into the response."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=API_VERSION)
