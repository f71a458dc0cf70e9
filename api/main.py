"""
api/main.py -- FastAPI application entry point for ChatAuth.

Exposes the authentication gateway over HTTP. The WebSocket transport is
mounted by asgi.py; both share the gateway instance stored on app.state.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests      -- one log line per request with latency
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, store, gateway, purge task) and
shutdown (cancel and await the purge task, then close the DB) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, StoreUnavailable, WeakPassword
from auth.gateway import AuthenticationGateway
from auth.store import AuthStore
from core.config import Settings, get_settings

__version__ = "0.1.0"

# Seconds a client should wait before retrying after store_unavailable.
_RETRY_AFTER_SECONDS = 5

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("chatauth.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Purge terminal refresh sessions every PURGE_INTERVAL_SECONDS.

    Runs as a background asyncio task started in lifespan startup. The sweep
    itself is blocking SQL, so it runs in a worker thread to keep the event
    loop free. A failed sweep is logged and the next one runs on schedule;
    only cancellation at shutdown ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.gateway.purge_sessions)
        except StoreUnavailable:
            logger.warning("Session purge skipped: store unavailable")
        except Exception:
            logger.exception("Session purge failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth components on startup, tear them down on shutdown.

    Order:
      1. Settings first -- validated once here and passed to every component.
      2. Store second -- the gateway holds a reference to it.
      3. Purge task last -- calls through the gateway.
    """
    # Startup
    logger.info("ChatAuth API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.store = AuthStore(settings.database_url, timeout=settings.store_timeout_seconds)
    app.state.gateway = AuthenticationGateway(settings, sessions=app.state.store, accounts=app.state.store)
    logger.info(
        "Auth initialized (access_ttl=%ds, refresh_ttl=%ds, bcrypt_rounds=%d)",
        settings.access_token_ttl_seconds,
        settings.refresh_token_ttl_seconds,
        settings.bcrypt_rounds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.purge_task
    app.state.store.close()
    logger.info("ChatAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ChatAuth API",
    description="Credential verification and session lifecycle for the chat service.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time is captured around call_next to report latency.
# Never logs headers or bodies -- they carry tokens and passwords.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# WebSocket router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _debug(request: Request) -> bool:
    settings: Settings | None = getattr(request.app.state, "settings", None)
    return bool(settings and settings.debug)


def error_response(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError with its fixed status and code.

    The message is the class's generic message. detail names the internal
    cause only in DEBUG mode. store_unavailable carries Retry-After.
    """
    detail = None
    if _debug(request) and exc.__cause__ is not None:
        detail = type(exc.__cause__).__name__
    response = error_response(
        exc.status_code,
        ErrorDetail(
            code=exc.code.value,
            message=exc.message,
            detail=detail,
            violations=exc.violations if isinstance(exc, WeakPassword) else None,
        ),
    )
    if exc.retryable:
        response.headers["Retry-After"] = str(_RETRY_AFTER_SECONDS)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 rate_limited, with Retry-After in seconds."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = error_response(
        429,
        ErrorDetail(
            code="rate_limited",
            message="Too many requests.",
            detail=str(exc.detail) if _debug(request) else None,
        ),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations are echoed back, never the submitted values, which
    may contain a password.
    """
    detail = None
    if _debug(request):
        detail = "; ".join(".".join(str(part) for part in err["loc"]) + ": " + err["msg"] for err in exc.errors())
    return error_response(
        422,
        ErrorDetail(code="validation_error", message="Request validation failed.", detail=detail),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404, 405, ...)."""
    return error_response(
        exc.status_code,
        ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 internal_error. Traceback goes to the log; DEBUG echoes only the type name."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(
        500,
        ErrorDetail(
            code="internal_error",
            message="An unexpected error occurred.",
            detail=type(exc).__name__ if _debug(request) else None,
        ),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Unauthenticated and never rate limited. A failed store ping reports
# "degraded" with 200 so health checks can tell app-down from DB-down.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the session store answers."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
