"""
api/main.py -- FastAPI application entry point for PocketLedger.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every collaborator once and hangs it on app.state:
  user_store, otp_store, activity_store  -- SQLAlchemy Core repositories
  audit                                  -- AuditRecorder (detached writes)
  cache_handle, cache                    -- Redis handle + CacheStore (may be disabled)
  otp_service                            -- OTPService with the configured notifier
Shutdown reverses it: stop the purge task, drain audit writes, close the
cache handle, dispose engines.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import Envelope, ErrorEnvelope, HealthData, success
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.profile import router as profile_router
from audit.recorder import AuditRecorder
from audit.store import ActivityLogStore
from auth.store import UserStore
from cache.store import CacheStore, init_cache, shutdown_cache
from core.config import get_settings
from core.errors import InternalFailure, PocketLedgerError
from otp.delivery import build_notifier
from otp.service import OTPService
from otp.store import OTPStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pocketledger.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired OTP records every hour.

    Verification already ignores expired records; this only keeps the table
    small. CancelledError from task.cancel() during shutdown unwinds it.
    """
    while True:
        await asyncio.sleep(60 * 60)
        try:
            removed = await asyncio.to_thread(app.state.otp_store.purge_expired, datetime.now(timezone.utc))
        except SQLAlchemyError:
            logger.exception("OTP purge failed")
            continue
        if removed:
            logger.info("Purged %d expired OTP record(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, in reverse dependency order.
    """
    logger.info("PocketLedger API starting up")
    app.state.user_store = UserStore(_settings.database_url)
    app.state.otp_store = OTPStore(_settings.database_url)
    app.state.activity_store = ActivityLogStore(_settings.database_url)
    app.state.audit = AuditRecorder(app.state.activity_store)
    logger.info("Stores initialized")

    app.state.cache_handle = init_cache(_settings)
    app.state.cache = CacheStore(app.state.cache_handle, default_ttl=_settings.cache_default_ttl)
    logger.info("Cache %s", "enabled" if app.state.cache.enabled else "disabled")

    app.state.otp_service = OTPService(
        app.state.otp_store,
        app.state.user_store,
        build_notifier(_settings),
        expire_seconds=_settings.otp_expire_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    await app.state.audit.drain()
    shutdown_cache(app.state.cache_handle)
    app.state.activity_store.close()
    app.state.otp_store.close()
    app.state.user_store.close()
    logger.info("PocketLedger API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PocketLedger API",
    description="Personal-finance backend: accounts, one-time codes, activity audit.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
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
app.include_router(profile_router, prefix="/api/v1", tags=["Profile"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same error envelope so API clients can parse
# failures uniformly. Internal detail goes to the log, never the body.
# ---------------------------------------------------------------------------


@app.exception_handler(PocketLedgerError)
async def pocketledger_error_handler(request: Request, exc: PocketLedgerError) -> JSONResponse:
    if isinstance(exc, InternalFailure):
        logger.error("Internal failure on %s %s", request.method, request.url.path, exc_info=exc.__cause__)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorEnvelope(code="rate_limited", message="Too many requests.").model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 naming the first offending field."""
    errors = exc.errors()
    field = None
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or None
    return JSONResponse(
        status_code=422,
        content=ErrorEnvelope(
            code="validation_error",
            message="Request validation failed.",
            field=field,
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorEnvelope(code=f"http_{exc.status_code}", message=str(exc.detail)).model_dump(exclude_none=True),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=InternalFailure().to_response())


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit and no auth. Plain def so the database
# and Redis checks run in the threadpool.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=Envelope, tags=["Health"])
def health(request: Request) -> Envelope:
    """Return liveness, version and per-component status."""
    cache: CacheStore = request.app.state.cache
    if not cache.enabled:
        cache_status = "disabled"
    else:
        cache_status = "ok" if cache.ping() else "error"
    return success(
        HealthData(
            version=VERSION,
            components={
                "app": "ok",
                "database": "ok" if request.app.state.user_store.ping() else "error",
                "cache": cache_status,
            },
        )
    )
