"""
api/main.py -- FastAPI application entry point for Elixpo Accounts.

Run with:  python main.py serve
           uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces coarse per-route limits from api.limiter
  4. log_requests          -- one access-log line per request
  5. log_api_key_usage     -- usage row for every API-key-authenticated call

Lifespan creates the credential store and stores it, with the settings, on
app.state; every request builds its services from there. A background task
purges expired rate-limit entries, authorization requests and refresh-token
records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.machine import router as machine_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.sso import router as sso_router
from auth.api_keys import ApiKeyAuthority
from auth.errors import AuthError
from auth.rate_limit import purge_expired
from auth.store import CredentialStore
from core.config import get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("elixpo.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired_records(store: CredentialStore) -> dict[str, int]:
    """Delete rows that can no longer affect any decision. Returns counts per table."""
    now = datetime.now(timezone.utc)
    return {
        "rate_limits": purge_expired(store, now),
        "auth_requests": store.delete_expired_auth_requests(now),
        "refresh_tokens": store.delete_expired_refresh_tokens(now),
    }


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired records every settings.purge_interval_seconds.

    A database error skips one sweep; the next one retries. CancelledError
    from task.cancel() during shutdown propagates out of asyncio.sleep and
    unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(app.state.settings.purge_interval_seconds)
        try:
            counts = await asyncio.to_thread(purge_expired_records, app.state.store)
        except SQLAlchemyError:
            logger.exception("purge of expired records failed; retrying next cycle")
            continue
        logger.info("purged expired records: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the store on startup, dispose it on shutdown.

    The store seeds system roles and the permission catalogue on creation,
    so the RBAC engine is usable before the first request arrives.
    """
    logger.info("Elixpo Accounts API starting up (signing=%s)", _settings.jwt_algorithm)
    app.state.settings = _settings
    app.state.store = CredentialStore(_settings.database_url)
    # None selects the authlib client; tests substitute a fake provider.
    app.state.oauth_client_factory = None
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Elixpo Accounts API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Elixpo Accounts API",
    description="Identity provider: password and OAuth sign-in, token issuance, SSO verification, RBAC and API keys.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Client-Id"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Window", "X-RateLimit-Remaining", "Retry-After"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_api_key_usage(request: Request, call_next):
    """Record one usage row per API-key-authenticated request.

    require_api_key() leaves the validated key on request.state.api_key; the
    row is written after the response exists so the status code is known,
    on a worker thread so the insert never blocks the event loop.
    Usage logging is best-effort and never changes the response.
    """
    start = time.perf_counter()
    response = await call_next(request)
    key = getattr(request.state, "api_key", None)
    if key is not None:
        authority = ApiKeyAuthority(request.app.state.store, request.app.state.settings)
        await asyncio.to_thread(
            authority.log_usage,
            key,
            endpoint=request.url.path,
            method=request.method,
            status_code=response.status_code,
            response_time_ms=int((time.perf_counter() - start) * 1000),
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("User-Agent"),
        )
    return response


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
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])
app.include_router(sso_router, prefix="/api/v1", tags=["SSO"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(machine_router, prefix="/api/v1", tags=["Machine"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a domain error with its OAuth-style code and HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, **exc.extra())).model_dump(
            exclude_none=True
        ),
        headers=exc.headers,
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
                retry_after=retry_after,
            )
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for HTTPExceptions raised by dependencies and routes.

    When detail is already a structured dict, use it directly as the error
    field. Headers on the exception (WWW-Authenticate, Retry-After,
    X-RateLimit-*) are forwarded.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(exclude_none=True),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="server_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
