"""
api/main.py -- FastAPI application entry point for CaptionMe.

Run with:      python -m api
               uvicorn api.main:app --reload

Middleware stack (registration order):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentialed CORS for the frontend origins
  3. SlowAPIMiddleware     -- enforces the login limit from api.limiter
  4. SessionMiddleware     -- authlib keeps the OAuth state here

Lifespan handles startup (stores, Redis, limiter, OAuth registry, AWS clients,
purge task) and shutdown (cancel purge task, close every client)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import resource
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.password import router as password_router
from api.routes.v1.user import router as user_router
from api.routes.v1.video import router as video_router
from api.routes.v1.waitlist import router as waitlist_router
from auth.oauth import build_oauth_registry
from auth.store import UserStore
from core.config import get_settings
from core.errors import AppError, RateLimited
from media.storage import UploadSigner, make_boto_client
from media.transcribe import TranscriptionService
from ratelimit.limiter import SlidingWindowLimiter
from waitlist.store import WaitlistStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("captionme.api")

_STARTED_AT = time.monotonic()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh-token rows every 6 hours.

    Expired rows are already rejected by rotation; this only keeps the table
    from growing without bound. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        removed = await asyncio.to_thread(app.state.user_store.purge_expired_refresh_tokens)
        if removed:
            logger.info("Purged %d expired refresh token(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create every backing client on startup and release it on shutdown.

    Nothing here opens a network connection eagerly: the Redis client and the
    boto3 clients connect on first use, so the API starts even when Redis or
    AWS is unreachable. /health reports their state.
    """
    settings = get_settings()
    logger.info("CaptionMe API starting up")

    app.state.user_store = UserStore(settings.database_url)
    app.state.waitlist_store = WaitlistStore(settings.database_url)
    logger.info("Database initialized")

    app.state.redis = redis.Redis.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
    )
    app.state.rate_limiter = SlidingWindowLimiter(app.state.redis)

    app.state.oauth = build_oauth_registry(settings)

    s3 = make_boto_client("s3", settings)
    app.state.upload_signer = UploadSigner(s3, settings.bucket_name, settings.presign_expire_seconds)
    app.state.transcription = TranscriptionService(
        s3, make_boto_client("transcribe", settings), settings.bucket_name
    )

    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    app.state.rate_limiter.close()
    app.state.waitlist_store.close()
    app.state.user_store.close()
    logger.info("CaptionMe API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="CaptionMe API",
    description="Accounts, video upload URLs and transcription status for CaptionMe.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.trusted_hosts)

# Cookies carry the tokens, so the browser must be allowed to send them
# cross-origin. allow_credentials forbids a "*" origin; list them explicitly.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib stores the OAuth state value in the session between the redirect to
# the provider and the callback.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    same_site="lax",
    https_only=_settings.secure_cookies,
)

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
app.include_router(password_router, prefix="/api/v1", tags=["Password"])
app.include_router(user_router, prefix="/api/v1", tags=["User"])
app.include_router(video_router, prefix="/api/v1", tags=["Video"])
app.include_router(waitlist_router, prefix="/api/v1", tags=["Waitlist"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(
            exclude_none=True
        ),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render any AppError raised by a route, dependency, or service."""
    response = _error_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = str(exc.reset_at_ms)
    if exc.status_code == 401:
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the slowapi login limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", detail=str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when request body or query params fail validation."""
    return _error_response(400, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework-raised HTTP errors (unknown route, wrong method)."""
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


def _check_database(app: FastAPI) -> str:
    try:
        app.state.user_store.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        return "error"
    return "ok"


def _check_redis(app: FastAPI) -> str:
    try:
        app.state.redis.ping()
    except redis.RedisError:
        logger.warning("Health check: redis unreachable", exc_info=True)
        return "error"
    return "ok"


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Report liveness plus the state of each backing store.

    The database is required: when it is down the status is "unhealthy" and
    the response is 503 so the load balancer pulls the instance. Redis only
    backs the upload limiter, which fails open, so a Redis outage is
    "degraded" with 200.
    """
    components = {
        "app": "ok",
        "database": _check_database(request.app),
        "redis": _check_redis(request.app),
    }
    if components["database"] != "ok":
        status, status_code = "unhealthy", 503
    elif components["redis"] != "ok":
        status, status_code = "degraded", 200
    else:
        status, status_code = "healthy", 200

    body = HealthResponse(
        status=status,
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
        # ru_maxrss is kilobytes on Linux.
        memory_rss_kb=resource.getrusage(resource.RUSAGE_SELF).ru_maxrss,
        components=components,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())
