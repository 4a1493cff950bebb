"""
api/main.py -- FastAPI application entry point for Shebamiles.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests               -- method, path, status, latency, client
  2. TrustedHostMiddleware      -- rejects requests with unexpected Host headers
  3. CORSMiddleware             -- adds CORS headers for allowed browser origins
  4. SecurityHeadersMiddleware  -- CSP, framing, sniffing, HSTS over HTTPS
  5. SlowAPIMiddleware          -- general per-client API limit from api.limiter

Per request, after the middleware: CSRF check (unsafe methods on
authenticated endpoints) -> action rate limit -> validator -> business logic
-> envelope. Every failure on that path is an ApiError handled once below.

Lifespan handles startup (logging, engine, stores, purge task) and shutdown
(cancel purge task, dispose engine) symmetrically. If the database cannot be
reached at startup the app still starts; the health check reports 503 and
requests that need the database answer 503 until it returns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import Envelope, HealthComponents, HealthResponse
from api.responses import error_response, from_api_error
from api.routes.v1.auth import router as auth_router
from api.security import SecurityHeadersMiddleware
from auth.dependencies import require_admin
from auth.models import User
from auth.ratelimit import build_rate_limiter
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import get_settings
from core.database import connect_with_retry, create_db_engine, ping
from core.errors import ApiError, DatabaseUnavailableError, RateLimitError, ResponseCode
from core.log import configure_logging

logger = logging.getLogger("shebamiles.api")

settings = get_settings()

PURGE_INTERVAL_SECONDS = 15 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions and stale rate-limit records every 15 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A database error is logged and
    the loop carries on; the next pass retries.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            removed = await run_in_threadpool(app.state.session_store.purge_expired)
            if removed:
                logger.info("Purged %d expired sessions", removed)
        except OperationalError as exc:
            logger.warning("Session purge skipped, database unavailable: %s", exc)
        await run_in_threadpool(app.state.rate_limiter.cleanup)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the engine and stores once; tear them down on shutdown.

    Startup order matters:
      1. Engine + connectivity check -- decides whether tables can be created.
      2. Logging -- the database audit handler needs a reachable engine.
      3. Stores and the rate limiter -- all share the one engine.
      4. Purge task last -- references the stores.
    """
    engine = create_db_engine(settings.resolved_database_url)
    try:
        connect_with_retry(engine, settings.db_connect_retries, settings.db_retry_delay)
        db_ok = True
    except DatabaseUnavailableError:
        db_ok = False

    configure_logging(
        settings.log_level,
        settings.log_dir,
        engine if (db_ok and settings.log_to_database) else None,
    )
    logger.info("Shebamiles API starting up (environment=%s, debug=%s)", settings.environment, settings.debug)
    if not db_ok:
        logger.critical("Database unreachable at startup -- serving degraded until it returns")

    app.state.engine = engine
    app.state.user_store = UserStore(engine, create_tables=db_ok)
    app.state.session_store = SessionStore(
        engine, default_timeout=settings.session_timeout_seconds, create_tables=db_ok
    )
    app.state.rate_limiter = build_rate_limiter(
        settings.rate_limit_backend if db_ok else "file", engine, settings.rate_limit_dir
    )
    logger.info("Auth initialized (rate_limit_backend=%s)", type(app.state.rate_limiter.backend).__name__)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    engine.dispose()
    logger.info("Shebamiles API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Shebamiles API",
    description="Authentication, sessions and account administration for the Shebamiles HR portal.",
    version=settings.app_version,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by admin-only routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the front of the stack, so the LAST call is the
# OUTERMOST layer. Registered innermost first.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-CSRF-Protection", "X-Requested-With"],
    max_age=86400,
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

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


# ---------------------------------------------------------------------------
# Admin-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(require_admin)):
    """Swagger UI -- admins only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Shebamiles API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(require_admin)):
    """ReDoc UI -- admins only."""
    return get_redoc_html(openapi_url="/openapi.json", title="Shebamiles API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the same Envelope so clients parse errors uniformly.
# Clients never see a stack trace; full detail goes to the log.
# ---------------------------------------------------------------------------


def _rate_limit_headers(retry_after: int, limit: int | None) -> dict[str, str]:
    headers = {"Retry-After": str(retry_after), "X-RateLimit-Remaining": "0"}
    if limit is not None:
        headers["X-RateLimit-Limit"] = str(limit)
    return headers


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Translate the typed error hierarchy into envelopes."""
    headers = None
    if isinstance(exc, RateLimitError):
        headers = _rate_limit_headers(exc.retry_after, exc.limit)
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return from_api_error(exc, headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 from the general slowapi limit, in the same envelope as action limits."""
    retry_after, limit = 60, None
    item = getattr(getattr(exc, "limit", None), "limit", None)
    if item is not None:
        retry_after, limit = item.get_expiry(), item.amount
    return error_response(
        ResponseCode.TOO_MANY_REQUESTS,
        "Too many requests. Please try again later.",
        headers=_rate_limit_headers(retry_after, limit),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 with the same {field: {rule: message}} map the validator produces."""
    errors: dict[str, dict[str, str]] = {}
    for err in exc.errors():
        field = str(err["loc"][-1]) if err.get("loc") else "request"
        errors.setdefault(field, {})[err.get("type", "invalid")] = err.get("msg", "Invalid value")
    return error_response(ResponseCode.VALIDATION_ERROR, "Request validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors (404 unknown path, 405 wrong method) as envelopes."""
    code = {
        401: ResponseCode.UNAUTHORIZED,
        403: ResponseCode.FORBIDDEN,
        404: ResponseCode.NOT_FOUND,
        409: ResponseCode.CONFLICT,
        429: ResponseCode.TOO_MANY_REQUESTS,
    }.get(exc.status_code, ResponseCode.SERVER_ERROR if exc.status_code >= 500 else ResponseCode.ERROR)
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return error_response(code, message, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(OperationalError)
async def database_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """The pool lost the database mid-request: 503, not a crash."""
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc.orig)
    return from_api_error(DatabaseUnavailableError())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only. In debug mode the exception class name
    is echoed under errors.details to speed up local debugging.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    errors = {"details": type(exc).__name__} if settings.debug else None
    return error_response(ResponseCode.SERVER_ERROR, "An unexpected error occurred", errors)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from the API rate limit --
# load balancers and monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
@limiter.exempt
async def health(request: Request) -> JSONResponse:
    """Return liveness, version and database reachability. 503 when the database is down."""
    db_ok = await run_in_threadpool(ping, request.app.state.engine)
    body = HealthResponse(
        status="ok" if db_ok else "degraded",
        version=settings.app_version,
        components=HealthComponents(database="ok" if db_ok else "unavailable"),
    )
    envelope = Envelope(
        success=db_ok,
        code=ResponseCode.SUCCESS if db_ok else ResponseCode.SERVER_ERROR,
        message="Service healthy" if db_ok else "Database unavailable",
        data=body.model_dump(),
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=envelope.model_dump(exclude_none=True))
