"""
api/main.py -- FastAPI application entry point for the foundation admin auth core.

Exposes login, OTP, onboarding and user administration over HTTP for the
admin SPA. Content, campaign and donation services call in for identity only.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests            -- method, path, status, latency, client
  2. security_headers        -- HSTS, CSP, frame/sniff/referrer/permissions policy
  3. session                 -- resolves request.state.principal from the token
  4. CORSMiddleware          -- adds CORS headers for allowed browser origins
  5. TrustedHostMiddleware   -- rejects requests with unexpected Host headers

Rate limiting and CSRF are router-level dependencies (see Router
registration), so the health endpoint is never throttled.

Lifespan builds the store, signer, mailer, limiter and AuthService on startup
and closes the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import build_limiter, enforce_rate_limit
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.csrf import CSRF_HEADER, csrf_protect
from auth.dependencies import require_admin, resolve_principal
from auth.errors import AuthError, RateLimited
from auth.mailer import build_mailer
from auth.models import Principal
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenSigner
from core.config import get_settings

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("foundation.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build application-level services and tear them down symmetrically.

    Startup order matters:
      1. Store first -- creates tables; everything else reads from it.
      2. Signer, mailer, limiter -- independent of each other.
      3. AuthService -- composes all of the above.
      4. Default admin bootstrap -- only when DEFAULT_ADMIN_PASSWORD is set.
      5. Default security questions -- only into an empty table.
    """
    settings = get_settings()
    logger.info("Foundation admin API starting up")

    store = UserStore(settings.database_url)
    app.state.user_store = store
    app.state.token_signer = TokenSigner(settings.secret_key, settings.token_expire_minutes)
    app.state.mailer = build_mailer(settings)
    app.state.rate_limiter = build_limiter(settings)
    app.state.auth_service = AuthService(store, app.state.token_signer, app.state.mailer, settings)
    logger.info(
        "Auth initialized (otp_enabled=%s, cookie_enabled=%s, rate_limit_enabled=%s)",
        settings.otp_enabled,
        settings.cookie_enabled,
        settings.rate_limit_enabled,
    )

    if settings.default_admin_password:
        admin = app.state.auth_service.ensure_default_admin(
            settings.default_admin_username,
            settings.default_admin_email,
            settings.default_admin_password,
        )
        logger.info("Default admin present: %s", admin.username)

    if settings.seed_security_questions:
        app.state.auth_service.ensure_default_security_questions()

    if not settings.smtp_host:
        logger.warning("SMTP_HOST is not set: user creation and OTP login will fail until email is configured")

    yield

    store.close()
    logger.info("Foundation admin API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Foundation Admin API",
    description="Authentication, sessions and user administration for the foundation admin panel.",
    version=APP_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by admin-only equivalents.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both wrap the existing stack, so the
# LAST registration is the OUTERMOST layer. TrustedHost and CORS are
# registered first and sit innermost; log_requests is registered last and
# sees every response, including ones produced by the layers inside it.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", CSRF_HEADER],
    max_age=3600,
)


# ---------------------------------------------------------------------------
# Session middleware
#
# Resolves the caller once per request and stores it on
# request.state.principal (None = anonymous). The lookup hits the store, so
# it runs in the threadpool. Authorization happens later, in dependencies.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session(request: Request, call_next):
    request.state.principal = await run_in_threadpool(resolve_principal, request)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Security headers middleware
# ---------------------------------------------------------------------------

_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "font-src 'self' data:; "
    "connect-src 'self'; "
    "frame-ancestors 'none'; "
    "base-uri 'self'; "
    "form-action 'self'"
)

_PERMISSIONS_POLICY = (
    "geolocation=(), microphone=(), camera=(), payment=(), usb=(), magnetometer=(), gyroscope=(), accelerometer=()"
)

# Swagger UI and ReDoc load their assets from a CDN.
_DOCS_PATHS = ("/docs", "/redoc")


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if request.url.path not in _DOCS_PATHS:
        response.headers["Content-Security-Policy"] = _CSP
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = _PERMISSIONS_POLICY
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. We capture wall-clock time before and after
# call_next so we can report latency on every response. Paths are logged,
# query strings and bodies are not: setup tokens travel in the path only for
# /validate-token and /setup-password, which are logged with the token cut.
# ---------------------------------------------------------------------------


def _loggable_path(path: str) -> str:
    for prefix in ("/api/auth/validate-token/", "/api/auth/setup-password/"):
        if path.startswith(prefix):
            return prefix + "***"
    return path


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        _loggable_path(request.url.path),
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
#
# enforce_rate_limit runs before csrf_protect so a flood of forged requests
# is throttled too.
# ---------------------------------------------------------------------------

_guards = [Depends(enforce_rate_limit), Depends(csrf_protect)]

app.include_router(auth_router, prefix="/api/auth", tags=["Auth"], dependencies=_guards)
app.include_router(users_router, prefix="/api/admin/users", tags=["Users"], dependencies=_guards)


# ---------------------------------------------------------------------------
# Admin-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
def docs(principal: Principal = Depends(require_admin)):
    """Swagger UI -- requires an ADMIN session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Foundation Admin API")


@app.get("/redoc", include_in_schema=False)
def redoc(principal: Principal = Depends(require_admin)):
    """ReDoc UI -- requires an ADMIN session."""
    return get_redoc_html(openapi_url="/openapi.json", title="Foundation Admin API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto HTTP.

    RateLimited adds Retry-After so clients know how long to back off.
    Authentication failures are never cached.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or path params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str([{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions (404, 405, ...)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the server log only, never to the response
    body. The client receives a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, _loggable_path(request.url.path))
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# and never rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and store reachability."""
    try:
        request.app.state.user_store.ping()
        database = "ok"
    except Exception:
        logger.exception("Health check: store unreachable")
        database = "unavailable"
    return HealthResponse(version=APP_VERSION, database=database)
