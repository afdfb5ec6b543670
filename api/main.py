"""
api/main.py -- FastAPI application entry point for Notekeeper.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- authlib's OAuth state between redirect and callback
  5. log_requests          -- method, path, status and latency of every request

Lifespan builds the auth services once and hangs them on app.state:
  store, cookies, sessions, permissions, providers, settings.
Route handlers and auth.dependencies read them from there; nothing imports a
module-level singleton.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.cookies import CookieSigner
from auth.dependencies import require_account_id
from auth.errors import AuthorizationError, AuthRedirect, PrimaryInstanceRequired
from auth.permissions import PermissionEvaluator
from auth.providers import build_provider_registry
from auth.sessions import SessionManager
from auth.store import AccountStore
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("notekeeper.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth services on startup, dispose the engine on shutdown.

    Startup order matters:
      1. Store first, with default organization/roles/permissions seeded --
         signup attaches the "user" role and fails without it.
      2. Cookie signer and session manager, which wrap the store.
      3. Permission evaluator and provider registry, which wrap the sessions.
    """
    logger.info("Notekeeper API starting up")
    settings = get_settings()
    store = AccountStore(settings.database_url)
    store.ensure_defaults()
    cookies = CookieSigner(settings.secret_key, secure=settings.secure_cookies)
    sessions = SessionManager(store, cookies)

    app.state.settings = settings
    app.state.store = store
    app.state.cookies = cookies
    app.state.sessions = sessions
    app.state.permissions = PermissionEvaluator(sessions, settings.organization_id)
    app.state.providers = build_provider_registry(settings)
    logger.info(
        "Auth initialized (providers=%s, primary=%s)",
        [p["name"] for p in app.state.providers.enabled()],
        settings.is_primary,
    )

    yield

    store.close()
    logger.info("Notekeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Notekeeper API",
    description="Accounts, sessions, OAuth connections and permissions for Notekeeper.",
    version=__version__,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST registration is the
# outermost layer. Registered innermost first:
# log_requests <- Session <- SlowAPI <- CORS <- TrustedHost.
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


# authlib keeps the OAuth state value in Starlette's signed session between
# the authorization redirect and the callback (CSRF protection for the
# authorization code flow).
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().secret_key,
    session_cookie="oauth_state",  # "session" is the auth cookie
    max_age=10 * 60,
    https_only=get_settings().secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
# Web router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(account_id: str = Depends(require_account_id)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Notekeeper API")


@app.get("/redoc", include_in_schema=False)
async def redoc(account_id: str = Depends(require_account_id)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="Notekeeper API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON handlers return the same ErrorResponse envelope so API clients can
# parse errors uniformly. AuthorizationError keeps its own body shape because
# it names the missing permission or role.
# ---------------------------------------------------------------------------


def _is_api_request(request: Request) -> bool:
    return request.url.path.startswith("/api/")


@app.exception_handler(AuthRedirect)
async def auth_redirect_handler(request: Request, exc: AuthRedirect) -> Response:
    """Browsers follow the redirect; API clients get 401.

    Either way the Set-Cookie headers on the carried response are kept, so a
    stale session cookie is still cleared for API callers.
    """
    if not _is_api_request(request):
        return exc.response
    response = JSONResponse(
        status_code=401,
        content=ErrorResponse(
            error=ErrorDetail(
                code="unauthenticated",
                message="Authentication required.",
                detail=exc.location or None,
            )
        ).model_dump(),
    )
    for value in exc.response.headers.getlist("set-cookie"):
        response.headers.append("set-cookie", value)
    return response


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    logger.info("Denied %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.body)


@app.exception_handler(PrimaryInstanceRequired)
async def primary_instance_handler(request: Request, exc: PrimaryInstanceRequired) -> JSONResponse:
    """Ask the proxy to replay the request on the primary instance."""
    return JSONResponse(
        status_code=409,
        content=ErrorResponse(
            error=ErrorDetail(
                code="primary_required",
                message="This request must be handled by the primary instance.",
            )
        ).model_dump(),
        headers={"fly-replay": f"instance={exc.primary_instance}"},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
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
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    A dict detail is used directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
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

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
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
# Defined directly in main.py so it is always reachable. No rate limit --
# load balancer health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and the state of the database and providers."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        database = "error"
    providers = [p["name"] for p in request.app.state.providers.enabled()]
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=__version__,
        components={"database": database, "providers": ",".join(providers) or "none"},
    )
