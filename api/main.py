"""
api/main.py -- FastAPI application entry point for Gatehouse.

Gatehouse sits in front of the application API and answers two questions for
every request: which trusted application is calling (service credential), and
which human it is acting for (session token).

Run with:      uvicorn asgi:app --reload

Middleware stack, in the order a request meets it:
  log_requests          -- one log line per request
  TrustedHostMiddleware -- rejects requests with unexpected Host headers
  CORSMiddleware        -- adds CORS headers for the front-end origin, also on
                           authentication rejections
  SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  SessionMiddleware     -- authlib OAuth state for the browser login
  authenticate          -- runs the authentication chain (auth/chain.py)

Lifespan handles startup (engine, stores, services, Sentry, purge task) and
shutdown (cancel purge task, close GitHub session, dispose engine)
symmetrically.
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
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.profile import router as profile_router
from auth.allowlist import AllowListGate
from auth.chain import RequestContext, build_chain
from auth.credentials import ServiceCredentialService
from auth.errors import AuthRejectedError
from auth.exchange import OAuthExchangeService
from auth.github import GitHubClient
from auth.hashing import SecretHasher
from auth.oauth import build_oauth
from auth.provisioning import UserProvisioner
from auth.store import AllowListStore, CredentialStore, UserStore, create_store_engine
from auth.tokens import SessionTokenCodec
from core.config import get_settings
from core.observability import init_sentry, report_exception

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete long-revoked service credentials every 6 hours.

    Runs as a background asyncio task started in lifespan startup.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failing sweep is
    logged and retried on the next cycle rather than killing the task.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        try:
            await run_in_threadpool(
                app.state.credential_service.cleanup_revoked,
                settings.revoked_key_retention_days,
            )
        except Exception as exc:
            logger.exception("Revoked credential sweep failed")
            report_exception(exc)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, engine, github: GitHubClient, oauth) -> None:
    """Build stores and services on top of engine and publish them on app.state.

    Shared by the production lifespan and the test lifespan so both run the
    same object graph.
    """
    app.state.engine = engine
    app.state.user_store = UserStore(engine)
    app.state.credential_store = CredentialStore(engine)
    app.state.allow_list_store = AllowListStore(engine)

    hasher = SecretHasher(rounds=settings.bcrypt_rounds)
    codec = SessionTokenCodec(settings.secret_key, ttl_seconds=settings.session_token_ttl_seconds)

    app.state.credential_service = ServiceCredentialService(
        app.state.credential_store,
        hasher,
        allow_system_wide=settings.allow_system_wide_keys,
    )
    app.state.token_codec = codec
    app.state.github = github
    app.state.oauth = oauth
    app.state.exchange_service = OAuthExchangeService(
        github,
        AllowListGate(app.state.allow_list_store),
        UserProvisioner(app.state.user_store),
        codec,
    )
    app.state.auth_chain = build_chain(
        app.state.credential_service,
        codec,
        app.state.user_store,
        session_header=settings.session_header,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("Gatehouse starting up")
    init_sentry(settings)

    engine = create_store_engine(settings.database_url)
    github = GitHubClient(
        settings.github_api_base_url,
        connect_timeout=settings.github_connect_timeout,
        read_timeout=settings.github_read_timeout,
    )
    oauth = build_oauth(
        settings.github_client_id,
        settings.github_client_secret,
        api_base_url=settings.github_api_base_url,
    )
    wire_services(app, engine, github, oauth)
    logger.info("Auth initialized (users=%d)", app.state.user_store.count())

    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    github.close()
    engine.dispose()
    logger.info("Gatehouse shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse",
    description="Service credential and session token authentication with GitHub sign-in.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Authentication chain middleware
#
# Runs both stages for every request. A rejection ends the request here with
# the chain's error body; otherwise the populated RequestContext is left on
# request.state.auth for the route-policy dependencies. The chain does bcrypt
# and database work, so it runs in the threadpool.
# ---------------------------------------------------------------------------


async def authenticate(request: Request, call_next):
    ctx = RequestContext.from_headers(request.headers)
    rejection = await run_in_threadpool(request.app.state.auth_chain.run, ctx)
    if rejection is not None:
        logger.info(
            "Auth rejected %s %s: %s",
            request.method,
            request.url.path,
            rejection.code.value,
        )
        return JSONResponse(status_code=rejection.status_code, content=rejection.to_body())
    request.state.auth = ctx
    return await call_next(request)


# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps the last registered middleware outermost, so registration
# runs innermost-first. A request meets them in the reverse order:
# log_requests -> TrustedHost -> CORS -> SlowAPI -> Session -> authenticate.
# Chain rejections therefore pass back out through CORS and carry its
# headers, and an untrusted Host is refused before any bcrypt work.
# ---------------------------------------------------------------------------

app.add_middleware(BaseHTTPMiddleware, dispatch=authenticate)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for
# the authorization code flow).
app.add_middleware(SessionMiddleware, secret_key=settings.secret_key)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_base_url],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", settings.session_header],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
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
app.include_router(profile_router, prefix="/api/v1", tags=["Profile"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])
# Browser login router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(AuthRejectedError)
async def auth_rejected_handler(request: Request, exc: AuthRejectedError) -> JSONResponse:
    """Render route-policy failures with the same body as chain rejections."""
    return JSONResponse(status_code=exc.rejection.status_code, content=exc.rejection.to_body())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; it is used directly as the error field.
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

    GitHub outages, store failures and bugs end up here. The exception is
    logged and sent to Sentry; the client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    report_exception(exc)
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
# Public endpoints
#
# No rate limit on health -- load balancers and monitors must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/", tags=["Discovery"])
async def root() -> dict:
    """Describe the API and the two authentication headers it expects."""
    return {
        "name": "Gatehouse",
        "version": VERSION,
        "authentication": {
            "service": {
                "header": "Authorization",
                "format": "Bearer <API_KEY>",
                "description": "Identifies the calling application. Required for every protected endpoint.",
            },
            "user": {
                "header": settings.session_header,
                "format": "<session token>",
                "description": "Identifies the signed-in user. Obtain one from POST /api/v1/auth/exchange.",
            },
        },
        "endpoints": {
            "health": "/api/v1/health",
            "exchange": "/api/v1/auth/exchange",
            "profile": "/api/v1/profile",
            "api_keys": "/api/v1/api-keys",
            "github_login": "/login/github",
        },
    }


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unavailable")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
