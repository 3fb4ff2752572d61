"""
web/routes.py -- Browser sign-in with GitHub.

These routes serve the human login flow. They do not render pages: the
result is handed to the front-end by redirect, carrying either the session
token or an error code.

Routes:
  GET /login/github            -- redirect to GitHub's authorization page
  GET /login/github/callback   -- OAuth callback; issue a session token

Redirect targets (relative to Settings.frontend_base_url):
  /auth/callback?token=<session token>
  /auth/error?error=not_whitelisted&message=...
  /auth/error?error=oauth_failed&message=...

Security:
  OAuth state (CSRF) is verified by authlib through SessionMiddleware.
  [M3] The error query value is always one of the fixed codes above, never
       input echoed back from the request.
  [M5] Cache-Control: no-store on every redirect -- the success redirect
       carries a session token in its Location.

These routes need no service credential: a browser cannot hold one. The
allow-list still decides who gets a token.
"""

import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth.errors import ErrorCode
from auth.exchange import ExchangeFailure, OAuthExchangeService
from auth.oauth import GITHUB_PROVIDER, fetch_github_profile
from core.config import get_settings

logger = logging.getLogger("gatehouse.web")

router = APIRouter()

# Fixed messages per error code [M3].
_ERROR_MESSAGES: dict[str, str] = {
    "not_whitelisted": "Your GitHub account is not whitelisted for access.",
    "oauth_failed": "GitHub sign-in failed. Please try again.",
}


# ---------------------------------------------------------------------------
# Redirect helpers
# ---------------------------------------------------------------------------


def _frontend_url(path: str, params: dict[str, str]) -> str:
    base = get_settings().frontend_base_url.rstrip("/")
    return f"{base}{path}?{urlencode(params)}"


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _error_redirect(error: str) -> RedirectResponse:
    return _redirect(_frontend_url("/auth/error", {"error": error, "message": _ERROR_MESSAGES[error]}))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/login/github")
async def github_login(request: Request) -> RedirectResponse:
    """Redirect the browser to GitHub's authorization page."""
    client = request.app.state.oauth.create_client(GITHUB_PROVIDER)
    if client is None:
        logger.warning("GitHub login requested but OAuth is not configured")
        return _error_redirect("oauth_failed")
    redirect_uri = str(request.url_for("github_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/login/github/callback", name="github_callback")
async def github_callback(request: Request) -> RedirectResponse:
    """Handle the GitHub callback and hand a session token to the front-end.

    Flow:
      1. Exchange the authorization code (authlib verifies state).
      2. Fetch the GitHub profile with the resulting access token.
      3. Allow-list check, find-or-create user, issue token (OAuthExchangeService).
      4. Redirect to the front-end with the token or an error code.
    """
    client = request.app.state.oauth.create_client(GITHUB_PROVIDER)
    if client is None:
        return _error_redirect("oauth_failed")

    # Step 1: Exchange code for token
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("GitHub OAuth code exchange failed")
        return _error_redirect("oauth_failed")

    # Step 2: Resolve the GitHub identity
    try:
        profile = await fetch_github_profile(client, token)
    except httpx.HTTPError:
        logger.exception("GitHub profile lookup failed during browser login")
        return _error_redirect("oauth_failed")
    if profile is None:
        logger.warning("GitHub returned an unusable profile during browser login")
        return _error_redirect("oauth_failed")

    # Step 3: Same gate, provisioning and token issuance as the API exchange
    service: OAuthExchangeService = request.app.state.exchange_service
    result = await run_in_threadpool(service.complete_login, profile)
    if isinstance(result, ExchangeFailure):
        if result.code is ErrorCode.ACCESS_DENIED:
            return _error_redirect("not_whitelisted")
        return _error_redirect("oauth_failed")

    # Step 4: Hand the token to the front-end
    return _redirect(_frontend_url("/auth/callback", {"token": result.token}))
