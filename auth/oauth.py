"""
auth/oauth.py -- Authlib OAuth registry for the GitHub browser login.

The browser flow (web/routes.py) uses authlib's Starlette client for the
authorization-code dance. The programmatic exchange (POST /api/v1/auth/exchange)
does not go through authlib; it calls GitHubClient directly with a token the
caller already holds.

Security notes:
  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback -- never trust state from query params
  alone.

  [H1] GitHub returns email=null on /user when the address is private. Only an
       entry from /user/emails that is both primary AND verified is used to fill
       the gap. An unverified address could belong to someone else.

Layer rule: no imports from api/, web/, or core/. Client id and secret are
passed in by the app lifespan.
"""

from __future__ import annotations

import dataclasses
import logging

from authlib.integrations.starlette_client import OAuth

from auth.github import GITHUB_API, profile_from_github_user
from auth.models import ProviderProfile

logger = logging.getLogger("gatehouse.auth.oauth")

GITHUB_PROVIDER = "github"


def build_oauth(client_id: str, client_secret: str, api_base_url: str = GITHUB_API) -> OAuth:
    """Return an OAuth registry with GitHub registered when credentials are set.

    With no client id/secret the registry is empty and the browser login
    routes redirect straight to the front-end error page.
    """
    oauth = OAuth()
    if client_id and client_secret:
        oauth.register(
            name=GITHUB_PROVIDER,
            client_id=client_id,
            client_secret=client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url=api_base_url.rstrip("/") + "/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")
    else:
        logger.info("GitHub OAuth not configured -- browser login disabled")
    return oauth


async def fetch_github_profile(client, token: dict) -> ProviderProfile | None:
    """Resolve the ProviderProfile for an authlib GitHub token.

    Returns None if /user does not yield a usable identity. HTTP errors from
    GitHub propagate to the caller.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = profile_from_github_user(resp.json())
    if profile is None or profile.email:
        return profile

    # [H1] Private address: look for the primary verified one.
    emails_resp = await client.get("user/emails", token=token)
    if emails_resp.status_code != 200:
        return profile
    for entry in emails_resp.json():
        if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
            return dataclasses.replace(profile, email=entry.get("email"))
    return profile
