"""
auth/github.py -- GitHub identity provider client.

Exchanges a raw GitHub access token for a minimal ProviderProfile by calling
GET /user with the token.

Outcome classes (the caller relies on this split):
  401 / 403        -- the token is bad or lacks scope. Expected; returns None.
  other non-2xx    -- GitHub is failing (5xx, rate limit). Raises
                      requests.HTTPError; the app's catch-all handler logs it
                      and reports it to Sentry.
  network failure  -- requests.ConnectionError / requests.Timeout propagate
                      the same way.

Every request carries an explicit (connect, read) timeout so a slow or hung
GitHub cannot tie up the request thread pool.

The access token is sent only in the Authorization header and is never
logged.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from auth.models import ProviderProfile

logger = logging.getLogger("gatehouse.auth.github")

GITHUB_API = "https://api.github.com"


def profile_from_github_user(data: Any) -> ProviderProfile | None:
    """Map a GitHub /user JSON document onto ProviderProfile.

    Shared by GitHubClient (token exchange API) and the browser login callback
    (authlib). Returns None if the document lacks a numeric id or a login.
    """
    if not isinstance(data, dict):
        return None
    provider_id = data.get("id")
    login = data.get("login")
    if isinstance(provider_id, bool) or not isinstance(provider_id, int) or not login:
        return None
    return ProviderProfile(
        provider_id=provider_id,
        login=str(login),
        email=data.get("email") or None,
        name=data.get("name") or None,
        avatar_url=data.get("avatar_url") or None,
    )


class GitHubClient:
    """Minimal GitHub REST client for identity lookups.

    One requests.Session per client for connection pooling. max_redirects is
    lowered from the requests default of 30; api.github.com does not redirect
    /user, so a long chain would be suspicious.
    """

    def __init__(
        self,
        base_url: str = GITHUB_API,
        connect_timeout: float = 3.0,
        read_timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = (connect_timeout, read_timeout)
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    @property
    def timeout(self) -> tuple[float, float]:
        return self._timeout

    def fetch_profile(self, access_token: str) -> ProviderProfile | None:
        """Return the profile for access_token, or None if GitHub refuses it.

        Raises requests.HTTPError for non-auth failures and lets
        requests.RequestException subclasses (timeouts, connection errors)
        propagate.
        """
        resp = self._session.get(
            f"{self._base_url}/user",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
            },
            timeout=self._timeout,
        )
        if resp.status_code in (401, 403):
            logger.info("GitHub rejected access token (HTTP %d)", resp.status_code)
            return None
        resp.raise_for_status()
        profile = profile_from_github_user(resp.json())
        if profile is None:
            logger.warning("GitHub /user response did not contain an id and login")
        return profile

    def close(self) -> None:
        self._session.close()
