"""
auth/exchange.py -- Exchange a GitHub identity for a Gatehouse session token.

Protocol (shared by both entry points):
  1. Resolve a ProviderProfile (from a raw token via GitHubClient, or handed
     over by the browser login callback).
  2. No profile                      -> ExchangeFailure(INVALID_PROVIDER_TOKEN)
  3. Not on the allow-list           -> ExchangeFailure(ACCESS_DENIED)
     Checked BEFORE any user write, so a refused identity leaves no trace
     in the users table.
  4. UserProvisioner.find_or_create(profile). An email already linked to
     another GitHub id, or a soft-deleted account, -> ExchangeFailure with
     ACCESS_DENIED; no token is issued.
  5. Issue a session token           -> ExchangeSuccess(token, user)

Entry points:
  exchange_token(raw_token)    -- POST /api/v1/auth/exchange
  complete_login(profile)      -- GET /login/github/callback (browser flow)

Expected failures are returned as ExchangeFailure values. GitHub outages,
timeouts and store errors raise and are handled by the app's 500 path.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from auth.allowlist import AllowListGate
from auth.errors import ErrorCode
from auth.github import GitHubClient
from auth.models import ProviderProfile, User
from auth.provisioning import DeletedUserError, IdentityConflictError, UserProvisioner
from auth.tokens import SessionTokenCodec

logger = logging.getLogger("gatehouse.auth.exchange")


@dataclass(frozen=True)
class ExchangeSuccess:
    token: str
    user: User


@dataclass(frozen=True)
class ExchangeFailure:
    code: ErrorCode  # INVALID_PROVIDER_TOKEN or ACCESS_DENIED
    message: str
    detail: str

    @property
    def status_code(self) -> int:
        return self.code.status_code


ExchangeResult = Union[ExchangeSuccess, ExchangeFailure]

INVALID_PROVIDER_TOKEN = ExchangeFailure(
    ErrorCode.INVALID_PROVIDER_TOKEN,
    "Invalid GitHub token",
    "Could not verify GitHub token or fetch user data",
)
ACCESS_DENIED = ExchangeFailure(
    ErrorCode.ACCESS_DENIED,
    "Access denied",
    "Your GitHub account is not whitelisted for access",
)
IDENTITY_CONFLICT = ExchangeFailure(
    ErrorCode.ACCESS_DENIED,
    "Access denied",
    "This email address is already linked to a different GitHub account",
)
ACCOUNT_DELETED = ExchangeFailure(
    ErrorCode.ACCESS_DENIED,
    "Access denied",
    "This account has been deactivated",
)


class OAuthExchangeService:
    def __init__(
        self,
        github: GitHubClient,
        gate: AllowListGate,
        provisioner: UserProvisioner,
        codec: SessionTokenCodec,
    ) -> None:
        self._github = github
        self._gate = gate
        self._provisioner = provisioner
        self._codec = codec

    def exchange_token(self, provider_token: str) -> ExchangeResult:
        """Programmatic exchange: raw GitHub access token in, session token out."""
        profile = self._github.fetch_profile(provider_token)
        return self.complete_login(profile)

    def complete_login(self, profile: ProviderProfile | None) -> ExchangeResult:
        """Run steps 2-5 for a profile that has already been fetched."""
        if profile is None:
            return INVALID_PROVIDER_TOKEN

        if not self._gate.is_allowed(profile.provider_id):
            logger.warning("Login refused for GitHub login %r (not allow-listed)", profile.login)
            return ACCESS_DENIED

        try:
            user = self._provisioner.find_or_create(profile)
        except IdentityConflictError:
            return IDENTITY_CONFLICT
        except DeletedUserError:
            logger.warning("Login refused for GitHub login %r (account deleted)", profile.login)
            return ACCOUNT_DELETED

        token = self._codec.issue(user.id, user.email)
        logger.info("Issued session token for user %s", user.id)
        return ExchangeSuccess(token=token, user=user)
