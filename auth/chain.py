"""
auth/chain.py -- The two-stage authentication chain.

Pattern: Chain of Responsibility as an explicit ordered list of callables.
Every inbound request is threaded through the same RequestContext. A stage
returns None to continue (it may have attached a principal), or an
AuthRejection to stop the chain -- no later stage runs.

Stage 1, ServiceCredentialStage (Authorization: Bearer <secret>):
  no header                  -> continue unauthenticated
  not "Bearer "              -> 400 MALFORMED_HEADER
  empty secret               -> 400 EMPTY_API_KEY
  no matching credential     -> 401 INVALID_API_KEY
  match                      -> attach credential, service_authenticated=True

Stage 2, SessionTokenStage (X-User-Token: <token>, configurable):
  no header                  -> continue, no user
  stage 1 did not succeed    -> 401 MISSING_API_KEY
  malformed / expired / bad signature
                             -> 400 MALFORMED_TOKEN / 401 TOKEN_EXPIRED /
                                401 INVALID_SIGNATURE
  user missing or deleted    -> 401 USER_NOT_FOUND
  ok                         -> attach user

Whether an unauthenticated request may reach a route is decided later by
route policy (auth/dependencies.py), not here.

Exceptions are deliberately not caught: a store outage inside a stage is a
defect, not an auth failure, and must reach the 500 handler.

Nothing here depends on FastAPI. api/main.py adapts the chain to an HTTP
middleware.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional

from auth.credentials import ServiceCredentialService
from auth.errors import AuthRejection, ErrorCode
from auth.models import ServiceCredential, User
from auth.store import UserStore
from auth.tokens import SessionTokenCodec, TokenFailure

logger = logging.getLogger("gatehouse.auth.chain")

AUTHORIZATION_HEADER = "Authorization"
BEARER_PREFIX = "Bearer "
DEFAULT_SESSION_HEADER = "X-User-Token"


@dataclass
class RequestContext:
    """Request-scoped authentication state.

    headers keys are lower-cased on construction so lookups are
    case-insensitive, as HTTP header names are.
    """

    headers: dict[str, str] = field(default_factory=dict)
    credential: ServiceCredential | None = None
    service_authenticated: bool = False
    user: User | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "RequestContext":
        return cls(headers={k.lower(): v for k, v in headers.items()})

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


Stage = Callable[[RequestContext], Optional[AuthRejection]]


class ServiceCredentialStage:
    """Stage 1: authenticate the calling application."""

    def __init__(self, credentials: ServiceCredentialService) -> None:
        self._credentials = credentials

    def __call__(self, ctx: RequestContext) -> AuthRejection | None:
        header = ctx.header(AUTHORIZATION_HEADER)
        if header is None:
            return None

        if not header.startswith(BEARER_PREFIX):
            return AuthRejection(
                ErrorCode.MALFORMED_HEADER,
                "Authorization header must use the format 'Bearer <API_KEY>'.",
            )

        raw_secret = header[len(BEARER_PREFIX) :].strip()
        if not raw_secret:
            return AuthRejection(ErrorCode.EMPTY_API_KEY, "API key is empty.")

        credential = self._credentials.verify(raw_secret)
        if credential is None:
            return AuthRejection(
                ErrorCode.INVALID_API_KEY,
                "The provided API key is invalid or has been revoked.",
            )

        ctx.credential = credential
        ctx.service_authenticated = True
        return None


_TOKEN_REJECTIONS: dict[TokenFailure, AuthRejection] = {
    TokenFailure.MALFORMED: AuthRejection(ErrorCode.MALFORMED_TOKEN, "User token is malformed."),
    TokenFailure.EXPIRED: AuthRejection(ErrorCode.TOKEN_EXPIRED, "User token has expired. Please sign in again."),
    TokenFailure.INVALID_SIGNATURE: AuthRejection(ErrorCode.INVALID_SIGNATURE, "User token signature is invalid."),
}


class SessionTokenStage:
    """Stage 2: authenticate the human user behind the calling application."""

    def __init__(
        self,
        codec: SessionTokenCodec,
        users: UserStore,
        header_name: str = DEFAULT_SESSION_HEADER,
    ) -> None:
        self._codec = codec
        self._users = users
        self._header_name = header_name

    def __call__(self, ctx: RequestContext) -> AuthRejection | None:
        token = ctx.header(self._header_name)
        if token is None:
            return None

        if not ctx.service_authenticated:
            return AuthRejection(
                ErrorCode.MISSING_API_KEY,
                "A valid API key is required before a user token is accepted.",
            )

        result = self._codec.verify(token.strip())
        if isinstance(result, TokenFailure):
            return _TOKEN_REJECTIONS[result]

        user = self._users.get_active_by_id(result.user_id)
        if user is None:
            logger.info("Session token references missing user %s", result.user_id)
            return AuthRejection(ErrorCode.USER_NOT_FOUND, "The user for this token no longer exists.")

        ctx.user = user
        return None


class AuthenticationChain:
    """Runs stages in order and stops at the first rejection."""

    def __init__(self, stages: Iterable[Stage]) -> None:
        self._stages = list(stages)

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    def run(self, ctx: RequestContext) -> AuthRejection | None:
        for stage in self._stages:
            rejection = stage(ctx)
            if rejection is not None:
                return rejection
        return None


def build_chain(
    credentials: ServiceCredentialService,
    codec: SessionTokenCodec,
    users: UserStore,
    session_header: str = DEFAULT_SESSION_HEADER,
) -> AuthenticationChain:
    """Assemble the standard chain: service credential first, then session token."""
    return AuthenticationChain(
        [
            ServiceCredentialStage(credentials),
            SessionTokenStage(codec, users, header_name=session_header),
        ]
    )
