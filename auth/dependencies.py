"""
auth/dependencies.py -- FastAPI Depends() helpers for route policy.

The authentication chain (auth/chain.py) runs in middleware for every request
and leaves its result on request.state.auth as a RequestContext. It never
refuses a request for lacking credentials; these dependencies do:

  require_service() -- Stage 1 must have succeeded      -> 401 MISSING_API_KEY
  require_user()    -- require_service() + a user        -> 401 MISSING_USER_TOKEN
  require_admin()   -- require_user() + user.admin      -> 403 ADMIN_REQUIRED

Failures raise AuthRejectedError, which api/main.py renders with the same
body as a chain rejection.

Layer rule: no imports from web/ or core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.chain import RequestContext
from auth.errors import AuthRejectedError, AuthRejection, ErrorCode
from auth.models import ServiceCredential, User


def get_auth_context(request: Request) -> RequestContext:
    """Return the chain's context, or an empty one if the middleware did not run."""
    ctx = getattr(request.state, "auth", None)
    if ctx is None:
        ctx = RequestContext()
    return ctx


def require_service(request: Request) -> ServiceCredential:
    """Require a verified service credential.

    Use as a FastAPI dependency:
        @router.post("/route")
        async def route(credential: ServiceCredential = Depends(require_service)): ...
    """
    ctx = get_auth_context(request)
    if not ctx.service_authenticated or ctx.credential is None:
        raise AuthRejectedError(
            AuthRejection(ErrorCode.MISSING_API_KEY, "A valid API key is required.")
        )
    return ctx.credential


def require_user(request: Request) -> User:
    """Require a service credential and an authenticated user."""
    require_service(request)
    user = get_auth_context(request).user
    if user is None:
        raise AuthRejectedError(
            AuthRejection(ErrorCode.MISSING_USER_TOKEN, "A valid user token is required.")
        )
    return user


def require_admin(request: Request) -> User:
    user = require_user(request)
    if not user.admin:
        raise AuthRejectedError(
            AuthRejection(ErrorCode.ADMIN_REQUIRED, "Admin access required.")
        )
    return user
