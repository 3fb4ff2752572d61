"""
api/routes/v1/auth.py -- GitHub token exchange endpoint.

Routes:
  POST /api/v1/auth/exchange  -- GitHub access token in, session token out

Auth policy: the calling application must present a valid service credential
(require_service). No user token is needed -- obtaining one is the point.

Security:
  [H2] Rate-limited per client IP (Settings.exchange_rate_limit, default
       10/minute). Each call costs a GitHub round-trip.
  [M5] Cache-Control: no-store on every response that may carry a token.

Outcomes:
  200 {"jwt", "user"}
  400 {"message": "GitHub token required", "errors": [...]}
  401 {"message", "errors", "errorCode": "InvalidProviderToken"}
                             -- GitHub rejected the token
  403 {"message", "errors", "errorCode": "AccessDenied"}
                             -- identity not on the allow-list, deleted, or
                                its email belongs to another GitHub account
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import exchange_limit, limiter
from api.models import ExchangeErrorResponse, ExchangeRequest, ExchangeResponse, UserResponse
from auth.dependencies import require_service
from auth.exchange import ExchangeFailure, OAuthExchangeService
from auth.models import ServiceCredential

logger = logging.getLogger("gatehouse.api.auth")

router = APIRouter()


@limiter.limit(exchange_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/exchange", response_model=ExchangeResponse)
def exchange(
    request: Request,
    body: ExchangeRequest,
    credential: ServiceCredential = Depends(require_service),
) -> JSONResponse:
    """Exchange a GitHub access token for a Gatehouse session token.

    Sync handler: the GitHub call and the store writes block, so FastAPI
    runs this in its threadpool.
    """
    token = body.github_token.strip()
    if not token:
        resp = JSONResponse(
            status_code=400,
            content=ExchangeErrorResponse(
                message="GitHub token required",
                errors=["github_token must not be blank"],
            ).model_dump(exclude_none=True),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    service: OAuthExchangeService = request.app.state.exchange_service
    result = service.exchange_token(token)

    if isinstance(result, ExchangeFailure):
        logger.info("Exchange via key %s failed: %s", credential.prefix, result.code.value)
        resp = JSONResponse(
            status_code=result.status_code,
            content=ExchangeErrorResponse(
                message=result.message,
                errors=[result.detail],
                errorCode=result.code.value,
            ).model_dump(exclude_none=True),
        )
    else:
        resp = JSONResponse(
            status_code=200,
            content=ExchangeResponse(
                jwt=result.token,
                user=UserResponse.from_user(result.user),
            ).model_dump(),
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
