"""
api/routes/v1/api_keys.py -- Service credential administration.

Routes:
  POST   /api/v1/api-keys        -- issue a credential; raw secret returned ONCE
  GET    /api/v1/api-keys        -- list credentials (prefix only, never hashes)
  DELETE /api/v1/api-keys/{id}   -- revoke a credential

Auth policy: every route requires an admin user behind a valid service
credential (require_admin). Credentials identify applications, so issuing
them is an operator action, not a self-service one.

Security:
  [M5] Cache-Control: no-store on the issuance response, which carries the
       raw secret.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse
from auth.credentials import ServiceCredentialService
from auth.dependencies import require_admin
from auth.models import User
from auth.store import UserStore

router = APIRouter()


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    """Issue a new service credential, optionally owned by a user."""
    credentials: ServiceCredentialService = request.app.state.credential_service
    user_store: UserStore = request.app.state.user_store

    owner: User | None = None
    if body.owner_user_id is not None:
        owner = user_store.get_active_by_id(body.owner_user_id)
        if owner is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "not_found", "message": "Owner user not found."},
            )

    try:
        raw_secret, record = credentials.issue(body.name, owner=owner)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_request", "message": str(exc)},
        ) from exc

    listing = ApiKeyResponse.from_credential(record)
    resp = JSONResponse(
        status_code=201,
        content=ApiKeyCreatedResponse(**listing.model_dump(), key=raw_secret).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    user_id: Optional[int] = None,
    include_revoked: bool = False,
    current_user: User = Depends(require_admin),
) -> list[ApiKeyResponse]:
    """List active credentials, or one user's credentials when user_id is given."""
    credentials: ServiceCredentialService = request.app.state.credential_service
    if user_id is None:
        keys = credentials.list_active()
    else:
        keys = credentials.list_for_user(user_id, include_revoked=include_revoked)
    return [ApiKeyResponse.from_credential(k) for k in keys]


@router.delete("/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    key_id: int,
    current_user: User = Depends(require_admin),
) -> Response:
    credentials: ServiceCredentialService = request.app.state.credential_service
    if not credentials.revoke(key_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "API key not found or already revoked."},
        )
    return Response(status_code=204)
