"""
api/routes/v1/profile.py -- The authenticated user's profile.

Routes:
  GET /api/v1/profile  -- requires service credential + user token
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ProfileResponse, UserResponse
from auth.dependencies import require_service, require_user
from auth.models import User

router = APIRouter()


@router.get("/profile", response_model=ProfileResponse)
async def profile(request: Request, user: User = Depends(require_user)) -> ProfileResponse:
    credential = require_service(request)
    return ProfileResponse(
        user=UserResponse.from_user(user),
        api_key_name=credential.name,
        api_key_prefix=credential.prefix,
    )
