"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Security: no response model has a field for secret_hash. The raw service
credential appears only in ApiKeyCreatedResponse, returned once at issuance.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ServiceCredential, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ExchangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/exchange.

    github_token defaults to "" so a missing field and a blank one get the
    same 400 from the route instead of a 422 from validation.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    github_token: str = ""


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/api-keys.

    owner_user_id None issues a system-wide key (if the deployment allows it).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    owner_user_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a local user. Never includes deleted_at or internal ids of other tables."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    github_id: Optional[int] = None
    github_login: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    admin: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            github_id=user.provider_id,
            github_login=user.provider_login,
            name=user.provider_name,
            avatar_url=user.provider_avatar_url,
            admin=user.admin,
            created_at=user.created_at,
        )


class ExchangeResponse(BaseModel):
    """Response for a successful POST /api/v1/auth/exchange."""

    model_config = ConfigDict(frozen=True)

    jwt: str
    user: UserResponse


class ExchangeErrorResponse(BaseModel):
    """Error body for POST /api/v1/auth/exchange.

    errorCode is set for the 401/403 outcomes and omitted for the 400.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    errors: list[str]
    errorCode: Optional[str] = None


class ProfileResponse(BaseModel):
    """Response for GET /api/v1/profile: the user plus the calling application."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    api_key_name: str
    api_key_prefix: str


class ApiKeyResponse(BaseModel):
    """A service credential listing entry. Only the prefix is shown."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    prefix: str
    owner_user_id: Optional[int] = None
    request_count: int = 0
    last_used_at: Optional[str] = None
    revoked_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_credential(cls, credential: ServiceCredential) -> "ApiKeyResponse":
        return cls(
            id=credential.id,
            name=credential.name,
            prefix=credential.prefix,
            owner_user_id=credential.owner_user_id,
            request_count=credential.request_count,
            last_used_at=credential.last_used_at,
            revoked_at=credential.revoked_at,
            created_at=credential.created_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned ONCE at issuance. key is the raw secret; it is not stored."""

    key: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope for non-auth 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
