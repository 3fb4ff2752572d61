"""
auth/errors.py -- Expected authentication failures and their wire shape.

Every expected rejection has exactly one HTTP status and one stable machine
code. Clients branch on errorCode, so codes never change; message text may.

Anything that is not an ErrorCode (store outage, GitHub 5xx, bugs) is not an
auth failure and must propagate to the app's catch-all handler instead of
being converted here.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class ErrorCode(str, Enum):
    # Stage 1 -- service credential
    MALFORMED_HEADER = "MALFORMED_HEADER"
    EMPTY_API_KEY = "EMPTY_API_KEY"
    INVALID_API_KEY = "INVALID_API_KEY"
    # Stage 2 -- session token
    MISSING_API_KEY = "MISSING_API_KEY"
    MALFORMED_TOKEN = "MALFORMED_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    # Route policy
    MISSING_USER_TOKEN = "MISSING_USER_TOKEN"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"
    # GitHub exchange
    INVALID_PROVIDER_TOKEN = "InvalidProviderToken"
    ACCESS_DENIED = "AccessDenied"

    @property
    def status_code(self) -> int:
        return _STATUS[self]


_STATUS: dict[ErrorCode, int] = {
    ErrorCode.MALFORMED_HEADER: 400,
    ErrorCode.EMPTY_API_KEY: 400,
    ErrorCode.INVALID_API_KEY: 401,
    ErrorCode.MISSING_API_KEY: 401,
    ErrorCode.MALFORMED_TOKEN: 400,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.INVALID_SIGNATURE: 401,
    ErrorCode.USER_NOT_FOUND: 401,
    ErrorCode.MISSING_USER_TOKEN: 401,
    ErrorCode.ADMIN_REQUIRED: 403,
    ErrorCode.INVALID_PROVIDER_TOKEN: 401,
    ErrorCode.ACCESS_DENIED: 403,
}

_REASON: dict[int, str] = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
}


@dataclass(frozen=True)
class AuthRejection:
    """A terminal, expected authentication failure."""

    code: ErrorCode
    message: str

    @property
    def status_code(self) -> int:
        return self.code.status_code

    def to_body(self, now: datetime | None = None) -> dict:
        """Render the JSON body clients receive for a rejection."""
        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        return {
            "error": _REASON[self.status_code],
            "message": self.message,
            "errorCode": self.code.value,
            "timestamp": timestamp,
        }


class AuthRejectedError(Exception):
    """Raised by route-policy dependencies; rendered by an app exception handler.

    The authentication chain itself returns AuthRejection values instead of
    raising. This exception exists because FastAPI dependencies can only stop
    a request by raising.
    """

    def __init__(self, rejection: AuthRejection) -> None:
        super().__init__(rejection.message)
        self.rejection = rejection
