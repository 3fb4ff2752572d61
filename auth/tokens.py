"""
auth/tokens.py -- Session token issuing and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub, user_id, email, iat and exp. The key and lifetime are constructor
       arguments -- SessionTokenCodec never reads configuration itself.

  Tagged results: verify() never raises for a bad token. It returns either
       SessionClaims or one TokenFailure member, because each failure maps to
       a different client remediation:
         MALFORMED          -- client bug (not a JWT, or claims of the wrong shape)
         INVALID_SIGNATURE  -- tampering, foreign key, or disallowed algorithm
         EXPIRED            -- re-authenticate

  Order of checks: shape first (three base64url segments), then canonical
       encoding of every segment, then signature, then expiry. A tampered
       token is INVALID_SIGNATURE even if it is also expired -- an attacker
       must not learn anything from expiry handling.

  Statelessness: there is no server-side record of issued tokens. A token
       stays valid until exp; deleting the user is the only way to stop it
       early (the authentication chain rejects tokens for missing users).

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

_ALGORITHM = "HS256"

# A compact JWS is exactly three non-empty base64url segments.
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _is_canonical(segment: str) -> bool:
    """True if segment is the exact unpadded base64url encoding of its bytes.

    The final character of a segment can carry unused low bits that decoders
    ignore, so several spellings decode to the same bytes. Only the spelling
    the encoder produces is accepted.
    """
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") == segment


class TokenFailure(str, Enum):
    """Why a session token was refused. Values are the public error codes."""

    MALFORMED = "MALFORMED_TOKEN"
    EXPIRED = "TOKEN_EXPIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class SessionClaims:
    """Verified claims carried by a session token."""

    user_id: int
    email: str
    issued_at: datetime
    expires_at: datetime


class SessionTokenCodec:
    """Issues and verifies signed, time-bounded session tokens.

    Usage:
        codec = SessionTokenCodec(settings.secret_key, ttl_seconds=86400)
        token = codec.issue(user.id, user.email)
        result = codec.verify(token)
        if isinstance(result, TokenFailure): ...
    """

    def __init__(self, secret_key: str, ttl_seconds: int = 24 * 60 * 60) -> None:
        self._secret_key = secret_key
        self._ttl = timedelta(seconds=ttl_seconds)

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def issue(self, user_id: int, email: str, now: datetime | None = None) -> str:
        """Encode a signed token for user_id/email.

        now overrides the issue time; tests use it to mint already-expired tokens.
        """
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "email": email,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> SessionClaims | TokenFailure:
        """Verify token and return its claims, or the reason it was refused."""
        segments = token.split(".")
        if len(segments) != 3 or not all(_SEGMENT_RE.match(s) for s in segments):
            return TokenFailure.MALFORMED

        # Any altered character must change the signed bytes.
        if not all(_is_canonical(s) for s in segments):
            return TokenFailure.INVALID_SIGNATURE

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            return TokenFailure.EXPIRED
        except JWTClaimsError:
            # Signature was valid but a registered claim is missing or mistyped.
            return TokenFailure.MALFORMED
        except JWTError:
            return TokenFailure.INVALID_SIGNATURE

        if "exp" not in payload or "iat" not in payload:
            return TokenFailure.MALFORMED

        user_id = payload.get("user_id")
        email = payload.get("email")
        if isinstance(user_id, bool) or not isinstance(user_id, int) or not isinstance(email, str):
            return TokenFailure.MALFORMED

        return SessionClaims(
            user_id=user_id,
            email=email,
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
