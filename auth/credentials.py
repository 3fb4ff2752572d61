"""
auth/credentials.py -- Issue, verify and revoke service credentials.

Security design decisions:
  Generation: secrets.token_urlsafe() over 32 random bytes, truncated to
       exactly SECRET_LENGTH (32) URL-safe characters -- 192 bits of entropy.

  Storage: only a bcrypt hash is persisted. Because bcrypt is salted the hash
       cannot be looked up directly, so every credential also stores the
       first PREFIX_LENGTH characters of its secret. verify() fetches the
       active rows sharing that prefix and runs bcrypt against each. Full read
       access to the table never allows secret recovery; the prefix only
       narrows candidates.

  Length check: a presented secret whose length is not SECRET_LENGTH cannot
       match anything and is rejected before any database or bcrypt work.

  Timing: when the prefix matches nothing, a dummy bcrypt comparison still
       runs so response time does not reveal which prefixes exist [C1].

  Logging: only the prefix and the credential id are ever logged.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from auth.hashing import SecretHasher
from auth.models import ServiceCredential, User
from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth.credentials")

SECRET_LENGTH = 32
PREFIX_LENGTH = 8


def generate_secret() -> str:
    """Return a new random credential secret of exactly SECRET_LENGTH characters."""
    return secrets.token_urlsafe(SECRET_LENGTH)[:SECRET_LENGTH]


class ServiceCredentialService:
    """Issuer and verifier for long-lived service credentials.

    Usage:
        service = ServiceCredentialService(CredentialStore(engine), SecretHasher())
        raw, record = service.issue("CI")
        service.verify(raw)          # -> ServiceCredential, request_count == 1
        service.revoke(record.id)    # -> True
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        allow_system_wide: bool = True,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._allow_system_wide = allow_system_wide

    def issue(self, name: str, owner: User | None = None) -> tuple[str, ServiceCredential]:
        """Create and persist a new credential.

        Returns (raw_secret, record). The raw secret is not stored anywhere and
        cannot be recovered -- the caller must hand it over immediately.

        Raises ValueError if name is blank, or if owner is None while
        system-wide credentials are disabled by configuration.
        """
        if not name or not name.strip():
            raise ValueError("Credential name is required.")
        if owner is None and not self._allow_system_wide:
            raise ValueError("System-wide credentials are disabled; an owning user is required.")

        raw_secret = generate_secret()
        record = self._store.save(
            ServiceCredential(
                name=name.strip(),
                secret_hash=self._hasher.hash(raw_secret),
                prefix=raw_secret[:PREFIX_LENGTH],
                owner_user_id=owner.id if owner is not None else None,
            )
        )
        logger.info(
            "Issued service credential id=%s prefix=%s owner=%s",
            record.id,
            record.prefix,
            record.owner_user_id if record.owner_user_id is not None else "system",
        )
        return raw_secret, record

    def verify(self, raw_secret: str) -> ServiceCredential | None:
        """Return the matching active credential, or None.

        On success the usage counter is incremented atomically in the store and
        the refreshed record is returned.
        """
        if len(raw_secret) != SECRET_LENGTH:
            return None

        prefix = raw_secret[:PREFIX_LENGTH]
        candidates = self._store.find_by_prefix(prefix)
        if not candidates:
            self._hasher.verify_dummy(raw_secret)
            return None

        for candidate in candidates:
            if self._hasher.verify(raw_secret, candidate.secret_hash):
                return self._store.record_usage(candidate.id)

        logger.info("Service credential rejected for prefix=%s", prefix)
        return None

    def revoke(self, credential_id: int) -> bool:
        """Revoke a credential. False if it does not exist or was already revoked."""
        revoked = self._store.revoke(credential_id)
        if revoked:
            logger.info("Revoked service credential id=%s", credential_id)
        return revoked

    def list_active(self) -> list[ServiceCredential]:
        return self._store.list_active()

    def list_for_user(self, user_id: int, include_revoked: bool = False) -> list[ServiceCredential]:
        return self._store.list_for_user(user_id, include_revoked=include_revoked)

    def cleanup_revoked(self, days_old: int = 90) -> int:
        """Hard-delete credentials revoked more than days_old days ago.

        Returns the number of credentials removed. Active credentials are never
        touched.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        removed = self._store.delete_revoked_before(cutoff.isoformat(timespec="seconds"))
        if removed:
            logger.info("Retention sweep removed %d revoked credential(s)", removed)
        return removed
