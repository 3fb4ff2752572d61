"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and services do the work.

Timestamps are ISO 8601 UTC strings, written by the store.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A local account, provisioned from a GitHub identity.

    provider_id is GitHub's numeric user id (stable across renames); it is
    the allow-list key. email is unique; accounts whose GitHub email is private
    get a deterministic noreply placeholder instead (see auth/provisioning.py).

    admin is never set by the login path -- only an operator can grant it.
    deleted_at is a soft delete: a deleted user's session tokens stop working
    even though their signatures remain valid.
    """

    email: str
    id: int | None = None
    provider_id: int | None = None
    provider_login: str | None = None
    provider_name: str | None = None
    provider_avatar_url: str | None = None
    provider: str | None = None  # "github"
    uid: str | None = None  # str(provider_id), kept for (provider, uid) uniqueness
    admin: bool = False
    deleted_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ServiceCredential:
    """A long-lived credential identifying a trusted calling application.

    Security design:
    - secret_hash is a bcrypt hash of the raw secret. bcrypt is salted, so the
      hash cannot be used as a lookup key; the store is queried by prefix and
      each candidate is checked with bcrypt's constant-time comparison.
    - prefix (first 8 chars of the raw secret) narrows the candidates. It is
      not a secret and is safe to show in listings and logs. Non-unique.
    - The raw secret is never persisted. It is returned ONCE at issuance.
    - owner_user_id None means a system-wide key.
    - revoked_at is a soft delete; revoked rows are kept for audit until the
      retention sweep removes them.
    """

    name: str
    secret_hash: str
    prefix: str
    id: int | None = None
    owner_user_id: int | None = None
    request_count: int = 0
    last_used_at: str | None = None
    revoked_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


@dataclass
class AllowListEntry:
    """A GitHub identity permitted to obtain a local account.

    Administrative data. The auth core only asks whether an entry exists for
    a given provider_id.
    """

    provider_id: int
    provider_login: str
    id: int | None = None
    email: str | None = None
    notes: str | None = None
    added_by: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class ProviderProfile:
    """Minimal identity profile returned by the identity provider.

    email may be None when the GitHub account keeps its address private.
    """

    provider_id: int
    login: str
    email: str | None = None
    name: str | None = None
    avatar_url: str | None = None
    provider: str = "github"
