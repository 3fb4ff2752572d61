"""
auth/provisioning.py -- Find-or-create local users from GitHub identities.

Flow for find_or_create(profile):
  1. Look up by provider_id -- the fast path for returning users.
  2. Else look up by email -- links an account created before the GitHub id
     was known. An email match that already belongs to a different GitHub id
     raises IdentityConflictError; accounts are never merged.
  3. A soft-deleted account raises DeletedUserError before any write.
  4. Found: refresh the denormalized profile fields (login, name, avatar,
     email) and save. admin and id are never changed here.
  5. Not found: insert a new user with admin=False, whatever the provider
     sent.

Concurrency: two first logins for the same new identity can both miss in
steps 1-2 and both insert. The unique constraints on users decide the
winner; the loser catches IntegrityError, re-fetches, and continues as if
the row had been found [M1].

Email fallback: GitHub returns email=null for accounts with a private
address. A deterministic <login>@users.noreply.github.com placeholder keeps
the unique-email invariant without rejecting those users.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.models import ProviderProfile, User
from auth.store import UserStore

logger = logging.getLogger("gatehouse.auth.provisioning")

NOREPLY_DOMAIN = "users.noreply.github.com"


class ProvisioningRefused(Exception):
    """The GitHub identity cannot be mapped onto a usable local account."""


class IdentityConflictError(ProvisioningRefused):
    pass


class DeletedUserError(ProvisioningRefused):
    pass


def placeholder_email(login: str) -> str:
    return f"{login}@{NOREPLY_DOMAIN}"


class UserProvisioner:
    def __init__(self, store: UserStore) -> None:
        self._store = store

    def find_or_create(self, profile: ProviderProfile) -> User:
        """Return the local user for profile, creating or refreshing it."""
        email = profile.email or placeholder_email(profile.login)

        existing = self._find(profile, email)
        if existing is not None:
            return self._refresh(existing, profile, email)

        new_user = User(
            email=email,
            provider_id=profile.provider_id,
            provider_login=profile.login,
            provider_name=profile.name,
            provider_avatar_url=profile.avatar_url,
            provider=profile.provider,
            uid=str(profile.provider_id),
            admin=False,
        )
        try:
            created = self._store.save(new_user)
        except IntegrityError:
            # Lost the race to a concurrent first login for the same identity.
            winner = self._find(profile, email)
            if winner is None:
                raise
            logger.info("Concurrent provisioning for provider_id=%s resolved to user %s", profile.provider_id, winner.id)
            return self._refresh(winner, profile, email)

        logger.info("Provisioned user %s for provider_id=%s", created.id, profile.provider_id)
        return created

    def _find(self, profile: ProviderProfile, email: str) -> User | None:
        user = self._store.find_by_provider_id(profile.provider_id)
        if user is None:
            user = self._store.find_by_email(email)
            if user is not None and user.provider_id not in (None, profile.provider_id):
                logger.warning(
                    "Email of provider_id=%s already belongs to user %s (provider_id=%s)",
                    profile.provider_id,
                    user.id,
                    user.provider_id,
                )
                raise IdentityConflictError(f"email is linked to another GitHub account (user {user.id})")
        if user is not None and user.deleted_at is not None:
            raise DeletedUserError(f"user {user.id} is deleted")
        return user

    def _refresh(self, user: User, profile: ProviderProfile, email: str) -> User:
        user.email = email
        user.provider_login = profile.login
        user.provider_name = profile.name
        user.provider_avatar_url = profile.avatar_url
        if user.provider_id is None:
            # Matched by email: link the GitHub identity to this account.
            user.provider_id = profile.provider_id
            user.provider = profile.provider
            user.uid = str(profile.provider_id)
        return self._store.save(user)
