"""
auth/allowlist.py -- Decide whether a GitHub identity may hold a local account.

The decision is keyed on the provider's numeric id, never the login: logins
can be renamed and re-registered by someone else, ids cannot.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging

from auth.store import AllowListStore

logger = logging.getLogger("gatehouse.auth.allowlist")


class AllowListGate:
    def __init__(self, store: AllowListStore) -> None:
        self._store = store

    def is_allowed(self, provider_id: int) -> bool:
        allowed = self._store.exists_by_provider_id(provider_id)
        if not allowed:
            logger.info("Identity provider_id=%s is not on the allow-list", provider_id)
        return allowed
