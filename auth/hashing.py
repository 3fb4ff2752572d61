"""
auth/hashing.py -- One-way adaptive hashing for service credential secrets.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection builds a secret longer than 72 bytes, which bcrypt 4.x rejects.
Credential secrets are 32 ASCII characters, well below bcrypt's 72-byte
truncation threshold.

The cost factor comes from Settings.bcrypt_rounds and is passed in by the
caller. Tests construct SecretHasher(rounds=4) to keep the suite fast.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import bcrypt


class SecretHasher:
    """Salted, adaptive, non-reversible hashing of secrets.

    Immutable after construction. The dummy hash is computed once so that
    verify_dummy() costs the same as a real comparison.
    """

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds
        self._dummy_hash = self.hash("gatehouse_timing_dummy")

    @property
    def rounds(self) -> int:
        return self._rounds

    def hash(self, secret: str) -> str:
        """Return a bcrypt hash of secret. Every call uses a fresh salt."""
        return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, secret: str, hashed: str) -> bool:
        """Return True if secret matches hashed (constant-time inside bcrypt).

        A stored value that is not a bcrypt hash is treated as a mismatch.
        """
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def verify_dummy(self, secret: str) -> None:
        """Burn one bcrypt comparison against a throwaway hash.

        Called when a lookup produced no candidates so the response time does
        not reveal whether a prefix exists [C1].
        """
        self.verify(secret, self._dummy_hash)
