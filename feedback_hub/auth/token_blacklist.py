"""
Revoked bearer tokens.

A token is remembered until it would have expired on its own, after which
it is purged, on lookup or by the next revocation. In-process only: a
restart forgets revocations.
"""

import hashlib
import threading
import time
from typing import Callable, Dict, Optional


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenBlacklist:
    """
    Set of revoked tokens with per-token expiry.

    Only SHA-256 digests are stored, never the tokens themselves.
    """

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._revoked: Dict[str, float] = {}
        self._lock = threading.Lock()

    def revoke(self, token: str, ttl_seconds: Optional[int] = None) -> None:
        """Revoke a token for ttl_seconds (default: the configured token lifetime)."""
        self.purge()
        expires_at = self._clock() + (ttl_seconds if ttl_seconds is not None else self._ttl)
        with self._lock:
            self._revoked[_digest(token)] = expires_at

    def is_revoked(self, token: str) -> bool:
        key = _digest(token)
        with self._lock:
            expires_at = self._revoked.get(key)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._revoked[key]
                return False
            return True

    def purge(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, expires_at in self._revoked.items() if expires_at <= now]
            for key in expired:
                del self._revoked[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._revoked)
