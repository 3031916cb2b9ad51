"""Process-local confirmation cache for session validation.

Entries record that a (user, credential) pair was confirmed against the store
recently. They are keyed by a SHA-256 digest of the credential so raw tokens
never sit in the key space. The cache is never the source of truth: dropping
any entry only costs one extra store lookup.
"""

from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sessiongate.logging import get_logger
from sessiongate.storage.models import CacheEntry, utcnow

DEFAULT_FRESHNESS_WINDOW = timedelta(minutes=5)
DEFAULT_MAX_ENTRIES = 10000

logger = get_logger(__name__)

CacheKey = Tuple[str, str]


def credential_digest(access_token: str) -> str:
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()


class SessionCache:
    """Thread-safe map of (user_id, credential digest) to :class:`CacheEntry`.

    Each operation holds the lock for its own duration only; callers doing
    check-then-refresh sequences accept that two requests may both miss and
    both go to the store.
    """

    def __init__(
        self,
        freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if freshness_window <= timedelta(0):
            raise ValueError("freshness window must be positive")
        self.freshness_window = freshness_window
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _key(self, user_id: str, access_token: str) -> CacheKey:
        return (user_id, credential_digest(access_token))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, user_id: str, access_token: str) -> Optional[CacheEntry]:
        """Return the entry if fresh; stale entries are dropped on the way out."""

        key = self._key(user_id, access_token)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_fresh(now, self.freshness_window):
                return entry
            self._entries.pop(key, None)
            return None

    def put(
        self,
        user_id: str,
        access_token: str,
        expires_at: datetime,
        *,
        device_fingerprint: str = "",
    ) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            expires_at=expires_at,
            last_confirmed_at=now,
        )
        key = self._key(user_id, access_token)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_for_capacity()
            self._entries[key] = entry
        self.maybe_sweep()
        return entry

    def _evict_for_capacity(self) -> None:
        # Caller holds the lock. Drop ~10% of entries closest to expiry.
        ordered = sorted(self._entries.items(), key=lambda item: item[1].expires_at)
        evict_count = max(1, self.max_entries // 10)
        for key, _ in ordered[:evict_count]:
            self._entries.pop(key, None)
        logger.debug("session_cache_capacity_eviction", evicted=evict_count)

    def evict(self, user_id: str, access_token: str) -> bool:
        with self._lock:
            return self._entries.pop(self._key(user_id, access_token), None) is not None

    def evict_user(self, user_id: str) -> int:
        with self._lock:
            stale = [key for key in self._entries if key[0] == user_id]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def sweep(self) -> int:
        """Drop every entry past its freshness window or session expiry."""

        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if not entry.is_fresh(now, self.freshness_window)
            ]
            for key in stale:
                self._entries.pop(key, None)
            self._last_sweep = now
        if stale:
            logger.debug("session_cache_sweep", evicted=len(stale))
        return len(stale)

    def maybe_sweep(self) -> int:
        """Sweep if a full freshness window has passed since the last sweep."""

        if self._clock() - self._last_sweep >= self.freshness_window:
            return self.sweep()
        return 0

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CredentialTombstones:
    """Digests of credentials whose sessions were deliberately removed.

    Revocation and tombstone-on-touch record the credential here so that the
    recovery path does not rebuild a row that was removed on purpose.
    Entries are kept for ``retention`` and then swept.
    """

    def __init__(
        self,
        retention: timedelta,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.retention = retention
        self._clock = clock
        self._entries: Dict[CacheKey, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, user_id: str, access_token: str) -> None:
        until = self._clock() + self.retention
        with self._lock:
            self._entries[(user_id, credential_digest(access_token))] = until

    def contains(self, user_id: str, access_token: str) -> bool:
        key = (user_id, credential_digest(access_token))
        now = self._clock()
        with self._lock:
            until = self._entries.get(key)
            if until is None:
                return False
            if until <= now:
                self._entries.pop(key, None)
                return False
            return True

    def discard(self, user_id: str, access_token: str) -> None:
        with self._lock:
            self._entries.pop((user_id, credential_digest(access_token)), None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, until in self._entries.items() if until <= now]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)
