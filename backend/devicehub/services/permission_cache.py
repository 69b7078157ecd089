"""In-process, TTL-bounded memoization in front of the permission resolver.

Correctness never depends on :meth:`PermissionCache.sweep`; ``get`` checks
expiry itself. The store is shared by every request thread, so all access
goes through one lock. The resolver itself runs outside the lock; a
per-key generation counter keeps a resolution that raced an ``invalidate``
from being written back.

The cache is per process. A permission change made through another process
becomes visible here only after this process's TTL expires or the user's
token fails the staleness check.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable

from devicehub.services.permissions import PermissionSet

logger = logging.getLogger(__name__)

Resolver = Callable[[int], PermissionSet]


@dataclass
class _Entry:
    value: PermissionSet
    expires_at: float


class PermissionCache:
    def __init__(
        self,
        resolver: Resolver,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolver = resolver
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, _Entry] = {}
        self._generations: Dict[int, int] = {}
        self._epoch = 0
        self._lock = threading.RLock()

    def get(self, user_id: int) -> PermissionSet:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and self._clock() < entry.expires_at:
                return entry.value
            ticket = (self._epoch, self._generations.get(user_id, 0))

        value = self._resolver(user_id)

        with self._lock:
            if ticket == (self._epoch, self._generations.get(user_id, 0)):
                self._entries[user_id] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)
        return value

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
        logger.debug("Permission cache invalidated for user %s", user_id)

    def invalidate_many(self, user_ids: Iterable[int]) -> None:
        for user_id in set(user_ids):
            self.invalidate(user_id)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1
        logger.info("Permission cache cleared")

    def sweep(self) -> int:
        """Drop expired entries and the generation counters of uncached users."""
        now = self._clock()
        with self._lock:
            expired = [user_id for user_id, entry in self._entries.items() if now >= entry.expires_at]
            for user_id in expired:
                del self._entries[user_id]
            orphaned = [user_id for user_id in self._generations if user_id not in self._entries]
            if orphaned:
                for user_id in orphaned:
                    del self._generations[user_id]
                # Counters restart from zero, so older tickets must not match again.
                self._epoch += 1
        if expired:
            logger.debug("Swept %d expired permission cache entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, float]:
        now = self._clock()
        with self._lock:
            active = sum(1 for entry in self._entries.values() if now < entry.expires_at)
            total = len(self._entries)
        return {
            "total": total,
            "active": active,
            "expired": total - active,
            "ttl_seconds": self.ttl_seconds,
        }

    def __contains__(self, user_id: int) -> bool:
        with self._lock:
            entry = self._entries.get(user_id)
            return entry is not None and self._clock() < entry.expires_at
