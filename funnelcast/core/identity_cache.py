"""
Identity Cache — short-lived, per-user store of the freshest evidence.

Bounded two ways:
  - TTL: an entry not touched for ttl_seconds is gone (24h by default)
  - Size: past max_users, least-recently-touched users are evicted

put() is a serialized read-modify-write so two evidence sources arriving
for the same user at the same time can't lose each other's update.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable

from funnelcast.core.identity import IdentitySnapshot, merge

import structlog

logger = structlog.get_logger()


class IdentityCache:
    def __init__(
        self,
        ttl_seconds: int = 86400,
        max_users: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_users = max_users
        self._clock = clock
        self._entries: OrderedDict[str, tuple[IdentitySnapshot, float]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id) -> str:
        key = str(user_id).strip() if user_id is not None else ""
        if not key:
            raise ValueError("user_id is required")
        return key

    def get(self, user_id) -> IdentitySnapshot | None:
        key = self._key(user_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            snapshot, touched = entry
            if self._clock() - touched > self.ttl_seconds:
                del self._entries[key]
                return None
            return snapshot

    def put(self, user_id, evidence: IdentitySnapshot) -> IdentitySnapshot:
        """Merge evidence into the stored snapshot; returns the result."""
        key = self._key(user_id)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            current = None
            if entry is not None and now - entry[1] <= self.ttl_seconds:
                current = entry[0]
            merged = merge(current, evidence)
            self._entries[key] = (merged, now)
            self._entries.move_to_end(key)
            evicted = 0
            while len(self._entries) > self.max_users:
                self._entries.popitem(last=False)
                evicted += 1
        if evicted:
            logger.debug("identity_cache_evicted", count=evicted, size=len(self._entries))
        return merged

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, touched) in self._entries.items() if now - touched > self.ttl_seconds]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("identity_cache_purged", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
