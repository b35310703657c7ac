"""
In-memory DEK cache keyed by (org_id, dek_version).

Entries expire after a short TTL and the least recently used entry is evicted
once ``max_entries`` is reached. All operations take a lock, so concurrent
population races are last-writer-wins and never corrupt the map.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .config import DEFAULT_CACHE_MAX_ENTRIES, DEFAULT_CACHE_TTL_SECONDS
from .crypto import SecureKey

CacheKey = Tuple[str, int]


@dataclass
class _CacheEntry:
    key: SecureKey
    expires_at: float


class DekCache:
    """Bounded TTL cache of unwrapped DEKs. Memory only."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, org_id: str, dek_version: int) -> Optional[SecureKey]:
        """Return the cached DEK, or None if absent or expired."""
        cache_key = (org_id, dek_version)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[cache_key]
                return None
            self._entries.move_to_end(cache_key)
            return entry.key

    def put(self, org_id: str, dek_version: int, key: SecureKey) -> None:
        """Insert or replace an entry, evicting the LRU entry if full."""
        cache_key = (org_id, dek_version)
        with self._lock:
            self._entries[cache_key] = _CacheEntry(
                key=key, expires_at=self._clock() + self._ttl
            )
            self._entries.move_to_end(cache_key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, org_id: str) -> int:
        """Drop every version cached for an organization."""
        with self._lock:
            stale = [k for k in self._entries if k[0] == org_id]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
