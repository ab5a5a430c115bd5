"""In-process TTL cache for style profiles."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from style.config import PROFILE_CACHE_MAX_ENTRIES, PROFILE_CACHE_TTL_SECONDS


class TTLCache:
    """Key/value cache with a fixed time-to-live per entry.

    Holds at most *max_entries* keys. A write to a full cache first purges
    expired entries, then evicts the oldest writes until there is room.
    *clock* returns seconds; tests pass a controllable clock to expire
    entries without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float = PROFILE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = PROFILE_CACHE_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl_seconds
        self._clock = clock
        self._max_entries = max_entries
        # Insertion order is write order; set() re-inserts on overwrite
        self._entries: dict[str, tuple[float, Any]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            self.purge_expired()
        while len(self._entries) >= self._max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._evictions += 1
        self._entries[key] = (self._clock() + self._ttl, value)

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were dropped."""
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        live = sum(1 for expires_at, _ in self._entries.values() if expires_at > now)
        return {
            "size": live,
            "max_entries": self._max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "ttl_seconds": self._ttl,
        }


def profile_cache_key(user_id: str, subspecialty: str) -> str:
    return f"{user_id}:{subspecialty}"
