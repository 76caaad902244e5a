"""Analysis result cache.

The engine only talks to the :class:`AnalysisCache` protocol, so the
in-process cache here and a networked key-value store are interchangeable.
Concurrent misses on the same key may both compute and both write; that is
duplicate work, never a wrong answer, so no locking is done.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from cachetools import LRUCache

from discubot.logging import get_logger

log = get_logger("discubot.analysis.cache")

T = TypeVar("T")

DEFAULT_CACHE_TTL = 3600


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its write time and expiry (epoch seconds)."""

    data: T
    timestamp: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheStats:
    total: int
    valid: int
    expired: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "valid": self.valid, "expired": self.expired}


class AnalysisCache(Protocol):
    """Minimal key-value contract the analysis engine depends on."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...


class InMemoryAnalysisCache:
    """Process-local cache with per-entry expiry and LRU eviction.

    Entries past ``expires_at`` are treated as misses and removed on read.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            max_entries: Upper bound on stored entries; least recently used
                entries are evicted beyond it.
            clock: Returns the current time in epoch seconds. Injectable for
                tests.
        """
        self._entries: LRUCache[str, CacheEntry[Any]] = LRUCache(maxsize=max_entries)
        self._clock = clock

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            log.debug("analysis_cache_expired", key=key[:16])
            return None
        return entry.data

    async def set(self, key: str, value: Any, ttl: float = DEFAULT_CACHE_TTL) -> None:
        now = self._clock()
        # Expired entries go before LRU eviction can push out a live one
        if key not in self._entries and len(self._entries) >= self._entries.maxsize:
            self.cleanup_expired()
        self._entries[key] = CacheEntry(data=value, timestamp=now, expires_at=now + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()
        log.info("analysis_cache_cleared")

    def get_entry(self, key: str) -> CacheEntry[Any] | None:
        """Raw entry lookup (expired entries included)."""
        return self._entries.get(key)

    def stats(self) -> CacheStats:
        now = self._clock()
        entries = list(self._entries.values())
        expired = sum(1 for e in entries if e.is_expired(now))
        return CacheStats(total=len(entries), valid=len(entries) - expired, expired=expired)

    def cleanup_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        stale = [k for k, e in list(self._entries.items()) if e.is_expired(now)]
        for key in stale:
            self._entries.pop(key, None)
        if stale:
            log.debug("analysis_cache_cleanup", removed=len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
