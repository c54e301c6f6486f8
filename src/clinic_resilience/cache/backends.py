"""
Query cache contract and in-memory backend.

The resilience layer only consumes a cache; persistent storage lives in
the application. :class:`MemoryQueryCache` is the reference backend used
by default and in tests.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass
class CacheEntryConfig:
    """Freshness settings for a cached query result.

    Attributes:
        stale_after_seconds: Age after which the entry is reported stale
        max_age_seconds: Age after which the entry is dropped entirely
    """

    stale_after_seconds: float = 60.0
    max_age_seconds: float = 24 * 60 * 60


@dataclass
class CacheLookup:
    """Result of a cache read."""

    hit: bool
    data: Any = None
    age_seconds: float = 0.0
    is_stale: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def miss(cls) -> CacheLookup:
        return cls(hit=False)


@dataclass
class CacheSize:
    """Cache footprint."""

    bytes: int = 0
    entries: int = 0


@dataclass
class CacheEntry:
    """A stored cache entry."""

    value: Any
    created_at: float
    config: CacheEntryConfig
    metadata: dict[str, Any] = field(default_factory=dict)
    size_bytes: int = 0
    hits: int = 0


class QueryCache(ABC):
    """Abstract query cache consumed by the resilience layer."""

    @abstractmethod
    async def get(self, key: str) -> CacheLookup:
        """Read an entry, including stale ones."""
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        data: Any,
        config: CacheEntryConfig | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Store an entry."""
        ...

    @abstractmethod
    async def size(self) -> CacheSize:
        """Report the cache footprint."""
        ...


def _estimate_bytes(data: Any) -> int:
    try:
        return len(json.dumps(data, default=str).encode())
    except (TypeError, ValueError):
        return len(repr(data).encode())


class MemoryQueryCache(QueryCache):
    """In-memory query cache with staleness reporting.

    Entries are returned after they go stale so recovery can serve them;
    they are only dropped once older than ``max_age_seconds``.

    Example:
        >>> cache = MemoryQueryCache()
        >>> await cache.set("patients:list", [{"id": 1}])
        >>> (await cache.get("patients:list")).hit
        True
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_config: CacheEntryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize memory cache.

        Args:
            max_entries: Maximum number of entries
            default_config: Freshness settings used when ``set`` gets none
            clock: Timestamp source (seconds)
        """
        self._cache: dict[str, CacheEntry] = {}
        self._max_entries = max_entries
        self._default_config = default_config or CacheEntryConfig()
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> CacheLookup:
        """Get a value from the cache."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return CacheLookup.miss()

            age = max(0.0, self._clock() - entry.created_at)
            if age > entry.config.max_age_seconds:
                del self._cache[key]
                return CacheLookup.miss()

            entry.hits += 1
            return CacheLookup(
                hit=True,
                data=entry.value,
                age_seconds=age,
                is_stale=age > entry.config.stale_after_seconds,
                metadata=dict(entry.metadata),
            )

    async def set(
        self,
        key: str,
        data: Any,
        config: CacheEntryConfig | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Set a value in the cache."""
        async with self._lock:
            if len(self._cache) >= self._max_entries and key not in self._cache:
                self._evict_one()

            self._cache[key] = CacheEntry(
                value=data,
                created_at=self._clock(),
                config=config or self._default_config,
                metadata=dict(metadata or {}),
                size_bytes=_estimate_bytes(data),
            )

    async def size(self) -> CacheSize:
        """Get current cache footprint."""
        async with self._lock:
            return CacheSize(
                bytes=sum(e.size_bytes for e in self._cache.values()),
                entries=len(self._cache),
            )

    async def delete(self, key: str) -> bool:
        """Delete a value from the cache."""
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            self._cache.clear()

    def _evict_one(self) -> None:
        """Evict the oldest entry."""
        if not self._cache:
            return
        oldest = min(self._cache, key=lambda k: self._cache[k].created_at)
        del self._cache[oldest]

    def __len__(self) -> int:
        return len(self._cache)
