"""
Cache contract for clinic-resilience.

The resilience layer reads and writes query results through
:class:`QueryCache`; storage semantics belong to the application.
"""

from clinic_resilience.cache.backends import (
    CacheEntry,
    CacheEntryConfig,
    CacheLookup,
    CacheSize,
    MemoryQueryCache,
    QueryCache,
)
from clinic_resilience.cache.key import CacheKeyGenerator, QueryKey, canonicalize

__all__ = [
    "CacheEntry",
    "CacheEntryConfig",
    "CacheKeyGenerator",
    "CacheLookup",
    "CacheSize",
    "MemoryQueryCache",
    "QueryCache",
    "QueryKey",
    "canonicalize",
]
