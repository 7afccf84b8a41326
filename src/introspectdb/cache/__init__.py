"""TTL/LRU caching for IntrospectDB."""

from introspectdb.cache.manager import MISSING, CacheEntry, CacheManager

__all__ = [
    "MISSING",
    "CacheEntry",
    "CacheManager",
]
