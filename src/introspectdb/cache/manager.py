"""In-process TTL/LRU cache for IntrospectDB.

Used internally to memoize schema discovery and exposed to callers for
caching their own computed results. Keys are plain strings; namespaced keys
such as ``"app:users:42"`` can be dropped in bulk with glob patterns.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from introspectdb.core.types import CacheConfig, CacheStats
from introspectdb.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for "no entry", distinct from a stored None."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass
class CacheEntry:
    """A stored value with its timing metadata."""

    value: Any
    inserted_at: float
    ttl: float
    last_access: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class CacheManager:
    """Thread-safe cache with per-entry TTL and LRU (or FIFO) eviction.

    Expiry is lazy: an expired entry reads as absent immediately, and is
    physically removed either on that read or by ``clean_expired()``.
    All counters are updated under the same lock as the read or write they
    belong to.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        **overrides: Any,
    ) -> None:
        """Initialize the cache.

        Args:
            config: Cache configuration (defaults: 1000 entries, 300s TTL, LRU)
            clock: Monotonic time source in seconds (injectable for tests)
            **overrides: Individual config fields, e.g. ``max_size=10``

        Raises:
            ConfigurationError: If a limit is invalid
        """
        self._config = self._build_config(config or CacheConfig(), overrides)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @staticmethod
    def _build_config(base: CacheConfig, changes: dict[str, Any]) -> CacheConfig:
        if not changes:
            return base
        try:
            return CacheConfig(**{**base.model_dump(), **changes})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid cache configuration: {e}", changes) from e

    @property
    def config(self) -> CacheConfig:
        return self._config

    def update_config(self, **changes: Any) -> CacheConfig:
        """Update limits; shrinking ``max_size`` evicts immediately.

        Raises:
            ConfigurationError: If a new value is invalid
        """
        with self._lock:
            self._config = self._build_config(self._config, changes)
            self._evict_overflow()
            return self._config

    # === Core operations ===

    def get(self, key: str, default: Any = MISSING) -> Any:
        """Return the value for ``key`` or ``default`` if absent or expired.

        Never raises for a missing key. Absent and expired reads count as a
        miss; a hit refreshes recency under the LRU strategy.
        """
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return default

            entry.last_access = now
            if self._config.strategy == "lru":
                self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` (None included) under ``key``.

        Args:
            key: Cache key
            value: Any value; None is a legitimate "present but empty" entry
            ttl: Seconds to live; defaults to the configured TTL
        """
        effective_ttl = self._config.ttl if ttl is None else ttl
        if effective_ttl <= 0:
            raise ConfigurationError(f"TTL must be positive, got {ttl}", {"key": key})

        with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = CacheEntry(
                value=value, inserted_at=now, ttl=effective_ttl, last_access=now
            )
            self._evict_overflow()

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: float | None = None) -> Any:
        """Return the cached value, computing and storing it on a miss.

        The factory runs under the cache lock so concurrent callers compute
        a key at most once.
        """
        with self._lock:
            value = self.get(key)
            if value is not MISSING:
                return value
            value = factory()
            self.set(key, value, ttl)
            return value

    def has(self, key: str) -> bool:
        """Whether ``key`` holds a live entry. Does not touch hit/miss counters."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                return False
            return True

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if a live entry was removed."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._expirations += 1
                return False
            return True

    def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob pattern such as ``"app:users:*"``.

        Returns:
            Number of entries removed
        """
        with self._lock:
            doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries matching '{pattern}'")
        return len(doomed)

    def clear(self) -> None:
        """Remove all entries and reset counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._expirations = 0

    def clean_expired(self) -> int:
        """Physically remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
            return len(expired)

    def close(self) -> None:
        self.clear()

    # === Introspection ===

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Live keys from least to most recently used."""
        with self._lock:
            now = self._clock()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def get_stats(self) -> CacheStats:
        """Return a snapshot of counters."""
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                size=len(self._entries),
                max_size=self._config.max_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                hit_rate=self._hits / total if total else 0.0,
            )

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def _evict_overflow(self) -> None:
        # Front of the OrderedDict is least recently used (LRU) or oldest
        # inserted (FIFO, since reads do not reorder).
        while len(self._entries) > self._config.max_size:
            key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Evicted cache entry '{key}'")
