"""
ExpiringStore - Bounded in-memory cache with per-entry TTL and LRU eviction.

Features:
- Capacity bound enforced after every write (least-recently-touched evicted)
- Per-entry TTL, with a zero TTL meaning the entry never expires
- Lazy expiry: entries are checked when read, there is no background sweep
- Reads and writes both refresh recency

All operations are synchronous. Callers on the event loop therefore see a
consistent store between suspension points without any locking.
"""

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with its expiry deadline."""

    value: T
    expires_at: float | None  # None: never expires

    def is_expired(self, now: float) -> bool:
        """Check if entry is past its deadline."""
        return self.expires_at is not None and now > self.expires_at


class ExpiringStore:
    """
    Bounded key/value store with TTL and access-order eviction.

    Usage:
        store = ExpiringStore(max_size=256, default_ttl=timedelta(minutes=5))

        store.set("products:v1:abc", data)
        store.set("config:v1:site", cfg, ttl=timedelta(0))  # never expires
        value = store.get("products:v1:abc")
    """

    def __init__(
        self,
        max_size: int = 256,
        default_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._memory: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    def get(self, key: str) -> Any | None:
        """
        Get value from the store.

        Returns the value if present and not expired, None otherwise. A hit
        moves the entry to the most-recently-used position.
        """
        entry = self._memory.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._memory[key]
            self._stats.expirations += 1
            self._log(f"EXPIRED: {key[:50]}")
            return None

        self._memory.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """
        Set value in the store.

        Args:
            key: Cache key
            value: Value to store
            ttl: Time to live; None uses the store default, zero never expires
        """
        ttl = self._default_ttl if ttl is None else ttl
        seconds = ttl.total_seconds()
        if seconds < 0:
            raise ValueError("ttl must not be negative")
        expires_at = None if seconds == 0 else self._clock() + seconds

        # Overwrite resets recency
        self._memory.pop(key, None)
        self._memory[key] = CacheEntry(value=value, expires_at=expires_at)
        self._log(f"SET: {key[:50]} (TTL: {seconds}s)")

        if len(self._memory) > self._max_size:
            self._evict_oldest()

    def delete(self, key: str) -> bool:
        """Delete a specific key. Returns True if it was present."""
        if self._memory.pop(key, None) is None:
            return False
        self._log(f"DELETE: {key[:50]}")
        return True

    def keys(self) -> list[str]:
        """Snapshot of keys, least recently touched first."""
        return list(self._memory.keys())

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        count = len(self._memory)
        self._memory.clear()
        self._log(f"CLEAR: {count} entries removed")
        return count

    def __len__(self) -> int:
        return len(self._memory)

    def __contains__(self, key: str) -> bool:
        return key in self._memory

    def _evict_oldest(self) -> None:
        """Evict the least-recently-touched entry."""
        oldest_key, _ = self._memory.popitem(last=False)
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def prefix_counts(self) -> dict[str, int]:
        """Count keys grouped by their first two colon-separated segments."""
        counts: dict[str, int] = {}
        for key in self._memory:
            parts = key.split(":")
            prefix = f"{parts[0]}:{parts[1]}" if len(parts) >= 2 else parts[0]
            counts[prefix] = counts.get(prefix, 0) + 1
        return counts

    def get_stats(self) -> "CacheStats":
        """Get store statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ExpiringStore] {message}")


@dataclass
class CacheStats:
    """Store statistics."""

    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "evictions": self.evictions,
            "expirations": self.expirations,
            "size": self.size,
            "max_size": self.max_size,
        }


def hash_params(params: Any) -> str:
    """Short stable fingerprint of a parameter mapping, for building cache keys."""
    try:
        raw = json.dumps(params, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(params)[:64]
    return hashlib.sha1(raw.encode()).hexdigest()[:12]
