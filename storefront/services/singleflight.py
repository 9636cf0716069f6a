"""
CoalescingFetcher - Cached fetch with at most one producer call per key.

When multiple callers ask for the same missing key simultaneously, only one
producer call is made. All callers await the same result (or the same
failure). Successful results are written to the ExpiringStore; failures are
never cached.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from storefront.services.cache import ExpiringStore

T = TypeVar("T")


@dataclass
class _Flight:
    """A pending producer call registered under a key."""

    task: "asyncio.Task[Any] | None" = None
    # Set when the key is invalidated while the producer is still running
    discarded: bool = False


class CoalescingFetcher:
    """
    Singleflight fetcher on top of an ExpiringStore.

    Usage:
        fetcher = CoalescingFetcher(store)

        products = await fetcher.fetch(
            key="products:v1:" + hash_params(query),
            ttl=timedelta(minutes=2),
            producer=lambda: client.get("/product", params=query),
        )
    """

    def __init__(self, store: ExpiringStore, debug: bool = False):
        self._store = store
        self._in_flight: dict[str, _Flight] = {}
        # Discarded producers that are still running
        self._detached: set[asyncio.Task[Any]] = set()
        self._debug = debug
        self._stats = FetchStats()

    async def fetch(
        self,
        key: str,
        ttl: timedelta | None,
        producer: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Return the cached value for key, or produce it exactly once.

        Args:
            key: Cache key
            ttl: Time to live for the produced value (None: store default)
            producer: Async function computing the value on a miss

        Returns:
            Cached value, or the result of the single in-flight producer call
        """
        value = self._store.get(key)
        if value is not None:
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")
            return value

        self._stats.misses += 1
        flight = self._in_flight.get(key)
        if flight is not None:
            self._stats.coalesced += 1
            self._log(f"JOIN: Waiting for in-flight producer: {key[:50]}")
        else:
            # Registered before any await
            flight = _Flight()
            flight.task = asyncio.create_task(self._produce(key, ttl, producer, flight))
            flight.task.add_done_callback(self._settled)
            self._in_flight[key] = flight
            self._log(f"NEW: Starting producer: {key[:50]}")

        # A cancelled caller must not cancel the shared call
        return await asyncio.shield(flight.task)

    async def _produce(
        self,
        key: str,
        ttl: timedelta | None,
        producer: Callable[[], Awaitable[T]],
        flight: _Flight,
    ) -> T:
        """Run the producer, store the result and clean up the registry."""
        try:
            value = await producer()
            if flight.discarded:
                self._log(f"DISCARD: {key[:50]} invalidated while in flight")
            elif value is not None:
                self._store.set(key, value, ttl)
            return value
        except Exception as e:
            logger.warning(f"Producer for '{key[:50]}' failed: {type(e).__name__}: {e}")
            raise
        finally:
            if self._in_flight.get(key) is flight:
                del self._in_flight[key]

    def discard(self, key: str) -> bool:
        """
        Detach an in-flight producer for key.

        Callers that already joined it still get its result, but the result
        is not stored and later fetches start a fresh producer.
        """
        flight = self._in_flight.pop(key, None)
        if flight is None:
            return False
        self._detach(flight)
        return True

    def discard_prefix(self, prefix: str) -> int:
        """Detach every in-flight producer under prefix. Returns how many."""
        keys = [key for key in self._in_flight if key.startswith(prefix)]
        for key in keys:
            self._detach(self._in_flight.pop(key))
        return len(keys)

    def _detach(self, flight: _Flight) -> None:
        flight.discarded = True
        if flight.task is not None and not flight.task.done():
            self._detached.add(flight.task)

    def _settled(self, task: "asyncio.Task[Any]") -> None:
        self._detached.discard(task)
        # Mark the failure retrieved even when every caller was cancelled
        if not task.cancelled():
            task.exception()

    def get_in_flight_count(self) -> int:
        """Get number of in-flight producers."""
        return len(self._in_flight)

    async def cancel_all(self) -> int:
        """Cancel all in-flight producers."""
        tasks = [f.task for f in self._in_flight.values() if f.task is not None]
        tasks.extend(self._detached)
        for task in tasks:
            task.cancel()
        self._in_flight.clear()
        self._detached.clear()
        count = len(tasks)
        if count:
            self._log(f"CANCEL_ALL: {count} producers cancelled")
        return count

    def get_stats(self) -> "FetchStats":
        """Get fetch statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CoalescingFetcher] {message}")


@dataclass
class FetchStats:
    """Statistics for cached fetches."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0  # misses that joined an in-flight producer
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "in_flight": self.in_flight,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
