"""
CacheService - The "cached fetch" contract used by route handlers.

Wires together:
- ExpiringStore for values
- CoalescingFetcher for one producer call per key
- LocalInvalidator, or DurableInvalidator + InvalidationPoller when
  CACHE_USE_DB_INVALIDATION is enabled
"""

import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.services.cache import ExpiringStore
from storefront.services.invalidation import (
    DurableInvalidator,
    InvalidationPoller,
    LocalInvalidator,
)
from storefront.services.singleflight import CoalescingFetcher
from storefront.settings import Settings, global_settings

T = TypeVar("T")


class CacheService:
    """
    Process-wide cache facade.

    Usage:
        cache = CacheService(settings)

        key = f"products:v1:{hash_params(query)}"
        products = await cache.fetch(key, timedelta(minutes=2), load_products)

        # after a write that changes products
        await cache.invalidate("products:v1:", prefix=True)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings = settings or global_settings
        self.store = ExpiringStore(
            max_size=settings.cache_max,
            default_ttl=timedelta(seconds=settings.cache_default_ttl_seconds),
            clock=clock,
            debug=settings.cache_debug,
        )
        self.fetcher = CoalescingFetcher(self.store, debug=settings.cache_debug)
        self.local = LocalInvalidator(self.store, self.fetcher)

        self.durable: DurableInvalidator | None = None
        self.poller: InvalidationPoller | None = None
        if settings.cache_use_db_invalidation:
            if session_factory is None:
                raise ValueError(
                    "CACHE_USE_DB_INVALIDATION requires a database session factory"
                )
            self.durable = DurableInvalidator(
                session_factory, retries=settings.database_retries
            )
            self.poller = InvalidationPoller(
                self.local,
                session_factory,
                interval_seconds=settings.cache_invalidation_poll_seconds,
                batch_size=settings.cache_invalidation_batch_size,
            )

    @property
    def durable_mode(self) -> bool:
        return self.durable is not None

    async def fetch(
        self,
        key: str,
        ttl: timedelta | None,
        producer: Callable[[], Awaitable[T]],
    ) -> T:
        """Cached fetch with request coalescing (see CoalescingFetcher.fetch)."""
        return await self.fetcher.fetch(key, ttl, producer)

    def get(self, key: str) -> Any | None:
        return self.store.get(key)

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        self.store.set(key, value, ttl)

    def delete(self, key: str) -> None:
        self.fetcher.discard(key)
        self.store.delete(key)

    async def invalidate(
        self,
        cache_key: str,
        resource: str | None = None,
        prefix: bool = False,
    ) -> int:
        """
        Invalidate a key (or a prefix) through the configured channel.

        Local mode removes entries immediately. Durable mode records the
        invalidation; every process applies it on its next poll.
        """
        if self.durable is not None:
            return await self.durable.invalidate(cache_key, resource, prefix)
        return await self.local.invalidate(cache_key, resource, prefix)

    def start(self) -> None:
        """Start the invalidation poller when durable mode is enabled."""
        if self.poller is not None:
            self.poller.start()

    async def close(self) -> None:
        """Stop polling and cancel in-flight producers."""
        if self.poller is not None:
            self.poller.stop()
        await self.fetcher.cancel_all()

    def stats(self) -> dict[str, Any]:
        """Diagnostics: sizes, counters and key counts per namespace."""
        fetch_stats = self.fetcher.get_stats()
        store_stats = self.store.get_stats()
        return {
            "size": store_stats.size,
            "max": store_stats.max_size,
            "ttl_seconds": self.store.default_ttl.total_seconds(),
            "keys": self.store.keys(),
            "hits": fetch_stats.hits,
            "misses": fetch_stats.misses,
            "coalesced": fetch_stats.coalesced,
            "in_flight": fetch_stats.in_flight,
            "hit_rate": fetch_stats.to_dict()["hit_rate"],
            "evictions": store_stats.evictions,
            "expirations": store_stats.expirations,
            "prefix_counts": self.store.prefix_counts(),
            "durable_invalidation": self.durable_mode,
            "poller_running": self.poller.is_running() if self.poller else False,
        }


# Global cache instance
_global_cache: CacheService | None = None


def get_cache_service() -> CacheService:
    """Get the global cache service instance (local invalidation unless configured)."""
    global _global_cache
    if _global_cache is None:
        session_factory = None
        if global_settings.cache_use_db_invalidation:
            from storefront.datastore.engine import get_session_factory

            session_factory = get_session_factory()
        _global_cache = CacheService(global_settings, session_factory)
        logger.debug("Cache service created")
    return _global_cache


def set_cache_service(service: CacheService | None) -> None:
    """Install (or clear) the global cache service instance."""
    global _global_cache
    _global_cache = service


async def close_cache_service() -> None:
    """Close the global cache service."""
    global _global_cache
    if _global_cache:
        await _global_cache.close()
        _global_cache = None
