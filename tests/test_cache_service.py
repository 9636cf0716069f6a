"""Tests for the cache service facade."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from storefront.services.cache_service import CacheService


@pytest.fixture
def cache(settings, clock):
    return CacheService(settings, clock=clock)


class TestCacheService:
    """Cached fetch plus invalidation through one object."""

    @pytest.mark.asyncio
    async def test_fetch_then_hit(self, cache):
        producer = AsyncMock(return_value=[{"id": 1}])

        first = await cache.fetch("products:v1:abc", timedelta(minutes=1), producer)
        second = await cache.fetch("products:v1:abc", timedelta(minutes=1), producer)

        assert first == second == [{"id": 1}]
        producer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_prefix_forces_refetch(self, cache):
        await cache.fetch("products:v1:a", None, AsyncMock(return_value="a1"))
        await cache.fetch("products:v1:b", None, AsyncMock(return_value="b1"))
        await cache.fetch("home:v1:x", None, AsyncMock(return_value="h1"))

        assert await cache.invalidate("products:v1:*") == 2

        assert await cache.fetch("products:v1:a", None, AsyncMock(return_value="a2")) == "a2"
        assert cache.get("home:v1:x") == "h1"

    @pytest.mark.asyncio
    async def test_invalidation_during_fetch_is_not_overwritten(self, cache):
        release = asyncio.Event()

        async def slow_producer():
            await release.wait()
            return "old"

        pending = asyncio.create_task(cache.fetch("wishlist:v1:user:1", None, slow_producer))
        await asyncio.sleep(0)

        await cache.invalidate("wishlist:v1:user:1")
        release.set()
        assert await pending == "old"

        # The stale in-flight result was not stored
        fresh = AsyncMock(return_value="new")
        assert await cache.fetch("wishlist:v1:user:1", None, fresh) == "new"
        fresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        await cache.fetch("products:v1:a", None, AsyncMock(return_value=1))
        await cache.fetch("products:v1:a", None, AsyncMock(return_value=1))

        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["max"] == 4
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["in_flight"] == 0
        assert stats["prefix_counts"] == {"products:v1": 1}
        assert stats["durable_invalidation"] is False

    def test_durable_mode_requires_session_factory(self, settings):
        settings = settings.model_copy(update={"cache_use_db_invalidation": True})
        with pytest.raises(ValueError):
            CacheService(settings)

    @pytest.mark.asyncio
    async def test_durable_mode_round_trip(self, settings, session_factory, clock):
        settings = settings.model_copy(update={"cache_use_db_invalidation": True})
        cache = CacheService(settings, session_factory, clock=clock)
        cache.set("products:v1:a", "cached")

        assert await cache.invalidate("products:v1:a") == 1
        assert cache.get("products:v1:a") == "cached"

        assert await cache.poller.poll_once() == 1
        assert cache.get("products:v1:a") is None
        await cache.close()
