"""Tests for the coalescing fetcher."""

import asyncio
import gc
from datetime import timedelta

import pytest

from storefront.services.cache import ExpiringStore
from storefront.services.singleflight import CoalescingFetcher


class CountingProducer:
    """Producer that blocks until released and counts its invocations."""

    def __init__(self, value="value", error: Exception | None = None):
        self.value = value
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.value


class TestCoalescingFetcher:
    """Singleflight guarantees."""

    @pytest.fixture
    def store(self, clock):
        return ExpiringStore(max_size=10, clock=clock)

    @pytest.fixture
    def fetcher(self, store):
        return CoalescingFetcher(store)

    @pytest.mark.asyncio
    async def test_concurrent_misses_call_producer_once(self, fetcher, store):
        producer = CountingProducer(value={"items": [1, 2]})

        tasks = [
            asyncio.create_task(fetcher.fetch("products:v1:x", timedelta(seconds=30), producer))
            for _ in range(10)
        ]
        await asyncio.sleep(0)
        assert fetcher.get_in_flight_count() == 1

        producer.release.set()
        results = await asyncio.gather(*tasks)

        assert producer.calls == 1
        assert all(r == {"items": [1, 2]} for r in results)
        assert store.get("products:v1:x") == {"items": [1, 2]}
        assert fetcher.get_in_flight_count() == 0

        stats = fetcher.get_stats()
        assert stats.misses == 10
        assert stats.coalesced == 9

    @pytest.mark.asyncio
    async def test_cached_value_skips_producer(self, fetcher, store):
        store.set("k", "cached")
        producer = CountingProducer()

        assert await fetcher.fetch("k", None, producer) == "cached"
        assert producer.calls == 0
        assert fetcher.get_stats().hits == 1

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller_and_is_not_cached(self, fetcher, store):
        producer = CountingProducer(error=RuntimeError("upstream down"))

        tasks = [
            asyncio.create_task(fetcher.fetch("k", None, producer)) for _ in range(3)
        ]
        await asyncio.sleep(0)
        producer.release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert producer.calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert "k" not in store
        assert fetcher.get_in_flight_count() == 0

        # Next call runs the producer again
        retry = CountingProducer(value="ok")
        retry.release.set()
        assert await fetcher.fetch("k", None, retry) == "ok"
        assert retry.calls == 1

    @pytest.mark.asyncio
    async def test_ttl_passed_to_store(self, fetcher, store, clock):
        producer = CountingProducer(value="v")
        producer.release.set()
        await fetcher.fetch("k", timedelta(seconds=5), producer)

        clock.advance(6)
        assert store.get("k") is None

    @pytest.mark.asyncio
    async def test_discarded_flight_does_not_write(self, fetcher, store):
        producer = CountingProducer(value="stale")
        task = asyncio.create_task(fetcher.fetch("k", None, producer))
        await asyncio.sleep(0)

        assert fetcher.discard("k") is True
        producer.release.set()

        assert await task == "stale"
        assert "k" not in store

    @pytest.mark.asyncio
    async def test_discard_prefix(self, fetcher, store):
        producer = CountingProducer()
        tasks = [
            asyncio.create_task(fetcher.fetch(key, None, producer))
            for key in ("products:v1:a", "products:v1:b", "home:v1:a")
        ]
        await asyncio.sleep(0)

        assert fetcher.discard_prefix("products:v1:") == 2
        producer.release.set()
        await asyncio.gather(*tasks)

        assert store.keys() == ["home:v1:a"]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_call(self, fetcher):
        producer = CountingProducer(value="v")
        first = asyncio.create_task(fetcher.fetch("k", None, producer))
        second = asyncio.create_task(fetcher.fetch("k", None, producer))
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        producer.release.set()

        assert await second == "v"
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_none_result_is_not_cached(self, fetcher, store):
        async def producer():
            return None

        assert await fetcher.fetch("k", None, producer) is None
        assert "k" not in store

    @pytest.mark.asyncio
    async def test_fetch_after_discard_starts_fresh_producer(self, fetcher, store):
        stale = CountingProducer(value="stale")
        joined = asyncio.create_task(fetcher.fetch("k", None, stale))
        await asyncio.sleep(0)

        fetcher.discard("k")
        assert fetcher.get_in_flight_count() == 0

        fresh = CountingProducer(value="fresh")
        fresh.release.set()
        assert await fetcher.fetch("k", None, fresh) == "fresh"
        assert fresh.calls == 1

        # The detached producer finishing later leaves the fresh value alone
        stale.release.set()
        assert await joined == "stale"
        assert store.get("k") == "fresh"

    @pytest.mark.asyncio
    async def test_discard_prefix_detaches_flights(self, fetcher):
        stale = CountingProducer(value="stale")
        joined = asyncio.create_task(fetcher.fetch("products:v1:a", None, stale))
        await asyncio.sleep(0)

        fetcher.discard_prefix("products:v1:")

        fresh = CountingProducer(value="fresh")
        fresh.release.set()
        assert await fetcher.fetch("products:v1:a", None, fresh) == "fresh"

        stale.release.set()
        await joined

    @pytest.mark.asyncio
    async def test_cancel_all_reaches_detached_producers(self, fetcher):
        stale = CountingProducer()
        joined = asyncio.create_task(fetcher.fetch("k", None, stale))
        await asyncio.sleep(0)
        fetcher.discard("k")

        assert await fetcher.cancel_all() == 1
        with pytest.raises(asyncio.CancelledError):
            await joined

    @pytest.mark.asyncio
    async def test_failure_with_no_callers_left_is_not_reported(self, fetcher):
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            producer = CountingProducer(error=RuntimeError("upstream down"))
            caller = asyncio.create_task(fetcher.fetch("k", None, producer))
            await asyncio.sleep(0)

            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            producer.release.set()
            while fetcher.get_in_flight_count():
                await asyncio.sleep(0)
            await asyncio.sleep(0)
            del caller
            gc.collect()

            assert not [c for c in reported if "never retrieved" in c.get("message", "")]
        finally:
            loop.set_exception_handler(None)
