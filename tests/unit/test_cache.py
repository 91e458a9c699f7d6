"""Unit tests for the recommendation cache store."""

import asyncio

import pytest

from gridpilot.errors import CacheCorruption
from gridpilot.services.recommendations.cache import CacheKey, CacheState, CacheStore

KEY = CacheKey("driver-1", "abc")
OTHER = CacheKey("driver-2", "abc")


def populate(cache: CacheStore, key: CacheKey, value) -> None:
    future, generation = cache.begin(key)
    cache.complete(key, future, generation, value)


class TestCacheLifecycle:
    """empty -> computing -> populated -> empty."""

    def test_begin_and_complete(self, clock):
        async def scenario():
            cache = CacheStore(ttl_seconds=900, clock=clock)
            assert cache.state(KEY) == CacheState.EMPTY

            future, generation = cache.begin(KEY)
            assert cache.state(KEY) == CacheState.COMPUTING
            assert cache.inflight(KEY) is future

            assert cache.complete(KEY, future, generation, "ranked") is True
            assert future.result() == "ranked"
            assert cache.state(KEY) == CacheState.POPULATED
            assert cache.inflight(KEY) is None
            assert cache.get(KEY).value == "ranked"

        asyncio.run(scenario())

    def test_ttl_boundary(self, clock):
        """An entry is served strictly before the TTL and never at it."""

        async def scenario():
            cache = CacheStore(ttl_seconds=900, clock=clock)
            populate(cache, KEY, "ranked")

            clock.advance(899.5)
            assert cache.get(KEY) is not None

            clock.advance(0.5)
            assert cache.state(KEY) == CacheState.EXPIRED
            assert cache.get(KEY) is None
            assert cache.state(KEY) == CacheState.EMPTY
            assert cache.stats.evictions == 1

        asyncio.run(scenario())

    def test_second_begin_is_corruption(self):
        async def scenario():
            cache = CacheStore()
            cache.begin(KEY)
            with pytest.raises(CacheCorruption):
                cache.begin(KEY)

        asyncio.run(scenario())

    def test_done_future_still_registered_is_corruption(self):
        async def scenario():
            cache = CacheStore()
            future, _ = cache.begin(KEY)
            future.set_result("orphan")
            with pytest.raises(CacheCorruption):
                cache.inflight(KEY)

            cache.reset(KEY)
            assert cache.inflight(KEY) is None
            assert cache.state(KEY) == CacheState.EMPTY

        asyncio.run(scenario())

    def test_failure_leaves_key_empty(self):
        async def scenario():
            cache = CacheStore()
            future, _ = cache.begin(KEY)
            cache.fail(KEY, future, RuntimeError("store down"))

            assert cache.state(KEY) == CacheState.EMPTY
            assert cache.stats.failures == 1
            with pytest.raises(RuntimeError):
                future.result()

        asyncio.run(scenario())

    def test_abandon_cancels_waiters(self):
        async def scenario():
            cache = CacheStore()
            future, _ = cache.begin(KEY)
            cache.abandon(KEY, future)
            assert future.cancelled()
            assert cache.state(KEY) == CacheState.EMPTY

        asyncio.run(scenario())


class TestGenerations:
    """Invalidation racing an in-flight computation."""

    def test_stale_completion_is_discarded(self):
        async def scenario():
            cache = CacheStore()
            future, generation = cache.begin(KEY)

            cache.invalidate(lambda key, entry: key == KEY)
            stored = cache.complete(KEY, future, generation, "stale")

            assert stored is False
            assert future.result() == "stale", "Waiters still get the result"
            assert cache.get(KEY) is None
            assert cache.stats.discarded == 1

        asyncio.run(scenario())

    def test_invalidate_counts_dropped_entries(self):
        async def scenario():
            cache = CacheStore()
            populate(cache, KEY, "a")
            populate(cache, OTHER, "b")

            dropped = cache.invalidate(lambda key, entry: key.driver_id == "driver-1")

            assert dropped == 1
            assert cache.keys() == [OTHER]
            assert cache.generation(KEY) == 1
            assert cache.generation(OTHER) == 0

        asyncio.run(scenario())

    def test_entry_ahead_of_key_is_corruption(self):
        async def scenario():
            cache = CacheStore()
            populate(cache, KEY, "a")
            cache._generations[KEY] = -1
            with pytest.raises(CacheCorruption):
                cache.get(KEY)

        asyncio.run(scenario())

    def test_clear_orphans_running_computations(self):
        async def scenario():
            cache = CacheStore()
            populate(cache, KEY, "a")
            future, generation = cache.begin(OTHER)
            cache.stats.hits = 5

            cache.clear()

            assert len(cache) == 0
            assert cache.stats.hits == 0
            assert cache.complete(OTHER, future, generation, "late") is False

        asyncio.run(scenario())


class TestMaintenance:
    def test_purge_expired(self, clock):
        async def scenario():
            cache = CacheStore(ttl_seconds=60, clock=clock)
            populate(cache, KEY, "old")
            clock.advance(30)
            populate(cache, OTHER, "new")
            clock.advance(30)

            assert cache.purge_expired() == 1
            assert cache.keys() == [OTHER]

        asyncio.run(scenario())

    def test_metrics_shape(self):
        async def scenario():
            cache = CacheStore(ttl_seconds=120)
            populate(cache, KEY, "a")
            cache.begin(OTHER)
            cache.stats.hits = 3
            cache.stats.misses = 1
            return cache.metrics()

        metrics = asyncio.run(scenario())
        assert metrics["size"] == 1
        assert metrics["in_flight"] == 1
        assert metrics["ttl_seconds"] == 120
        assert metrics["stats"]["hit_rate"] == pytest.approx(0.75)
        assert metrics["stats"]["computations"] == 2
