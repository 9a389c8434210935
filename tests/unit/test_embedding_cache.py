"""Unit tests for the embedding cache."""

import asyncio

import pytest

from tandem.services.embedding_cache import EmbeddingCache


class CountingCompute:
    """Compute function that counts calls and can be held open."""

    def __init__(self, vector=None, fail=False):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.fail = fail
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.fail:
            raise RuntimeError("backend exploded")
        return self.vector


async def ready(vector):
    return vector


class TestEmbeddingCache:
    """Tests for EmbeddingCache."""

    def test_content_hash_depends_on_model(self):
        assert EmbeddingCache.content_hash("hello") == EmbeddingCache.content_hash("hello")
        assert EmbeddingCache.content_hash("hello", "m1") != EmbeddingCache.content_hash("hello", "m2")

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            EmbeddingCache(max_entries=0)

    @pytest.mark.asyncio
    async def test_concurrent_misses_compute_once(self):
        cache = EmbeddingCache(max_entries=8)
        compute = CountingCompute()

        waiters = [asyncio.create_task(cache.get_or_compute("h1", compute)) for _ in range(10)]
        await asyncio.sleep(0)
        compute.release.set()
        results = await asyncio.gather(*waiters)

        assert compute.calls == 1
        assert all(result == [0.1, 0.2, 0.3] for result in results)
        assert cache.stats.computes == 1
        assert cache.stats.misses == 10

    @pytest.mark.asyncio
    async def test_hit_returns_copy(self):
        cache = EmbeddingCache(max_entries=8)
        first = await cache.get_or_compute("h1", lambda: ready([1.0, 2.0]))
        first.append(99.0)

        second = await cache.get_or_compute("h1", lambda: ready([5.0]))
        assert second == [1.0, 2.0]
        assert cache.stats.hits == 1

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self):
        cache = EmbeddingCache(max_entries=8)
        failing = CountingCompute(fail=True)
        failing.release.set()

        waiters = [asyncio.create_task(cache.get_or_compute("h1", failing)) for _ in range(3)]
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(result, RuntimeError) for result in results)
        assert failing.calls == 1
        assert "h1" not in cache
        assert cache.stats.failures == 1

        assert await cache.get_or_compute("h1", lambda: ready([7.0])) == [7.0]

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        cache = EmbeddingCache(max_entries=2)
        await cache.get_or_compute("a", lambda: ready([1.0]))
        await cache.get_or_compute("b", lambda: ready([2.0]))
        await cache.get_or_compute("a", lambda: ready([0.0]))
        await cache.get_or_compute("c", lambda: ready([3.0]))

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.stats.evictions == 1

    @pytest.mark.asyncio
    async def test_byte_budget_eviction(self):
        cache = EmbeddingCache(max_entries=100, max_bytes=64)
        await cache.get_or_compute("a", lambda: ready([1.0] * 4))
        await cache.get_or_compute("b", lambda: ready([1.0] * 4))
        await cache.get_or_compute("c", lambda: ready([1.0] * 4))

        assert len(cache) == 2
        assert cache.total_bytes == 64
        assert cache.peek("a") is None

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_computation(self):
        cache = EmbeddingCache(max_entries=8)
        compute = CountingCompute()

        first = asyncio.create_task(cache.get_or_compute("h1", compute))
        second = asyncio.create_task(cache.get_or_compute("h1", compute))
        await asyncio.sleep(0)
        first.cancel()
        compute.release.set()

        assert await second == [0.1, 0.2, 0.3]
        assert compute.calls == 1
        assert cache.peek("h1") == [0.1, 0.2, 0.3]
