"""Tests for the in-memory analysis cache."""

import pytest

from discubot.analysis.cache import CacheEntry, InMemoryAnalysisCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryAnalysisCache(max_entries=3, clock=clock)


class TestInMemoryAnalysisCache:
    """Tests for get/set/expiry behaviour."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, cache):
        await cache.set("k", {"summary": "s"}, ttl=60)
        assert await cache.get("k") == {"summary": "s"}

    @pytest.mark.asyncio
    async def test_missing_key(self, cache):
        assert await cache.get("nope") is None

    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss_and_removed(self, cache, clock):
        await cache.set("k", "v", ttl=10)
        clock.now += 10
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_entry_timestamps(self, cache):
        await cache.set("k", "v", ttl=30)
        assert cache.get_entry("k") == CacheEntry(data="v", timestamp=1000.0, expires_at=1030.0)

    @pytest.mark.asyncio
    async def test_lru_eviction(self, cache):
        for key in ("a", "b", "c"):
            await cache.set(key, key, ttl=60)
        await cache.get("a")
        await cache.set("d", "d", ttl=60)
        assert await cache.get("b") is None
        assert await cache.get("a") == "a"

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, cache):
        await cache.set("a", 1, ttl=60)
        await cache.set("b", 2, ttl=60)
        await cache.delete("a")
        assert await cache.get("a") is None
        await cache.clear()
        assert len(cache) == 0


class TestCacheMaintenance:
    """Tests for stats and cleanup_expired."""

    @pytest.mark.asyncio
    async def test_stats(self, cache, clock):
        await cache.set("short", 1, ttl=5)
        await cache.set("long", 2, ttl=500)
        clock.now += 10
        assert cache.stats().to_dict() == {"total": 2, "valid": 1, "expired": 1}

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, cache, clock):
        await cache.set("a", 1, ttl=5)
        await cache.set("b", 2, ttl=5)
        await cache.set("c", 3, ttl=500)
        clock.now += 6
        assert cache.cleanup_expired() == 2
        assert len(cache) == 1
        assert cache.cleanup_expired() == 0

    @pytest.mark.asyncio
    async def test_full_cache_drops_expired_before_live_entries(self, cache, clock):
        await cache.set("b", 2, ttl=60)
        await cache.set("a", 1, ttl=5)
        await cache.set("c", 3, ttl=60)
        clock.now += 6

        await cache.set("d", 4, ttl=60)

        assert len(cache) == 3
        assert cache.get_entry("a") is None
        assert await cache.get("b") == 2
