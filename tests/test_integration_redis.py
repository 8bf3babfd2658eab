"""
Integration tests for Redis-backed strategies.
Uses testcontainers-python to spin up a real Redis instance for testing.
"""

import asyncio

import pytest
import pytest_asyncio

try:
    import redis.asyncio as aioredis
    from testcontainers.redis import RedisContainer

    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False

from cache_strategies import (
    CacheOperationOptions,
    CachedEnvelope,
    CacheStrategyManager,
    HybridCache,
    InMemCache,
    RedisCache,
    revalidation_lock_key,
)


@pytest.fixture(scope="module")
def redis_container():
    """Fixture to start a Redis container for the entire test module."""
    if not HAS_REDIS:
        pytest.skip("testcontainers[redis] not installed")

    try:
        container = RedisContainer(image="redis:7-alpine")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker unavailable: {e}")
    yield container
    container.stop()


@pytest_asyncio.fixture
async def redis_client(redis_container):
    """Fixture to create an asyncio Redis client connected to the container."""
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    client = aioredis.Redis(host=host, port=int(port))
    await client.ping()
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


class TestRedisCache:
    """Test RedisCache backend directly."""

    @pytest.mark.asyncio
    async def test_redis_cache_basic_set_get(self, redis_client):
        cache = RedisCache(redis_client, prefix="test:")

        await cache.set("key1", {"data": "value1"}, ttl=60)
        assert await cache.get("key1") == {"data": "value1"}

    @pytest.mark.asyncio
    async def test_redis_cache_ttl_expiration(self, redis_client):
        """Test that Redis cache respects TTL."""
        cache = RedisCache(redis_client, prefix="test:")

        await cache.set("expire_me", "value", ttl=0.5)
        assert await cache.get("expire_me") == "value"

        await asyncio.sleep(0.6)
        assert await cache.get("expire_me") is None

    @pytest.mark.asyncio
    async def test_redis_cache_delete(self, redis_client):
        cache = RedisCache(redis_client, prefix="test:")

        await cache.set("key", "value", ttl=60)
        assert await cache.exists("key")

        await cache.delete("key")
        assert not await cache.exists("key")

    @pytest.mark.asyncio
    async def test_redis_cache_set_if_not_exists(self, redis_client):
        """Test atomic set_if_not_exists operation."""
        cache = RedisCache(redis_client, prefix="test:")

        assert await cache.set_if_not_exists("atomic_key", "value1", ttl=60) is True
        assert await cache.set_if_not_exists("atomic_key", "value2", ttl=60) is False
        assert await cache.get("atomic_key") == "value1"

    @pytest.mark.asyncio
    async def test_redis_cache_remaining_ttl(self, redis_client):
        cache = RedisCache(redis_client, prefix="test:")

        await cache.set("ttl_key", "value", ttl=60)
        await cache.set("forever_key", "value")

        assert 59 <= await cache.remaining_ttl("ttl_key") <= 60
        assert await cache.remaining_ttl("forever_key") == float("inf")
        assert await cache.remaining_ttl("missing_key") is None

    @pytest.mark.asyncio
    async def test_redis_cache_envelope_roundtrip(self, redis_client):
        """Test envelopes survive pickling through Redis."""
        cache = RedisCache(redis_client, prefix="test:")
        envelope = CachedEnvelope.wrap({"payload": True})

        await cache.set("entry_key", envelope.to_stored(), ttl=60)

        loaded = CachedEnvelope.from_stored(await cache.get("entry_key"))
        assert loaded == envelope


class TestStrategiesWithRedis:
    """Strategy manager over a Redis provider."""

    @pytest.mark.asyncio
    async def test_swr_fresh_hit(self, redis_client):
        manager = CacheStrategyManager.default(RedisCache(redis_client, prefix="swr:"))
        calls = {"n": 0}

        async def fetch():
            calls["n"] += 1
            return {"count": calls["n"]}

        options = {"ttlSeconds": 60, "staleTimeSeconds": 30}
        assert (await manager.execute("product:1", fetch, options))["count"] == 1
        assert (await manager.execute("product:1", fetch, options))["count"] == 1
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_swr_stale_serve_releases_lock(self, redis_client):
        """Test stale serving and lock cleanup against a real Redis."""
        cache = RedisCache(redis_client, prefix="swr:")
        manager = CacheStrategyManager.default(cache)
        calls = {"n": 0}

        async def fetch():
            calls["n"] += 1
            return {"count": calls["n"]}

        options = CacheOperationOptions(ttl_seconds=5, stale_time_seconds=0.2)
        await manager.execute("data:test", fetch, options)
        await asyncio.sleep(0.3)

        assert (await manager.execute("data:test", fetch, options))["count"] == 1
        await manager.join()

        assert calls["n"] == 2
        assert not await cache.exists(revalidation_lock_key("data:test"))
        assert (await manager.execute("data:test", fetch, options))["count"] == 2

    @pytest.mark.asyncio
    async def test_phi_ttl_applied(self, redis_client):
        """Test PHI entries carry the compliance-tier TTL in Redis."""
        manager = CacheStrategyManager.default(RedisCache(redis_client, prefix="phi:"))

        async def fetch():
            return {"mrn": "42"}

        await manager.execute(
            "chart:42", fetch, {"containsPHI": True, "complianceLevel": "restricted"}
        )
        await manager.join()

        ttl = await redis_client.ttl("phi:chart:42")
        assert 890 <= ttl <= 900


class TestHybridCacheWithRedis:
    """Test HybridCache (L1 memory + L2 Redis) backend."""

    @pytest.mark.asyncio
    async def test_hybridcache_basic_flow(self, redis_client):
        cache = HybridCache(
            l1_cache=InMemCache(),
            l2_cache=RedisCache(redis_client, prefix="hybrid:"),
            l1_ttl=1,
        )

        await cache.set("key", {"data": "value"}, ttl=60)
        assert await cache.get("key") == {"data": "value"}
        assert await cache.exists("key")

        await cache.delete("key")
        assert not await cache.exists("key")

    @pytest.mark.asyncio
    async def test_hybridcache_l1_bounded_by_redis_ttl(self, redis_client):
        """Test an L2 hit is not kept in L1 past the Redis expiry."""
        l1 = InMemCache()
        cache = HybridCache(
            l1_cache=l1, l2_cache=RedisCache(redis_client, prefix="hybrid:"), l1_ttl=60
        )

        await cache.l2.set("short", "value", ttl=0.5)
        assert await cache.get("short") == "value"
        assert await l1.remaining_ttl("short") <= 0.5

        await asyncio.sleep(0.6)
        assert await cache.get("short") is None

    @pytest.mark.asyncio
    async def test_hybridcache_lock_uses_redis(self, redis_client):
        """Test set_if_not_exists is decided by the shared L2."""
        l2 = RedisCache(redis_client, prefix="hybrid:")
        first = HybridCache(l1_cache=InMemCache(), l2_cache=l2)
        second = HybridCache(l1_cache=InMemCache(), l2_cache=l2)

        assert await first.set_if_not_exists("lock", True, 30) is True
        assert await second.set_if_not_exists("lock", True, 30) is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
