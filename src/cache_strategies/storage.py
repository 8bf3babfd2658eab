"""
Storage backends for the strategy engine.

Provides InMemCache (in-memory), RedisCache, HybridCache, and the CacheProvider protocol.
All backends are asynchronous and implement CacheProvider, so any of them can sit
under the strategies without changing caching logic.
"""

from __future__ import annotations

import logging
import pickle
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

try:
    import redis.asyncio as aioredis
except ImportError:
    aioredis = None  # type: ignore

logger = logging.getLogger(__name__)


# ============================================================================
# Cache Entry - Internal data structure
# ============================================================================


@dataclass
class CacheEntry:
    """Internal cache entry with TTL support."""

    value: Any
    expires_at: float  # Unix timestamp
    created_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


# ============================================================================
# Provider Protocol - Common interface for all backends
# ============================================================================


class CacheProvider(Protocol):
    """
    Protocol for asynchronous cache providers.

    The engine treats providers as opaque key-value stores. Eviction, replication
    and durability are the provider's business.

    Example:
        class MyProvider:
            async def get(self, key: str) -> Any | None: ...
            async def set(self, key: str, value: Any, ttl: float = 0) -> None: ...
            # ... implement other methods
    """

    async def get(self, key: str) -> Any | None:
        """Get value by key. Returns None if not found or expired."""
        ...

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        """Set value with TTL in seconds. ttl=0 means no expiration."""
        ...

    async def delete(self, key: str) -> None:
        """Delete key from cache."""
        ...

    async def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        ...


def validate_cache_provider(cache: Any) -> bool:
    """
    Validate that an object implements the CacheProvider protocol.

    `set_if_not_exists` is optional; strategies use it for locking when present.
    `remaining_ttl` is optional; HybridCache uses it to bound L1 copies.

    Returns:
        True if valid, False otherwise
    """
    required_methods = ["get", "set", "delete", "exists"]
    return all(
        hasattr(cache, method) and callable(getattr(cache, method))
        for method in required_methods
    )


# ============================================================================
# InMemCache - In-memory storage with TTL
# ============================================================================


class InMemCache:
    """
    In-memory provider with TTL support.

    Coroutine methods never suspend while holding the lock, so the lock only
    guards against the expiry sweeper running on a scheduler thread.

    Attributes:
        _data: internal entry map
        _lock: re-entrant lock to protect concurrent access
        _clock: time source in seconds
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def _live_entry(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if not entry.is_live(self._clock()):
                del self._data[key]
                return None
            return entry

    async def get(self, key: str) -> Any | None:
        """Return value if key still live, otherwise drop it."""
        entry = self._live_entry(key)
        return None if entry is None else entry.value

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        """Store value for ttl seconds (0=forever)."""
        now = self._clock()
        expires_at = now + ttl if ttl > 0 else float("inf")

        entry = CacheEntry(value=value, expires_at=expires_at, created_at=now)

        with self._lock:
            self._data[key] = entry

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        return self._live_entry(key) is not None

    async def remaining_ttl(self, key: str) -> float | None:
        """Seconds until key expires, inf if it never does, None if absent."""
        entry = self._live_entry(key)
        if entry is None:
            return None
        return entry.expires_at - self._clock()

    async def set_if_not_exists(self, key: str, value: Any, ttl: float) -> bool:
        """Atomic set if not exists. Returns True if set, False if exists."""
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            now = self._clock()
            expires_at = now + ttl if ttl > 0 else float("inf")
            self._data[key] = CacheEntry(value=value, expires_at=expires_at, created_at=now)
            return True

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count of removed entries."""
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._data.items() if not entry.is_live(now)
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ============================================================================
# RedisCache - Redis-backed storage
# ============================================================================


class RedisCache:
    """
    Redis-backed provider over an asyncio client.
    Supports TTL and atomic set-if-absent for revalidation locks.

    Example:
        import redis.asyncio as redis
        client = redis.Redis(host='localhost', port=6379)
        cache = RedisCache(client, prefix="app:")
        await cache.set("user:123", {"name": "John"}, ttl=60)
    """

    def __init__(self, redis_client: Any, prefix: str = ""):
        """
        Initialize Redis cache.

        Args:
            redis_client: redis.asyncio.Redis instance
            prefix: Key prefix for namespacing
        """
        if aioredis is None:
            raise ImportError("redis package required. Install: pip install redis")
        self.client = redis_client
        self.prefix = prefix

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _ttl_ms(ttl: float) -> int | None:
        return int(ttl * 1000) if ttl > 0 else None

    async def get(self, key: str) -> Any | None:
        try:
            data = await self.client.get(self._make_key(key))
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None
        if data is None:
            return None
        return pickle.loads(data)

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        try:
            data = pickle.dumps(value)
            await self.client.set(self._make_key(key), data, px=self._ttl_ms(ttl))
        except Exception as e:
            raise RuntimeError(f"Redis set failed: {e}") from e

    async def delete(self, key: str) -> None:
        await self.client.delete(self._make_key(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(self._make_key(key)))

    async def remaining_ttl(self, key: str) -> float | None:
        pttl = await self.client.pttl(self._make_key(key))
        # -2: missing, -1: no expiry
        if pttl == -2:
            return None
        if pttl == -1:
            return float("inf")
        return pttl / 1000.0

    async def set_if_not_exists(self, key: str, value: Any, ttl: float) -> bool:
        data = pickle.dumps(value)
        result = await self.client.set(
            self._make_key(key), data, px=self._ttl_ms(ttl), nx=True
        )
        return bool(result)


# ============================================================================
# HybridCache - L1 (memory) + L2 (distributed) cache
# ============================================================================


class HybridCache:
    """
    Two-level provider: L1 (InMemCache) + L2 (e.g. RedisCache).
    Fast reads from memory, shared state in L2.

    Example:
        cache = HybridCache(
            l1_cache=InMemCache(),
            l2_cache=RedisCache(client),
            l1_ttl=60
        )
    """

    def __init__(
        self,
        l1_cache: CacheProvider | None = None,
        l2_cache: CacheProvider | None = None,
        l1_ttl: float = 60,
    ):
        """
        Initialize hybrid cache.

        Args:
            l1_cache: L1 cache (memory), defaults to InMemCache
            l2_cache: L2 cache (distributed), required
            l1_ttl: TTL cap for L1 entries in seconds
        """
        self.l1 = l1_cache if l1_cache is not None else InMemCache()
        if l2_cache is None:
            raise ValueError("l2_cache is required for HybridCache")
        self.l2 = l2_cache
        self.l1_ttl = l1_ttl

    def _l1_ttl_for(self, ttl: float) -> float:
        return min(ttl, self.l1_ttl) if ttl > 0 else self.l1_ttl

    async def get(self, key: str) -> Any | None:
        value = await self.l1.get(key)
        if value is not None:
            return value

        value = await self.l2.get(key)
        if value is not None:
            l1_ttl = await self._l1_ttl_from_l2(key)
            if l1_ttl is not None:
                await self.l1.set(key, value, l1_ttl)

        return value

    async def _l1_ttl_from_l2(self, key: str) -> float | None:
        """L1 copy must not outlive the L2 entry. None means skip L1."""
        remaining_ttl = getattr(self.l2, "remaining_ttl", None)
        if remaining_ttl is None:
            return self.l1_ttl
        remaining = await remaining_ttl(key)
        if remaining is None or remaining <= 0:
            return None
        return min(remaining, self.l1_ttl)

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        await self.l1.set(key, value, self._l1_ttl_for(ttl))
        await self.l2.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        await self.l1.delete(key)
        await self.l2.delete(key)

    async def exists(self, key: str) -> bool:
        return await self.l1.exists(key) or await self.l2.exists(key)

    async def remaining_ttl(self, key: str) -> float | None:
        remaining_ttl = getattr(self.l2, "remaining_ttl", None)
        return None if remaining_ttl is None else await remaining_ttl(key)

    async def set_if_not_exists(self, key: str, value: Any, ttl: float) -> bool:
        """Atomic set if not exists (decided by L2 for consistency)."""
        l2_atomic = getattr(self.l2, "set_if_not_exists", None)
        if l2_atomic is None:
            if await self.l2.exists(key):
                return False
            await self.l2.set(key, value, ttl)
            success = True
        else:
            success = await l2_atomic(key, value, ttl)
        if success:
            await self.l1.set(key, value, self._l1_ttl_for(ttl))
        return success


# ============================================================================
# Expiry sweeping - shared scheduler for InMemCache cleanup
# ============================================================================


class _SharedScheduler:
    """
    Shared BackgroundScheduler instance - singleton for all sweep jobs.
    """

    _scheduler: ClassVar[BackgroundScheduler | None] = None
    _lock: ClassVar[threading.RLock] = threading.RLock()
    _started: ClassVar[bool] = False

    @classmethod
    def get_scheduler(cls) -> BackgroundScheduler:
        with cls._lock:
            if cls._scheduler is None:
                cls._scheduler = BackgroundScheduler(daemon=True)
            assert cls._scheduler is not None
        return cls._scheduler

    @classmethod
    def start(cls) -> None:
        with cls._lock:
            if not cls._started:
                cls.get_scheduler().start()
                cls._started = True
                logger.info("Shared BackgroundScheduler started")

    @classmethod
    def shutdown(cls, wait: bool = True) -> None:
        with cls._lock:
            if cls._started and cls._scheduler is not None:
                cls._scheduler.shutdown(wait=wait)
                cls._started = False
                cls._scheduler = None
                logger.info("Shared BackgroundScheduler stopped")


class ExpirySweeper:
    """
    Periodically drops expired InMemCache entries.

    Entries are already ignored once expired; sweeping only reclaims memory for
    keys that are never read again (revalidation locks, one-off keys).

    Example:
        cache = InMemCache()
        ExpirySweeper.register(cache, interval_seconds=60, job_id="sessions")
    """

    @classmethod
    def register(
        cls, cache: InMemCache, interval_seconds: float, job_id: str | None = None
    ) -> str:
        """Schedule sweeping for `cache`. Returns the scheduler job id."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        job_id = job_id or f"inmem-sweep-{id(cache)}"

        def sweep_job():
            try:
                removed = cache.cleanup_expired()
                if removed:
                    logger.debug(f"Swept {removed} expired entries ({job_id})")
            except Exception as e:
                logger.error(f"Expiry sweep failed for {job_id}: {e}", exc_info=True)

        _SharedScheduler.get_scheduler().add_job(
            sweep_job,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_id,
            replace_existing=True,
        )
        _SharedScheduler.start()
        return job_id

    @classmethod
    def unregister(cls, job_id: str) -> None:
        scheduler = _SharedScheduler.get_scheduler()
        if scheduler.get_job(job_id) is not None:
            scheduler.remove_job(job_id)

    @classmethod
    def shutdown(cls, wait: bool = True) -> None:
        """Stop the shared scheduler and every sweep job."""
        _SharedScheduler.shutdown(wait)
