"""
Cache strategies: named policies that decide how a value is served and refreshed.

Provides:
- StandardCacheStrategy: plain cache-aside fallback
- SWRCacheStrategy: stale-while-revalidate with a lock-guarded background refresh
- PHICacheStrategy: audited, compliance-tiered refresh-on-read for sensitive data
- EmergencyCacheStrategy: always fetch, never serve from cache
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from typing import Any, Awaitable, Callable, ClassVar, Coroutine, TypeVar

from .audit import AuditSink, logging_audit_sink
from .options import (
    CacheOperationOptions,
    CachedEnvelope,
    ComplianceLevel,
    revalidation_lock_key,
)
from .storage import CacheProvider, validate_cache_provider

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fetch = Callable[[], Awaitable[T]]

LOCK_TTL_SECONDS = 30
LOCK_RETRY_DELAY_SECONDS = 0.1
EMERGENCY_TTL_SECONDS = 300

PHI_TTL_SECONDS: dict[ComplianceLevel, int] = {
    ComplianceLevel.RESTRICTED: 900,
    ComplianceLevel.SENSITIVE: 1800,
}
DEFAULT_PHI_TTL_SECONDS = 3600


# ============================================================================
# CacheStrategy - common interface
# ============================================================================


class CacheStrategy:
    """
    A named caching policy.

    Subclasses implement `should_use` (does this policy claim the operation?)
    and `execute` (serve the value through the provider). The base class keeps
    track of fire-and-forget work so it can be awaited on shutdown.
    """

    name: ClassVar[str] = "base"

    def __init__(self, cache: CacheProvider, clock: Callable[[], float] = time.time):
        if not validate_cache_provider(cache):
            raise TypeError(f"{type(cache).__name__} does not implement CacheProvider")
        self.cache = cache
        self.clock = clock
        self._background: set[asyncio.Task] = set()

    def should_use(self, options: CacheOperationOptions) -> bool:
        raise NotImplementedError

    async def execute(
        self, key: str, fetch: Fetch[T], options: CacheOperationOptions
    ) -> T:
        raise NotImplementedError

    @property
    def pending(self) -> int:
        """Number of background tasks still running."""
        return len(self._background)

    async def join(self) -> None:
        """Wait for all background work, including work scheduled meanwhile."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _read_envelope(self, key: str) -> CachedEnvelope[Any] | None:
        """Best-effort read: provider errors count as a miss."""
        try:
            raw = await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None
        return CachedEnvelope.from_stored(raw)

    async def _write_envelope(self, key: str, value: Any, ttl: float) -> None:
        envelope = CachedEnvelope.wrap(value, self.clock)
        await self.cache.set(key, envelope.to_stored(), ttl)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


# ============================================================================
# StandardCacheStrategy - cache-aside fallback
# ============================================================================


class StandardCacheStrategy(CacheStrategy):
    """Cache-aside: hit returns the stored value, miss fetches and stores it."""

    name = "standard"

    def should_use(self, options: CacheOperationOptions) -> bool:
        return True

    async def execute(
        self, key: str, fetch: Fetch[T], options: CacheOperationOptions
    ) -> T:
        if not options.force_refresh:
            cached_value = await self.cache.get(key)
            if cached_value is not None:
                logger.debug(f"Cache HIT: {key}")
                return cached_value

        logger.debug(f"Cache MISS: {key}")
        result = await fetch()
        # None is indistinguishable from a miss on read
        if result is not None:
            await self.cache.set(key, result, options.ttl)
        return result


# ============================================================================
# SWRCacheStrategy - stale-while-revalidate
# ============================================================================


class SWRCacheStrategy(CacheStrategy):
    """
    Serve cached data immediately and refresh it in the background once stale.

    Entries younger than the stale time are served as-is. Entries between the
    stale time and the TTL are served while one background task refreshes them;
    the `<key>:revalidating` lock keeps concurrent readers from starting more.
    A caller that misses while the lock is held waits once for
    `retry_delay` seconds and re-reads before fetching on its own.

    The lock is advisory: providers with `set_if_not_exists` get an atomic
    acquire, others a plain set, so two fetches can still overlap.

    Example:
        strategy = SWRCacheStrategy(InMemCache())
        user = await strategy.execute(
            "user:1", lambda: db.fetch_user(1), CacheOperationOptions(ttl_seconds=60)
        )
    """

    name = "swr"

    def __init__(
        self,
        cache: CacheProvider,
        clock: Callable[[], float] = time.time,
        lock_ttl: float = LOCK_TTL_SECONDS,
        retry_delay: float = LOCK_RETRY_DELAY_SECONDS,
    ):
        super().__init__(cache, clock)
        self.lock_ttl = lock_ttl
        self.retry_delay = retry_delay

    def should_use(self, options: CacheOperationOptions) -> bool:
        if options.enable_swr is False or options.emergency_data:
            return False
        if options.enable_swr is True:
            return True
        # No stale window to reason about until the caller sets a TTL
        return options.ttl_seconds is not None

    async def execute(
        self, key: str, fetch: Fetch[T], options: CacheOperationOptions
    ) -> T:
        ttl = options.ttl
        stale_time = options.stale_time
        lock_key = revalidation_lock_key(key)

        if options.force_refresh:
            logger.debug(f"Cache BYPASS (force refresh): {key}")
            return await self._fetch_and_cache(key, fetch, ttl, lock_key)

        locked = await self._lock_held(lock_key)
        envelope = await self._read_envelope(key)

        if envelope is not None:
            age = envelope.age(self.clock)
            if age < stale_time:
                logger.debug(f"Cache HIT (fresh): {key}")
                return envelope.data

            if age < ttl and not locked:
                logger.debug(
                    f"Cache HIT (stale): {key}, age={age:.1f}s, refreshing in background"
                )
                if await self._acquire_lock(lock_key):
                    self._spawn(self._revalidate(key, fetch, ttl, lock_key))
                return envelope.data

        if locked:
            # Another caller is fetching this key, give it one chance to land
            logger.debug(f"Cache WAIT (revalidating): {key}")
            await asyncio.sleep(self.retry_delay)
            envelope = await self._read_envelope(key)
            if envelope is not None and envelope.age(self.clock) < ttl:
                return envelope.data

        logger.debug(f"Cache MISS: {key}")
        return await self._fetch_and_cache(key, fetch, ttl, lock_key)

    async def _fetch_and_cache(
        self, key: str, fetch: Fetch[T], ttl: float, lock_key: str
    ) -> T:
        holds_lock = await self._acquire_lock(lock_key)
        try:
            result = await fetch()
            await self._write_envelope(key, result, ttl)
            return result
        finally:
            if holds_lock:
                await self._release_lock(lock_key)

    async def _revalidate(self, key: str, fetch: Fetch[Any], ttl: float, lock_key: str) -> None:
        """Refresh `key` in the background. Never raises."""
        try:
            new_value = await fetch()
            await self._write_envelope(key, new_value, ttl)
            logger.debug(f"Background refresh complete: {key}")
        except Exception as e:
            logger.error(f"Background refresh failed for {key}: {e}")
        finally:
            await self._release_lock(lock_key)

    async def _lock_held(self, lock_key: str) -> bool:
        try:
            return await self.cache.exists(lock_key)
        except Exception as e:
            logger.warning(f"Lock check failed for {lock_key}, assuming free: {e}")
            return False

    async def _acquire_lock(self, lock_key: str) -> bool:
        try:
            set_if_not_exists = getattr(self.cache, "set_if_not_exists", None)
            if set_if_not_exists is not None:
                return await set_if_not_exists(lock_key, True, self.lock_ttl)
            await self.cache.set(lock_key, True, self.lock_ttl)
            return True
        except Exception as e:
            logger.warning(f"Could not take lock {lock_key}: {e}")
            return False

    async def _release_lock(self, lock_key: str) -> None:
        try:
            await self.cache.delete(lock_key)
        except Exception as e:
            # The lock TTL bounds how long a stuck lock can last
            logger.warning(f"Could not release lock {lock_key}: {e}")


# ============================================================================
# PHICacheStrategy - audited, compliance-tiered caching
# ============================================================================


class PHICacheStrategy(CacheStrategy):
    """
    Caching for values flagged as protected health information.

    Every access is audited (`cache_access`, then `cache_hit` or `cache_miss`)
    through `audit_sink`. Expiry comes from the compliance tier, never from the
    caller's `ttl_seconds`. Any hit is served immediately and refreshed in the
    background without a lock, so overlapping reads can overlap refreshes.

    Args:
        cache: provider to read and write through
        audit_sink: callable receiving (event_type, level, message, source, metadata)
        clock: time source in seconds
        revalidate_fresh_hits: when False, hits younger than the stale time
            are served without a background refresh
    """

    name = "phi"
    source = "PHICacheStrategy"

    def __init__(
        self,
        cache: CacheProvider,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
        revalidate_fresh_hits: bool = True,
    ):
        super().__init__(cache, clock)
        self.audit_sink = audit_sink if audit_sink is not None else logging_audit_sink
        self.revalidate_fresh_hits = revalidate_fresh_hits

    def should_use(self, options: CacheOperationOptions) -> bool:
        return options.contains_phi is True

    @staticmethod
    def calculate_ttl(options: CacheOperationOptions) -> int:
        return PHI_TTL_SECONDS.get(options.compliance_level, DEFAULT_PHI_TTL_SECONDS)

    async def execute(
        self, key: str, fetch: Fetch[T], options: CacheOperationOptions
    ) -> T:
        ttl = self.calculate_ttl(options)
        self._audit("cache_access", logging.INFO, "PHI cache access", key, options)

        envelope = None if options.force_refresh else await self._read_envelope(key)
        if envelope is not None:
            self._audit("cache_hit", logging.INFO, "PHI cache hit", key, options)
            if self._needs_refresh(envelope, options, ttl):
                self._spawn(self._revalidate(key, fetch, ttl))
            return envelope.data

        # Recorded even when the fetch fails
        self._audit("cache_miss", logging.INFO, "PHI cache miss", key, options)
        result = await fetch()
        await self._write_envelope(key, result, ttl)
        return result

    def _needs_refresh(
        self, envelope: CachedEnvelope[Any], options: CacheOperationOptions, ttl: int
    ) -> bool:
        if self.revalidate_fresh_hits:
            return True
        stale_time = options.stale_time_seconds
        if stale_time is None:
            stale_time = math.floor(ttl / 2)
        return envelope.age(self.clock) >= stale_time

    async def _revalidate(self, key: str, fetch: Fetch[Any], ttl: int) -> None:
        try:
            new_value = await fetch()
            await self._write_envelope(key, new_value, ttl)
            logger.debug(f"PHI background refresh complete: {key}")
        except Exception as e:
            logger.error(f"PHI background refresh failed for {key}: {e}")

    def _audit(
        self,
        event_type: str,
        level: int,
        message: str,
        key: str,
        options: CacheOperationOptions,
    ) -> None:
        metadata = {
            "key": key,
            "compliance_level": (options.compliance_level or ComplianceLevel.STANDARD).value,
            "priority": options.priority.value,
        }
        try:
            pending = self.audit_sink(event_type, level, message, self.source, metadata)
            if inspect.isawaitable(pending):
                self._spawn(self._deliver(pending, event_type, key))
        except Exception as e:
            logger.debug(f"Audit sink failed for {event_type} on {key}: {e}")

    async def _deliver(self, pending: Awaitable[Any], event_type: str, key: str) -> None:
        try:
            await pending
        except Exception as e:
            logger.debug(f"Audit sink failed for {event_type} on {key}: {e}")


# ============================================================================
# EmergencyCacheStrategy - always fresh
# ============================================================================


class EmergencyCacheStrategy(CacheStrategy):
    """
    Always fetch synchronously; the cache only keeps a short-lived copy.

    A failed fetch propagates even when an older copy is cached. A failed cache
    write is logged and the fresh value is still returned.
    """

    name = "emergency"

    def __init__(
        self,
        cache: CacheProvider,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = EMERGENCY_TTL_SECONDS,
    ):
        super().__init__(cache, clock)
        self.ttl_seconds = ttl_seconds

    def should_use(self, options: CacheOperationOptions) -> bool:
        return options.emergency_data is True

    async def execute(
        self, key: str, fetch: Fetch[T], options: CacheOperationOptions
    ) -> T:
        logger.debug(f"Cache BYPASS (emergency): {key}")
        result = await fetch()
        try:
            await self._write_envelope(key, result, self.ttl_seconds)
        except Exception as e:
            logger.error(f"Emergency cache write failed for {key}: {e}")
        return result
