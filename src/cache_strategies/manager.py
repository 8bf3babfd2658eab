"""
Strategy selection and the single entry point for cached execution.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Sequence, TypeVar, Union

from .audit import AuditSink
from .options import CacheOperationOptions, revalidation_lock_key
from .storage import CacheProvider
from .strategies import (
    CacheStrategy,
    EmergencyCacheStrategy,
    Fetch,
    PHICacheStrategy,
    StandardCacheStrategy,
    SWRCacheStrategy,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

OptionsLike = Union[CacheOperationOptions, Mapping[str, Any], None]


class CacheConfigurationError(RuntimeError):
    """Raised when no strategy can serve an operation."""


def coerce_options(options: OptionsLike) -> CacheOperationOptions:
    if options is None:
        return CacheOperationOptions()
    if isinstance(options, CacheOperationOptions):
        return options
    return CacheOperationOptions.from_mapping(options)


class CacheStrategyManager:
    """
    Ordered list of strategies; the first one whose `should_use` matches runs.

    The manager holds no caching logic of its own. Build it with an explicit
    list to control priority, or with `default()` for the usual
    Emergency -> PHI -> SWR -> Standard order.

    Example:
        manager = CacheStrategyManager.default(InMemCache())
        user = await manager.execute(
            "user:1", lambda: db.fetch_user(1), {"ttlSeconds": 60}
        )
    """

    def __init__(self, strategies: Sequence[CacheStrategy]):
        self.strategies: list[CacheStrategy] = list(strategies)

    @classmethod
    def default(
        cls,
        cache: CacheProvider,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
        revalidate_fresh_phi_hits: bool = True,
    ) -> CacheStrategyManager:
        """Build the standard priority order over one provider."""
        return cls(
            [
                EmergencyCacheStrategy(cache, clock=clock),
                PHICacheStrategy(
                    cache,
                    audit_sink=audit_sink,
                    clock=clock,
                    revalidate_fresh_hits=revalidate_fresh_phi_hits,
                ),
                SWRCacheStrategy(cache, clock=clock),
                StandardCacheStrategy(cache, clock=clock),
            ]
        )

    def get_strategy(self, options: OptionsLike = None) -> CacheStrategy:
        """Return the first matching strategy, else the last one."""
        if not self.strategies:
            raise CacheConfigurationError("No cache strategies configured")
        resolved = coerce_options(options)
        for strategy in self.strategies:
            if strategy.should_use(resolved):
                return strategy
        return self.strategies[-1]

    async def execute(self, key: str, fetch: Fetch[T], options: OptionsLike = None) -> T:
        resolved = coerce_options(options)
        strategy = self.get_strategy(resolved)
        logger.debug(f"Executing {key} with {strategy.name} strategy")
        return await strategy.execute(key, fetch, resolved)

    async def invalidate(self, key: str) -> bool:
        """Drop `key` and its revalidation lock. Returns False if the provider failed."""
        caches = {id(s.cache): s.cache for s in self.strategies}
        try:
            for cache in caches.values():
                await cache.delete(key)
                await cache.delete(revalidation_lock_key(key))
        except Exception as e:
            logger.error(f"Failed to invalidate cache for {key}: {e}")
            return False
        logger.debug(f"Invalidated cache for {key}")
        return True

    async def join(self) -> None:
        """Wait until no strategy has background work left."""
        await asyncio.gather(*(strategy.join() for strategy in self.strategies))
