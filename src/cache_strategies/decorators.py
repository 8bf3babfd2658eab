"""
Decorator for caching async function results through a strategy manager.
"""

from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, TypeVar

from .manager import CacheStrategyManager
from .options import CacheOperationOptions
from .storage import InMemCache

T = TypeVar("T")


def _make_cache_key(key: str | Callable[..., str], args: tuple, kwargs: dict) -> str:
    if callable(key):
        return key(*args, **kwargs)
    if "{" not in key:
        return key
    # Simple format string with first arg
    if args:
        return key.format(args[0])
    try:
        return key.format(**kwargs)
    except (IndexError, KeyError) as e:
        raise ValueError(
            f"Cache key template {key!r} needs a positional argument or a "
            f"matching keyword argument, got kwargs {sorted(kwargs)}"
        ) from e


class StrategyCache:
    """
    Cache decorator for coroutine functions.

    The options select the strategy exactly as `CacheStrategyManager.execute`
    does. Without an explicit manager each decorated function gets its own
    manager over its own InMemCache.

    Example:
        @StrategyCache.cached("user:{}", ttl_seconds=60, stale_time_seconds=10)
        async def get_user(user_id):
            return await db.fetch_user(user_id)

        # PHI with a shared manager
        @StrategyCache.cached(
            "chart:{}", manager=manager, contains_phi=True, compliance_level="restricted"
        )
        async def get_chart(patient_id):
            return await ehr.fetch_chart(patient_id)
    """

    @classmethod
    def cached(
        cls,
        key: str | Callable[..., str],
        manager: CacheStrategyManager | None = None,
        **option_fields: Any,
    ) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
        """
        Args:
            key: Cache key template (e.g., "user:{}") or generator function
            manager: Strategy manager to run through (defaults to a private one)
            **option_fields: CacheOperationOptions fields
        """
        options = CacheOperationOptions(**option_fields)
        function_manager = (
            manager if manager is not None else CacheStrategyManager.default(InMemCache())
        )

        def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
            @functools.wraps(func)
            async def wrapper(*args, **kwargs) -> T:
                cache_key = _make_cache_key(key, args, kwargs)
                return await function_manager.execute(
                    cache_key, lambda: func(*args, **kwargs), options
                )

            wrapper._manager = function_manager  # type: ignore
            wrapper._options = options  # type: ignore
            return wrapper

        return decorator


# Alias for shorter usage
cached = StrategyCache.cached
