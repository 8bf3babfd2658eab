"""
Cache strategy engine: per-request caching policies over async key-value providers.

Expose options, providers, strategies, the strategy manager and the decorator
under `cache_strategies`.
"""

from .options import (
    CacheOperationOptions,
    CachedEnvelope,
    ComplianceLevel,
    Priority,
    revalidation_lock_key,
)
from .storage import (
    InMemCache,
    RedisCache,
    HybridCache,
    CacheEntry,
    CacheProvider,
    ExpirySweeper,
    validate_cache_provider,
)
from .audit import AuditSink, logging_audit_sink
from .strategies import (
    CacheStrategy,
    StandardCacheStrategy,
    SWRCacheStrategy,
    PHICacheStrategy,
    EmergencyCacheStrategy,
)
from .manager import CacheStrategyManager, CacheConfigurationError
from .decorators import StrategyCache, cached

__all__ = [
    "CacheOperationOptions",
    "CachedEnvelope",
    "ComplianceLevel",
    "Priority",
    "revalidation_lock_key",
    "InMemCache",
    "RedisCache",
    "HybridCache",
    "CacheEntry",
    "CacheProvider",
    "ExpirySweeper",
    "validate_cache_provider",
    "AuditSink",
    "logging_audit_sink",
    "CacheStrategy",
    "StandardCacheStrategy",
    "SWRCacheStrategy",
    "PHICacheStrategy",
    "EmergencyCacheStrategy",
    "CacheStrategyManager",
    "CacheConfigurationError",
    "StrategyCache",
    "cached",
]
