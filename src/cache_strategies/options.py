"""
Per-call cache policy options and the envelope stored by freshness-aware strategies.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Generic, Mapping, TypeVar

T = TypeVar("T")

REVALIDATION_SUFFIX = ":revalidating"
DEFAULT_TTL_SECONDS = 3600


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ComplianceLevel(str, Enum):
    STANDARD = "standard"
    SENSITIVE = "sensitive"
    RESTRICTED = "restricted"


# camelCase names used by callers outside the engine
_ALIASES = {
    "ttlSeconds": "ttl_seconds",
    "staleTimeSeconds": "stale_time_seconds",
    "enableSwr": "enable_swr",
    "emergencyData": "emergency_data",
    "containsPHI": "contains_phi",
    "complianceLevel": "compliance_level",
    "forceRefresh": "force_refresh",
}


@dataclass(frozen=True)
class CacheOperationOptions:
    """
    Policy descriptor for a single cache operation.

    Attributes:
        ttl_seconds: base time-to-live, None means the caller left it unset
        stale_time_seconds: freshness boundary, defaults to half of ttl
        tags: bulk invalidation tags (carried, not acted on)
        priority: operation priority
        enable_swr: True claims stale-while-revalidate, False opts out,
            None leaves it to whether a ttl was given
        emergency_data: value is life-critical, never serve from cache
        contains_phi: value holds protected health information
        compliance_level: tier that governs PHI expiry
        compress: opaque hint for providers
        force_refresh: skip the cache read and fetch now
    """

    ttl_seconds: float | None = None
    stale_time_seconds: float | None = None
    tags: frozenset[str] = field(default_factory=frozenset)
    priority: Priority = Priority.NORMAL
    enable_swr: bool | None = None
    emergency_data: bool = False
    contains_phi: bool = False
    compliance_level: ComplianceLevel | None = None
    compress: bool = False
    force_refresh: bool = False

    def __post_init__(self):
        # Providers read a zero TTL as "never expires"
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if not isinstance(self.tags, frozenset):
            object.__setattr__(self, "tags", frozenset(self.tags))
        if not isinstance(self.priority, Priority):
            object.__setattr__(self, "priority", Priority(self.priority))
        if self.compliance_level is not None and not isinstance(
            self.compliance_level, ComplianceLevel
        ):
            object.__setattr__(
                self, "compliance_level", ComplianceLevel(self.compliance_level)
            )

    @property
    def ttl(self) -> float:
        """Effective time-to-live in seconds."""
        if self.ttl_seconds is None:
            return DEFAULT_TTL_SECONDS
        return self.ttl_seconds

    @property
    def stale_time(self) -> float:
        """Effective freshness boundary in seconds."""
        if self.stale_time_seconds is not None:
            return self.stale_time_seconds
        return math.floor(self.ttl / 2)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> CacheOperationOptions:
        """Build options from a dict using snake_case or camelCase keys."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for raw_key, value in mapping.items():
            name = _ALIASES.get(raw_key, raw_key)
            if name not in known:
                raise ValueError(f"Unknown cache option: {raw_key!r}")
            kwargs[name] = value
        return cls(**kwargs)


def revalidation_lock_key(key: str) -> str:
    return f"{key}{REVALIDATION_SUFFIX}"


@dataclass
class CachedEnvelope(Generic[T]):
    """Stored unit for strategies that track freshness."""

    data: T
    captured_at_ms: int

    @classmethod
    def wrap(cls, data: T, clock: Callable[[], float] = time.time) -> CachedEnvelope[T]:
        return cls(data=data, captured_at_ms=int(clock() * 1000))

    @classmethod
    def from_stored(cls, raw: Any) -> CachedEnvelope[Any] | None:
        """Rebuild an envelope from a provider value, None if it isn't one."""
        if not isinstance(raw, dict):
            return None
        if "data" not in raw or "captured_at_ms" not in raw:
            return None
        return cls(data=raw["data"], captured_at_ms=int(raw["captured_at_ms"]))

    def to_stored(self) -> dict[str, Any]:
        return {"data": self.data, "captured_at_ms": self.captured_at_ms}

    def age(self, clock: Callable[[], float] = time.time) -> float:
        """Age of the captured value in seconds."""
        return (clock() * 1000 - self.captured_at_ms) / 1000.0
