"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from enum import Enum


class DataCategory(Enum):
    """Categories of data with different caching behaviors."""
    POOL_STATE = "pool_state"                 # pool liquidity + tick, short TTL, SWR
    POSITIONS = "positions"                   # positions of one address, no SWR
    RANKING = "ranking"                       # all participants for Top-N, SWR
    PROGRAM_ANALYTICS = "program_analytics"   # derived program figures, SWR


class CacheSource(Enum):
    """Source of cached data."""
    FRESH = "fresh"       # Within TTL
    STALE = "stale"       # Past TTL but within stale window, revalidating
    UPSTREAM = "upstream" # Fetched from upstream


@dataclass
class CacheEntry:
    """
    A cached value with its expiry bookkeeping.

    Times are on the manager's monotonic clock. ``stale_until`` equals
    ``expires_at`` when the category serves no stale data.
    """
    key: str
    value: Any
    created_at: float
    expires_at: float
    stale_until: float
    category: DataCategory = DataCategory.POOL_STATE

    def __post_init__(self):
        if not self.expires_at > self.created_at:
            raise ValueError(
                f"Cache entry {self.key} must expire after it is created"
            )
        if self.stale_until < self.expires_at:
            self.stale_until = self.expires_at

    @property
    def ttl_seconds(self) -> float:
        return self.expires_at - self.created_at

    def age_seconds(self, now: float) -> float:
        """Seconds since the value was stored."""
        return now - self.created_at

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at

    def is_usable_stale(self, now: float) -> bool:
        """Past TTL but still inside the stale window."""
        return self.expires_at <= now < self.stale_until

    def is_expired(self, now: float) -> bool:
        """Completely expired; must be refetched."""
        return now >= self.stale_until

    def needs_refresh_ahead(self, now: float, refresh_ahead_seconds: float) -> bool:
        """Fresh, but close enough to expiry to refresh proactively."""
        return refresh_ahead_seconds > 0 and self.is_fresh(now) and (
            self.expires_at - now <= refresh_ahead_seconds
        )


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, returned alongside the value.
    """
    last_updated: str  # ISO timestamp
    cache_source: str  # "fresh", "stale", or "upstream"
    category: Optional[str] = None
    ttl_seconds: Optional[float] = None
    age_seconds: Optional[float] = None

    @classmethod
    def now(
        cls,
        source: CacheSource,
        category: DataCategory,
        ttl: float,
        age: float,
    ) -> "CacheMeta":
        return cls(
            last_updated=datetime.now(timezone.utc).isoformat(),
            cache_source=source.value,
            category=category.value,
            ttl_seconds=ttl,
            age_seconds=age,
        )

    def to_dict(self) -> dict:
        """Convert to a camelCase dictionary for the presentation layer."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
        }
        if self.category:
            result["_debug"] = {
                "category": self.category,
                "ttl": self.ttl_seconds,
                "age": round(self.age_seconds, 1) if self.age_seconds else None,
            }
        return result
