"""
Caching module with tiered TTL, request coalescing, LRU eviction and
stale-while-revalidate.
"""
from .core import CacheEntry, CacheMeta, CacheSource, DataCategory
from .ttl_policies import (
    TTL_CONFIG,
    PROGRAM_KEY_PREFIX,
    get_ttl_for_category,
    get_category_for_key,
    pool_key,
    positions_key,
    ranking_key,
    program_key,
)
from .coalescer import RequestCoalescer
from .manager import CacheManager

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheSource",
    "DataCategory",
    # TTL policies
    "TTL_CONFIG",
    "PROGRAM_KEY_PREFIX",
    "get_ttl_for_category",
    "get_category_for_key",
    "pool_key",
    "positions_key",
    "ranking_key",
    "program_key",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "CacheManager",
]
