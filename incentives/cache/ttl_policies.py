"""
TTL configuration and key-to-category mapping.
"""
from typing import Dict, Optional, Tuple, Any

from .core import DataCategory


# TTL Configuration by category (in seconds)
TTL_CONFIG: Dict[DataCategory, Dict[str, Any]] = {
    DataCategory.POOL_STATE: {
        "fresh_ttl": 30,          # pool price/liquidity moves every block
        "stale_ttl": 60,          # serve up to a minute stale while refreshing
        "allow_swr": True,
        "refresh_ahead": 5,       # refresh in the last 5 seconds of freshness
    },
    DataCategory.POSITIONS: {
        "fresh_ttl": 60,
        "stale_ttl": 0,           # a user's own positions are never served stale
        "allow_swr": False,
        "refresh_ahead": 0,
    },
    DataCategory.RANKING: {
        "fresh_ttl": 120,
        "stale_ttl": 300,
        "allow_swr": True,
        "refresh_ahead": 15,
    },
    DataCategory.PROGRAM_ANALYTICS: {
        "fresh_ttl": 20,
        "stale_ttl": 40,
        "allow_swr": True,
        "refresh_ahead": 0,
    },
}

# Key prefixes owned by each category
KEY_PREFIXES: Dict[str, DataCategory] = {
    "pool:": DataCategory.POOL_STATE,
    "positions:": DataCategory.POSITIONS,
    "ranking:": DataCategory.RANKING,
    "program:": DataCategory.PROGRAM_ANALYTICS,
}

PROGRAM_KEY_PREFIX = "program:"


def get_ttl_for_category(category: DataCategory) -> Tuple[float, float, bool, float]:
    """
    Get TTL configuration for a data category.

    Returns:
        (fresh_ttl, stale_ttl, allow_swr, refresh_ahead)
    """
    config = TTL_CONFIG.get(category, TTL_CONFIG[DataCategory.POSITIONS])
    return (
        config["fresh_ttl"],
        config.get("stale_ttl", 0),
        config.get("allow_swr", False),
        config.get("refresh_ahead", 0),
    )


def get_category_for_key(
    cache_key: str,
    default: Optional[DataCategory] = None,
) -> DataCategory:
    """
    Determine the data category from a cache key's prefix.

    Unknown prefixes fall back to ``default`` (or POSITIONS, which never
    serves stale data).
    """
    for prefix, category in KEY_PREFIXES.items():
        if cache_key.startswith(prefix):
            return category
    return default or DataCategory.POSITIONS


def pool_key(pool_address: str = "default") -> str:
    return f"pool:{pool_address.lower()}"


def positions_key(address: str) -> str:
    return f"positions:{address.lower()}"


def ranking_key() -> str:
    return "ranking:participants"


def program_key(name: str) -> str:
    return f"{PROGRAM_KEY_PREFIX}{name}"
