"""
Main cache orchestration with tiered TTL, LRU eviction and stale-while-revalidate.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from typing import Dict, Optional, Callable, Any, Awaitable, Set, Tuple

from ..errors import ValidationError
from .core import CacheEntry, CacheMeta, CacheSource, DataCategory
from .coalescer import RequestCoalescer
from .ttl_policies import get_ttl_for_category, get_category_for_key

logger = logging.getLogger("cache.manager")

FetchFn = Callable[[], Awaitable[Any]]

# Refresh-ahead never reaches further back than this share of the fresh TTL
REFRESH_AHEAD_MAX_FRACTION = 0.2


class CacheManager:
    """
    Main cache orchestration with:
    - Tiered TTL based on data category
    - Request coalescing for concurrent duplicate requests (single-flight)
    - Stale-while-revalidate and refresh-ahead background refresh
    - Fixed capacity with LRU eviction and a periodic expiry sweeper
    - Response metadata tracking

    The manager owns its background work. Call ``start()`` to launch the
    sweeper and ``aclose()`` to stop it, or use it as an async context
    manager.
    """

    def __init__(
        self,
        max_entries: int = 1024,
        fetch_timeout: float = 10.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache manager.

        Args:
            max_entries: Capacity before least-recently-used entries are evicted
            fetch_timeout: Default deadline for every upstream fetch
            sweep_interval: Seconds between expired-entry sweeps
            clock: Monotonic time source (injectable for tests)
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")

        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._coalescer = RequestCoalescer(timeout=fetch_timeout)
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval
        self._clock = clock

        # Background work
        self._sweeper: Optional[asyncio.Task] = None
        self._revalidating: Dict[str, asyncio.Task] = {}
        self._closed = False

        # Token of the load allowed to store each key; invalidation drops it
        self._loading: Dict[str, object] = {}

        # Stats tracking
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "revalidation_failures": 0,
            "evictions": 0,
            "expirations": 0,
        }

    async def __aenter__(self) -> "CacheManager":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def start(self) -> None:
        """Launch the periodic sweeper on the running event loop."""
        if self._closed:
            raise RuntimeError("CacheManager has been closed")
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info(f"Cache sweeper started (interval={self._sweep_interval}s)")

    async def aclose(self) -> None:
        """Stop the sweeper, background refreshes and in-flight fetches."""
        self._closed = True
        tasks = list(self._revalidating.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._coalescer.cancel_all()
        self._sweeper = None
        self._revalidating.clear()
        logger.info("Cache manager closed")

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def get(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
        category: Optional[DataCategory] = None,
        force_refresh: bool = False,
    ) -> Any:
        """Get data from cache or fetch from upstream; see ``get_with_meta``."""
        data, _ = await self.get_with_meta(
            cache_key,
            fetch_fn,
            ttl,
            timeout=timeout,
            category=category,
            force_refresh=force_refresh,
        )
        return data

    async def get_with_meta(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
        category: Optional[DataCategory] = None,
        force_refresh: bool = False,
    ) -> Tuple[Any, CacheMeta]:
        """
        Get data from cache or fetch from upstream.

        Args:
            cache_key: Unique cache key
            fetch_fn: Coroutine function fetching the value if needed
            ttl: Fresh TTL in seconds, overriding the category default
            timeout: Deadline for an upstream fetch
            category: Data category; derived from the key prefix when omitted
            force_refresh: Bypass the cached value (still coalesced)

        Returns:
            (data, cache_meta) tuple

        Raises:
            ValidationError: If ttl is not a positive number
            UpstreamTimeoutError: If the fetch exceeded its deadline
            UpstreamFailureError: If the fetch raised
        """
        if self._closed:
            raise RuntimeError("CacheManager has been closed")

        category = category or get_category_for_key(cache_key)
        fresh_ttl, stale_ttl, allow_swr, refresh_ahead = get_ttl_for_category(category)
        if ttl is not None:
            if not ttl > 0:
                raise ValidationError(f"TTL must be positive, got {ttl}", field="ttl")
            fresh_ttl = ttl
        refresh_ahead = min(refresh_ahead, fresh_ttl * REFRESH_AHEAD_MAX_FRACTION)

        def load() -> Awaitable[Any]:
            return self._load(cache_key, fetch_fn, fresh_ttl, stale_ttl, category)

        if force_refresh:
            logger.info(f"FORCE REFRESH: {cache_key}")
            return await self._fetch(cache_key, load, timeout, category, fresh_ttl)

        now = self._clock()
        entry = self._cache.get(cache_key)

        # Cache miss
        if entry is None:
            logger.info(f"CACHE MISS: {cache_key}")
            return await self._fetch(cache_key, load, timeout, category, fresh_ttl)

        # Cache hit - fresh
        if entry.is_fresh(now):
            self._cache.move_to_end(cache_key)
            self._stats["hits_fresh"] += 1
            logger.debug(f"CACHE HIT (fresh): {cache_key} [age={entry.age_seconds(now):.1f}s]")
            if allow_swr and entry.needs_refresh_ahead(now, refresh_ahead):
                self._trigger_background_refresh(cache_key, load, timeout)
            return entry.value, CacheMeta.now(
                CacheSource.FRESH, category, entry.ttl_seconds, entry.age_seconds(now)
            )

        # Stale but usable with SWR
        if allow_swr and entry.is_usable_stale(now):
            self._cache.move_to_end(cache_key)
            self._stats["hits_stale"] += 1
            logger.info(
                f"CACHE HIT (stale, revalidating): {cache_key} "
                f"[age={entry.age_seconds(now):.1f}s]"
            )
            self._trigger_background_refresh(cache_key, load, timeout)
            return entry.value, CacheMeta.now(
                CacheSource.STALE, category, entry.ttl_seconds, entry.age_seconds(now)
            )

        # Expired or stale without SWR - must refetch
        logger.info(f"CACHE EXPIRED: {cache_key} [age={entry.age_seconds(now):.1f}s]")
        return await self._fetch(cache_key, load, timeout, category, fresh_ttl)

    async def _fetch(
        self,
        cache_key: str,
        load: FetchFn,
        timeout: Optional[float],
        category: DataCategory,
        fresh_ttl: float,
    ) -> Tuple[Any, CacheMeta]:
        self._stats["misses"] += 1
        data = await self._coalescer.get_or_fetch(cache_key, load, timeout)
        return data, CacheMeta.now(CacheSource.UPSTREAM, category, fresh_ttl, 0)

    async def _load(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        fresh_ttl: float,
        stale_ttl: float,
        category: DataCategory,
    ) -> Any:
        # Runs once per flight; only a successful result is stored, and only
        # if the key was not invalidated while the fetch was running
        token = object()
        self._loading[cache_key] = token
        try:
            data = await fetch_fn()
            if self._loading.get(cache_key) is token:
                self._store(cache_key, data, fresh_ttl, stale_ttl, category)
            else:
                logger.info(f"Discarding result for invalidated key: {cache_key}")
            return data
        finally:
            if self._loading.get(cache_key) is token:
                del self._loading[cache_key]

    def _forget_load(self, cache_key: str) -> None:
        """Stop an in-flight load from storing; later callers start a new fetch."""
        if self._loading.pop(cache_key, None) is not None:
            self._coalescer.detach(cache_key)

    def _store(
        self,
        cache_key: str,
        data: Any,
        fresh_ttl: float,
        stale_ttl: float,
        category: DataCategory,
    ) -> None:
        """Store data in cache, evicting the least recently used entries."""
        now = self._clock()
        entry = CacheEntry(
            key=cache_key,
            value=data,
            created_at=now,
            expires_at=now + fresh_ttl,
            stale_until=now + fresh_ttl + stale_ttl,
            category=category,
        )
        self._cache[cache_key] = entry
        self._cache.move_to_end(cache_key)
        while len(self._cache) > self._max_entries:
            evicted, _ = self._cache.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Evicted LRU entry: {evicted}")

    def _trigger_background_refresh(
        self,
        cache_key: str,
        load: FetchFn,
        timeout: Optional[float],
    ) -> None:
        """Trigger background refresh without blocking."""
        if cache_key in self._revalidating:
            logger.debug(f"Already revalidating: {cache_key}")
            return

        async def do_revalidate():
            try:
                logger.debug(f"Background revalidation started: {cache_key}")
                await self._coalescer.get_or_fetch(cache_key, load, timeout)
                self._stats["revalidations"] += 1
                logger.debug(f"Background revalidation complete: {cache_key}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The stale entry stays in place until it fully expires
                self._stats["revalidation_failures"] += 1
                logger.warning(f"Background revalidation failed: {cache_key} - {e}")
            finally:
                self._revalidating.pop(cache_key, None)

        self._revalidating[cache_key] = asyncio.get_running_loop().create_task(
            do_revalidate()
        )

    async def wait_for_background(self) -> None:
        """Wait until every pending background refresh has finished."""
        while self._revalidating:
            await asyncio.gather(*list(self._revalidating.values()), return_exceptions=True)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep_expired()

    def sweep_expired(self) -> int:
        """
        Remove entries past their stale window.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired:
            del self._cache[key]
        if expired:
            self._stats["expirations"] += len(expired)
            logger.info(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def peek(self, cache_key: str) -> Optional[CacheEntry]:
        """Return the raw entry without touching LRU order or stats."""
        return self._cache.get(cache_key)

    def is_in_flight(self, cache_key: str) -> bool:
        return self._coalescer.is_in_flight(cache_key)

    def invalidate(self, cache_key: str) -> bool:
        """
        Invalidate a specific cache entry and any fetch for it already running.

        Returns:
            True if entry was found and removed
        """
        self._forget_load(cache_key)
        if cache_key in self._cache:
            del self._cache[cache_key]
            logger.info(f"Invalidated cache: {cache_key}")
            return True
        return False

    def invalidate_pattern(self, prefix: str) -> int:
        """
        Invalidate all cache entries whose key starts with ``prefix``.

        Returns:
            Number of entries invalidated
        """
        for key in [k for k in self._loading if k.startswith(prefix)]:
            self._forget_load(key)
        to_delete = [k for k in self._cache if k.startswith(prefix)]
        for key in to_delete:
            del self._cache[key]
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{prefix}'")
        return len(to_delete)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        for key in list(self._loading):
            self._forget_load(key)
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def __len__(self) -> int:
        return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": len(self._cache),
            "max_entries": self._max_entries,
            **self._stats,
            "upstream_fetches": self._coalescer.fetches_started,
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
            "revalidating_count": len(self._revalidating),
        }
