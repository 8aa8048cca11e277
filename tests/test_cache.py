"""
Tests for the coalescing cache: single-flight, TTL, stale-while-revalidate,
invalidation, timeouts, failure handling, LRU eviction and sweeping.
"""
import asyncio
import gc
import math

import pytest

from incentives.cache import CacheEntry, CacheManager, DataCategory, RequestCoalescer
from incentives.errors import UpstreamFailureError, UpstreamTimeoutError, ValidationError

from conftest import CountingFetcher


# =============================================================================
# Single-flight
# =============================================================================

class TestSingleFlight:
    """Concurrent requests for one key share a single upstream fetch."""

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_fetch(self):
        """50 concurrent gets for an uncached key trigger exactly one fetch."""
        fetcher = CountingFetcher(delay=0.01)
        async with CacheManager() as cache:
            results = await asyncio.gather(
                *[cache.get("pool:hot", fetcher) for _ in range(50)]
            )

        assert fetcher.calls == 1
        assert all(r is results[0] for r in results)
        assert results[0] == {"call": 1}

    @pytest.mark.asyncio
    async def test_concurrent_gets_for_expired_key_share_one_fetch(self, fake_clock):
        fetcher = CountingFetcher(delay=0.01)
        cache = CacheManager(clock=fake_clock)

        await cache.get("positions:0xabc", fetcher, ttl=10)
        fake_clock.advance(11)
        results = await asyncio.gather(
            *[cache.get("positions:0xabc", fetcher, ttl=10) for _ in range(20)]
        )

        assert fetcher.calls == 2
        assert all(r == {"call": 2} for r in results)
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self):
        fetcher = CountingFetcher(delay=0.05)
        cache = CacheManager()

        first = asyncio.ensure_future(cache.get("pool:x", fetcher))
        second = asyncio.ensure_future(cache.get("pool:x", fetcher))
        await asyncio.sleep(0)
        first.cancel()

        assert await second == {"call": 1}
        assert fetcher.calls == 1
        assert first.cancelled()
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_in_flight_flag_clears_after_fetch(self):
        fetcher = CountingFetcher(delay=0.02)
        cache = CacheManager()

        task = asyncio.ensure_future(cache.get("pool:x", fetcher))
        await asyncio.sleep(0)
        assert cache.is_in_flight("pool:x")
        await task
        assert not cache.is_in_flight("pool:x")
        await cache.aclose()


# =============================================================================
# TTL
# =============================================================================

class TestTTL:
    """Freshness windows and TTL validation."""

    @pytest.mark.asyncio
    async def test_get_within_ttl_never_fetches(self, fake_clock):
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        first = await cache.get("positions:0xabc", fetcher, ttl=10)
        fake_clock.advance(9.9)
        second = await cache.get("positions:0xabc", fetcher, ttl=10)

        assert fetcher.calls == 1
        assert first is second

    @pytest.mark.asyncio
    async def test_get_after_ttl_fetches_exactly_once_more(self, fake_clock):
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        await cache.get("positions:0xabc", fetcher, ttl=10)
        fake_clock.advance(10)
        value = await cache.get("positions:0xabc", fetcher, ttl=10)
        again = await cache.get("positions:0xabc", fetcher, ttl=10)

        assert fetcher.calls == 2
        assert value == {"call": 2}
        assert again is value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5, math.nan])
    async def test_non_positive_ttl_is_rejected(self, ttl, counting_fetcher):
        cache = CacheManager()
        with pytest.raises(ValidationError):
            await cache.get("pool:x", counting_fetcher, ttl=ttl)
        assert counting_fetcher.calls == 0

    def test_cache_entry_must_expire_after_creation(self):
        with pytest.raises(ValueError):
            CacheEntry(key="k", value=1, created_at=10.0, expires_at=10.0, stale_until=10.0)


# =============================================================================
# Invalidation
# =============================================================================

class TestInvalidation:
    """Invalidation drops stored entries and fetches already running."""

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, fake_clock, counting_fetcher):
        cache = CacheManager(clock=fake_clock)

        await cache.get("program:analytics", counting_fetcher)
        assert cache.invalidate("program:analytics") is True
        await cache.get("program:analytics", counting_fetcher)

        assert counting_fetcher.calls == 2
        assert cache.invalidate("program:missing") is False

    @pytest.mark.asyncio
    async def test_invalidate_pattern_only_touches_prefix(self, fake_clock, counting_fetcher):
        cache = CacheManager(clock=fake_clock)
        for key in ("program:analytics", "program:apr", "pool:default"):
            await cache.get(key, counting_fetcher)

        assert cache.invalidate_pattern("program:") == 2
        assert cache.peek("pool:default") is not None
        assert cache.peek("program:apr") is None

    @pytest.mark.asyncio
    async def test_invalidate_during_fetch_starts_a_new_fetch(self, fake_clock):
        """A fetch begun before invalidation neither serves later callers nor stores."""
        chain = {"owner": "before-tx"}
        started = []

        async def fetch():
            started.append(chain["owner"])
            seen = chain["owner"]
            await asyncio.sleep(0.02)
            return seen

        cache = CacheManager(clock=fake_clock)
        early = asyncio.ensure_future(cache.get("positions:0xabc", fetch))
        while not started:
            await asyncio.sleep(0)

        chain["owner"] = "after-tx"
        cache.invalidate("positions:0xabc")
        later = await cache.get("positions:0xabc", fetch)

        assert later == "after-tx"
        assert await early == "before-tx"
        assert await cache.get("positions:0xabc", fetch) == "after-tx"
        assert cache.peek("positions:0xabc").value == "after-tx"
        assert started == ["before-tx", "after-tx"]
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_invalidate_pattern_during_fetch_discards_result(self, fake_clock):
        fetcher = CountingFetcher(delay=0.02)
        cache = CacheManager(clock=fake_clock)

        pending = asyncio.ensure_future(cache.get("program:analytics", fetcher))
        while fetcher.calls == 0:
            await asyncio.sleep(0)
        cache.invalidate_pattern("program:")

        assert await pending == {"call": 1}
        assert cache.peek("program:analytics") is None
        assert await cache.get("program:analytics", fetcher) == {"call": 2}
        await cache.aclose()


# =============================================================================
# Stale-while-revalidate
# =============================================================================

class TestStaleWhileRevalidate:
    """Stale serving and refresh-ahead run in the background."""

    @pytest.mark.asyncio
    async def test_stale_value_served_while_refreshing(self, fake_clock):
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        first = await cache.get("pool:default", fetcher)   # 30s fresh + 60s stale
        fake_clock.advance(35)
        stale, meta = await cache.get_with_meta("pool:default", fetcher)

        assert stale is first
        assert meta.cache_source == "stale"

        await cache.wait_for_background()
        assert fetcher.calls == 2
        fresh, meta = await cache.get_with_meta("pool:default", fetcher)
        assert fresh == {"call": 2}
        assert meta.cache_source == "fresh"
        assert cache.get_stats()["revalidations"] == 1

    @pytest.mark.asyncio
    async def test_refresh_ahead_near_expiry(self, fake_clock):
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        first = await cache.get("pool:default", fetcher)
        fake_clock.advance(27)   # inside the last 5 seconds of freshness
        value, meta = await cache.get_with_meta("pool:default", fetcher)

        assert value is first
        assert meta.cache_source == "fresh"
        await cache.wait_for_background()
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_short_explicit_ttl_keeps_refresh_ahead_inside_window(self, fake_clock):
        """A 3s TTL on a pool key must not refresh on every fresh hit."""
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        await cache.get("pool:default", fetcher, ttl=3)
        fake_clock.advance(0.5)
        await cache.get("pool:default", fetcher, ttl=3)
        await cache.wait_for_background()
        assert fetcher.calls == 1

        fake_clock.advance(2.0)   # 0.5s left, inside 20% of the TTL
        await cache.get("pool:default", fetcher, ttl=3)
        await cache.wait_for_background()
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_positions_are_never_served_stale(self, fake_clock):
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        await cache.get("positions:0xabc", fetcher)
        fake_clock.advance(61)
        value, meta = await cache.get_with_meta("positions:0xabc", fetcher)

        assert value == {"call": 2}
        assert meta.cache_source == "upstream"

    @pytest.mark.asyncio
    async def test_failed_background_refresh_keeps_stale_entry(self, fake_clock):
        fetcher = CountingFetcher()
        cache = CacheManager(clock=fake_clock)

        first = await cache.get("pool:default", fetcher)
        fetcher.error = RuntimeError("rpc down")
        fake_clock.advance(35)
        stale = await cache.get("pool:default", fetcher)
        await cache.wait_for_background()

        assert stale is first
        assert cache.peek("pool:default").value is first
        assert cache.get_stats()["revalidation_failures"] == 1


# =============================================================================
# Failures and timeouts
# =============================================================================

class TestFailuresAndTimeouts:
    """Errors reach every waiter and are never cached."""

    @pytest.mark.asyncio
    async def test_fetch_failure_reaches_every_waiter_and_is_not_cached(self):
        fetcher = CountingFetcher(delay=0.01, error=RuntimeError("indexer 502"))
        cache = CacheManager()

        results = await asyncio.gather(
            *[cache.get("pool:x", fetcher) for _ in range(5)],
            return_exceptions=True,
        )

        assert fetcher.calls == 1
        assert all(isinstance(r, UpstreamFailureError) for r in results)
        assert isinstance(results[0].cause, RuntimeError)
        assert cache.peek("pool:x") is None

        fetcher.error = None
        assert await cache.get("pool:x", fetcher) == {"call": 2}

    @pytest.mark.asyncio
    async def test_timeout_fails_all_waiters_with_typed_error(self):
        fetcher = CountingFetcher(delay=1.0)
        cache = CacheManager()

        results = await asyncio.gather(
            *[cache.get("pool:slow", fetcher, timeout=0.05) for _ in range(3)],
            return_exceptions=True,
        )

        assert all(isinstance(r, UpstreamTimeoutError) for r in results)
        assert all(isinstance(r, TimeoutError) for r in results)
        assert cache.peek("pool:slow") is None
        assert not cache.is_in_flight("pool:slow")

    @pytest.mark.asyncio
    async def test_coalescer_default_timeout_applies(self):
        coalescer = RequestCoalescer(timeout=0.02)
        fetcher = CountingFetcher(delay=0.5)

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await coalescer.get_or_fetch("pool:slow", fetcher)
        assert exc_info.value.key == "pool:slow"
        assert coalescer.active_requests == 0

    @pytest.mark.asyncio
    async def test_failure_with_no_remaining_waiters_is_not_reported(self):
        """A failed fetch whose waiters were all cancelled leaves no unretrieved error."""
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            coalescer = RequestCoalescer(timeout=1.0)
            fetcher = CountingFetcher(delay=0.02, error=RuntimeError("indexer 502"))

            waiter = asyncio.ensure_future(coalescer.get_or_fetch("pool:x", fetcher))
            while fetcher.calls == 0:
                await asyncio.sleep(0)
            waiter.cancel()
            await asyncio.sleep(0.05)
            del waiter
            gc.collect()

            assert coalescer.active_requests == 0
            assert not [c for c in reported if "never retrieved" in c.get("message", "")]
        finally:
            loop.set_exception_handler(None)

    @pytest.mark.asyncio
    async def test_close_cancels_detached_fetches(self):
        fetcher = CountingFetcher(delay=1.0)
        cache = CacheManager()

        pending = asyncio.ensure_future(cache.get("positions:a", fetcher))
        while fetcher.calls == 0:
            await asyncio.sleep(0)
        cache.invalidate("positions:a")
        await cache.aclose()

        with pytest.raises(asyncio.CancelledError):
            await pending


# =============================================================================
# Capacity and sweeping
# =============================================================================

class TestCapacityAndSweeping:
    """LRU eviction, expiry sweeping and lifecycle."""

    @pytest.mark.asyncio
    async def test_lru_eviction_drops_least_recently_used(self, fake_clock, counting_fetcher):
        cache = CacheManager(max_entries=2, clock=fake_clock)

        await cache.get("positions:a", counting_fetcher)
        await cache.get("positions:b", counting_fetcher)
        await cache.get("positions:a", counting_fetcher)   # touch a
        await cache.get("positions:c", counting_fetcher)

        assert cache.peek("positions:b") is None
        assert cache.peek("positions:a") is not None
        assert cache.peek("positions:c") is not None
        assert len(cache) == 2
        assert cache.get_stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_fully_expired_entries(self, fake_clock, counting_fetcher):
        cache = CacheManager(clock=fake_clock)
        await cache.get("positions:a", counting_fetcher, ttl=10)
        await cache.get("pool:default", counting_fetcher)   # 30s + 60s stale

        fake_clock.advance(11)
        assert cache.sweep_expired() == 1
        assert cache.peek("pool:default") is not None

        fake_clock.advance(80)
        assert cache.sweep_expired() == 1
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_sweeper_task_runs_until_closed(self, fake_clock, counting_fetcher):
        cache = CacheManager(sweep_interval=0.01, clock=fake_clock)
        async with cache:
            assert cache.running
            await cache.get("positions:a", counting_fetcher, ttl=5)
            fake_clock.advance(6)
            await asyncio.sleep(0.05)
            assert len(cache) == 0
            assert cache.get_stats()["expirations"] == 1

        assert not cache.running
        with pytest.raises(RuntimeError):
            await cache.get("positions:a", counting_fetcher)

    @pytest.mark.asyncio
    async def test_explicit_category_overrides_key_prefix(self, fake_clock, counting_fetcher):
        cache = CacheManager(clock=fake_clock)
        _, meta = await cache.get_with_meta(
            "custom:key", counting_fetcher, category=DataCategory.RANKING
        )
        assert meta.category == "ranking"
        assert meta.to_dict()["cacheSource"] == "upstream"

    @pytest.mark.asyncio
    async def test_stats_count_hits_and_misses(self, fake_clock, counting_fetcher):
        cache = CacheManager(clock=fake_clock)
        await cache.get("positions:a", counting_fetcher)
        await cache.get("positions:a", counting_fetcher)
        await cache.get("positions:a", counting_fetcher)

        stats = cache.get_stats()
        assert stats["misses"] == 1
        assert stats["hits_fresh"] == 2
        assert stats["upstream_fetches"] == 1
        assert stats["hit_rate_percent"] == pytest.approx(66.7)
