"""
Request coalescing to prevent duplicate upstream calls.

When multiple concurrent requests ask for the same data, only one
upstream call is made and all requesters share the result.
"""
import asyncio
import time
import logging
from typing import Dict, Optional, Callable, Any, Awaitable, Set
from dataclasses import dataclass, field

from ..errors import IncentiveError, UpstreamFailureError, UpstreamTimeoutError

logger = logging.getLogger("cache.coalescer")

FetchFn = Callable[[], Awaitable[Any]]


def _retrieve_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    future: asyncio.Future
    task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key claims the key and starts the fetch as a task
    - Subsequent requests for the same key await the shared future
    - When the fetch completes, all waiters receive the same result or error
    - The fetch carries its own deadline, so waiters never hang

    The claim is a check-and-set on ``_in_flight`` with no ``await`` in
    between, so it is atomic on the event loop.

    Usage:
        coalescer = RequestCoalescer(timeout=10.0)
        result = await coalescer.get_or_fetch(
            cache_key="pool:0xabc",
            fetch_fn=lambda: provider.get_pool_state(),
        )
    """

    def __init__(self, timeout: float = 30.0):
        """
        Initialize the coalescer.

        Args:
            timeout: Default deadline in seconds for each upstream fetch
        """
        if timeout <= 0:
            raise ValueError("Coalescer timeout must be positive")
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._timeout = timeout
        self._fetches_started = 0
        self._coalesced = 0
        self._tasks: Set[asyncio.Task] = set()

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch
            timeout: Deadline for a new fetch (defaults to the coalescer's)

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            UpstreamTimeoutError: If the fetch exceeded its deadline
            UpstreamFailureError: If fetch_fn raised
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            self._coalesced += 1
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            in_flight = self._claim(cache_key, fetch_fn, timeout)

        # Shield so one cancelled caller does not cancel the shared fetch
        return await asyncio.shield(in_flight.future)

    def _claim(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        timeout: Optional[float],
    ) -> InFlightRequest:
        deadline = self._timeout if timeout is None else timeout
        if deadline <= 0:
            raise ValueError(f"Fetch timeout for {cache_key} must be positive")

        loop = asyncio.get_running_loop()
        in_flight = InFlightRequest(future=loop.create_future())
        # Waiters may all be cancelled before a failure lands
        in_flight.future.add_done_callback(_retrieve_exception)
        self._in_flight[cache_key] = in_flight
        self._fetches_started += 1
        logger.debug(f"Initiating fetch for {cache_key}")

        in_flight.task = loop.create_task(
            self._run(cache_key, in_flight, fetch_fn, deadline)
        )
        self._tasks.add(in_flight.task)
        in_flight.task.add_done_callback(self._tasks.discard)
        return in_flight

    async def _run(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        fetch_fn: FetchFn,
        deadline: float,
    ) -> None:
        future = in_flight.future
        try:
            result = await asyncio.wait_for(fetch_fn(), timeout=deadline)
        except asyncio.TimeoutError:
            logger.error(f"Timeout fetching {cache_key} after {deadline}s")
            future.set_exception(UpstreamTimeoutError(cache_key, deadline))
        except asyncio.CancelledError:
            future.cancel()
            raise
        except IncentiveError as e:
            logger.warning(f"Fetch failed for {cache_key}: {e}")
            future.set_exception(e)
        except Exception as e:
            logger.warning(f"Fetch failed for {cache_key}: {e}")
            future.set_exception(UpstreamFailureError(cache_key, e))
        else:
            future.set_result(result)
        finally:
            if self._in_flight.get(cache_key) is in_flight:
                del self._in_flight[cache_key]

    def is_in_flight(self, cache_key: str) -> bool:
        return cache_key in self._in_flight

    def detach(self, cache_key: str) -> bool:
        """
        Stop new callers from joining the current fetch for a key.

        The fetch keeps running for the callers already waiting on it; the
        next request for the key starts a fresh fetch.

        Returns:
            True if a fetch was in flight
        """
        in_flight = self._in_flight.pop(cache_key, None)
        if in_flight is None:
            return False
        logger.debug(f"Detached in-flight fetch for {cache_key}")
        return True

    async def cancel_all(self) -> None:
        """Cancel every running fetch, detached or not; waiters get CancelledError."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    @property
    def fetches_started(self) -> int:
        """Total upstream fetches initiated since construction."""
        return self._fetches_started

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
            "fetches_started": self._fetches_started,
            "coalesced": self._coalesced,
        }
