"""
Shared fixtures and test doubles.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from incentives.budget import BudgetTracker
from incentives.schemas import Position, ProgramConfig


NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)
PROGRAM_START = NOW - timedelta(days=30)


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingFetcher:
    """Async fetcher that records how often the cache calls it."""

    def __init__(self, delay: float = 0.0, error: Optional[BaseException] = None):
        self.calls = 0
        self.delay = delay
        self.error = error

    async def __call__(self) -> Dict[str, int]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"call": self.calls}


class FakeProvider:
    """In-memory position/pool provider with per-call delays and failures."""

    def __init__(
        self,
        positions: Optional[List[Dict[str, Any]]] = None,
        pool: Optional[Dict[str, Any]] = None,
    ):
        self.positions = positions or []
        self.pool = pool or {"totalPoolLiquidityUSD": 100_000.0, "currentTick": 0}
        self.delays: Dict[str, float] = {}
        self.errors: Dict[str, BaseException] = {}
        self.calls: Dict[str, int] = {"positions": 0, "all_positions": 0, "pool": 0}

    async def _respond(self, name: str, value: Any) -> Any:
        self.calls[name] += 1
        if self.delays.get(name):
            await asyncio.sleep(self.delays[name])
        if name in self.errors:
            raise self.errors[name]
        return value

    async def get_positions(self, address: str) -> List[Dict[str, Any]]:
        owned = [p for p in self.positions if p.get("owner", "").lower() == address.lower()]
        return await self._respond("positions", owned)

    async def get_all_positions(self) -> List[Dict[str, Any]]:
        return await self._respond("all_positions", list(self.positions))

    async def get_pool_state(self) -> Dict[str, Any]:
        return await self._respond("pool", dict(self.pool))


def raw_position(
    position_id: str,
    liquidity: float,
    owner: str = "0xother",
    days_ago: float = 30,
    tick_lower: int = -100,
    tick_upper: int = 100,
    current_tick: int = 0,
) -> Dict[str, Any]:
    """Position payload in the provider's camelCase shape."""
    return {
        "id": position_id,
        "owner": owner,
        "liquidityValueUSD": liquidity,
        "entryTimestamp": (NOW - timedelta(days=days_ago)).isoformat(),
        "tickLower": tick_lower,
        "tickUpper": tick_upper,
        "currentTick": current_tick,
    }


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def counting_fetcher():
    return CountingFetcher()


@pytest.fixture
def make_position():
    """Factory for validated positions."""
    def _make(position_id: str, liquidity: float, **kwargs) -> Position:
        return Position.model_validate(raw_position(position_id, liquidity, **kwargs))
    return _make


@pytest.fixture
def program_config():
    """3,000,000 tokens over 90 days, w1 = 0.6."""
    return ProgramConfig(
        total_allocation=3_000_000,
        duration_days=90,
        start_date=PROGRAM_START,
        base_weight=0.6,
        lock_period_days=7,
        minimum_position_value=0.0,
    )


@pytest.fixture
def budget(program_config):
    return BudgetTracker(program_config, clock=lambda: NOW)
