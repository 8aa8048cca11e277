"""
Incentive service: the functions the presentation and admin layers call.

Every upstream read goes through the ``CacheManager``; reward and ranking
computations run synchronously on the cached snapshots.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.settings import Settings

from .budget import BudgetStatus, BudgetTracker, utcnow
from .cache import (
    CacheManager,
    PROGRAM_KEY_PREFIX,
    pool_key,
    positions_key,
    program_key,
    ranking_key,
)
from .eligibility import EligibilityManager, EligibilityResult, RankingSnapshot
from .errors import UpstreamTimeoutError
from .provider import PositionDataProvider
from .rewards import PositionReward, RewardEngine
from .schemas import (
    PoolState,
    Position,
    ProgramConfig,
    parse_pool_state,
    parse_positions,
)

logger = logging.getLogger("dashboard.service")


@dataclass
class DashboardData:
    """Everything the dashboard shows for one address."""
    address: str
    rewards_by_position: List[PositionReward] = field(default_factory=list)
    total_apr: Optional[float] = None
    total_daily_reward: float = 0.0
    eligibility: Optional[Dict[str, Any]] = None
    budget: Optional[BudgetStatus] = None
    unavailable: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "rewardsByPosition": [r.to_dict() for r in self.rewards_by_position],
            "totalAPR": self.total_apr,
            "totalDailyReward": self.total_daily_reward,
            "eligibility": self.eligibility,
            "budget": self.budget.to_dict() if self.budget else None,
            "unavailable": list(self.unavailable),
        }


class IncentiveService:
    """
    Facade over the cache, reward engine, eligibility manager and budget.

    Timeouts on any upstream read degrade that part of the result (zero
    incentive APR, no eligibility) and are listed under ``unavailable``.
    Other upstream failures propagate.
    """

    def __init__(
        self,
        provider: PositionDataProvider,
        cache: CacheManager,
        budget: BudgetTracker,
        engine: Optional[RewardEngine] = None,
        eligibility: Optional[EligibilityManager] = None,
        pool_address: str = "default",
        clock=utcnow,
    ):
        self._provider = provider
        self._cache = cache
        self._budget = budget
        self._engine = engine or RewardEngine(budget, clock=clock)
        self._eligibility = eligibility or EligibilityManager(
            minimum_position_value=budget.config.minimum_position_value,
            clock=clock,
        )
        self._pool_address = pool_address
        self._clock = clock
        self._ranked_from: Optional[List[Position]] = None
        budget.subscribe(self._on_config_change)

    @classmethod
    def from_settings(
        cls,
        provider: PositionDataProvider,
        config: Settings,
        cache: Optional[CacheManager] = None,
    ) -> "IncentiveService":
        """Wire a service from settings. The caller owns the cache's lifecycle."""
        program = ProgramConfig(
            total_allocation=config.program_total_allocation,
            duration_days=config.program_duration_days,
            start_date=config.resolved_program_start,
            base_weight=config.program_base_weight,
            lock_period_days=config.program_lock_period_days,
            minimum_position_value=config.minimum_position_value,
        )
        budget = BudgetTracker(program)
        cache = cache or CacheManager(
            max_entries=config.cache_max_entries,
            fetch_timeout=config.cache_fetch_timeout_seconds,
            sweep_interval=config.cache_sweep_interval_seconds,
        )
        return cls(
            provider=provider,
            cache=cache,
            budget=budget,
            engine=RewardEngine(budget, out_of_range_factor=config.out_of_range_multiplier),
            eligibility=EligibilityManager(
                capacity=config.ranking_capacity,
                minimum_position_value=config.minimum_position_value,
            ),
            pool_address=config.pool_address,
        )

    @property
    def cache(self) -> CacheManager:
        return self._cache

    @property
    def budget(self) -> BudgetTracker:
        return self._budget

    @property
    def eligibility(self) -> EligibilityManager:
        return self._eligibility

    # ===== CACHED READS =====

    async def get_pool_state(self) -> PoolState:
        async def fetch():
            return parse_pool_state(await self._provider.get_pool_state())

        return await self._cache.get(pool_key(self._pool_address), fetch)

    async def get_positions(self, address: str) -> List[Position]:
        async def fetch():
            raw = await self._provider.get_positions(address)
            return parse_positions(raw, owner=address.lower())

        return await self._cache.get(positions_key(address), fetch)

    async def refresh_ranking(self) -> RankingSnapshot:
        """Re-rank from the cached participant snapshot."""
        async def fetch():
            return parse_positions(await self._provider.get_all_positions())

        participants = await self._cache.get(ranking_key(), fetch)
        # Re-rank only when the cache handed back a new snapshot
        if participants is not self._ranked_from:
            self._eligibility.refresh(participants)
            self._ranked_from = participants
        return self._eligibility.snapshot

    # ===== PRESENTATION CONTRACTS =====

    async def get_dashboard_data(self, address: str) -> DashboardData:
        """
        Rewards, aggregate APR and ranking for one address.

        Positions, pool state and ranking load concurrently. A timeout in
        any of them is degraded locally; other errors propagate.
        """
        result = DashboardData(address=address.lower())
        positions_res, pool_res, ranking_res = await asyncio.gather(
            self.get_positions(address),
            self.get_pool_state(),
            self.refresh_ranking(),
            return_exceptions=True,
        )
        for outcome in (positions_res, pool_res, ranking_res):
            if isinstance(outcome, BaseException) and not isinstance(outcome, UpstreamTimeoutError):
                raise outcome

        now = self._clock()
        result.budget = self._budget.get_status(now)

        if isinstance(positions_res, UpstreamTimeoutError):
            logger.warning(f"Positions unavailable for {address}: {positions_res}")
            result.unavailable.append("positions")
            positions: List[Position] = []
        else:
            positions = positions_res

        if isinstance(pool_res, UpstreamTimeoutError):
            logger.warning(f"Pool state unavailable, incentive APR defaults to 0: {pool_res}")
            result.unavailable.append("pool")
            result.rewards_by_position = [
                PositionReward.unavailable(p, "pool state unavailable") for p in positions
            ]
            result.total_apr = 0.0
        else:
            result.rewards_by_position = self._engine.calculate_many(positions, pool_res, now)
            result.total_apr = RewardEngine.aggregate_apr(result.rewards_by_position)
            result.total_daily_reward = sum(
                r.daily_reward for r in result.rewards_by_position if r.available
            )

        if isinstance(ranking_res, UpstreamTimeoutError):
            logger.warning(f"Ranking unavailable: {ranking_res}")
            result.unavailable.append("eligibility")
        else:
            result.eligibility = self._eligibility_summary(ranking_res, positions)

        return result

    def _eligibility_summary(
        self,
        snapshot: RankingSnapshot,
        positions: List[Position],
    ) -> Dict[str, Any]:
        ranks = {
            p.id: snapshot.rank_of(p.id)
            for p in positions
        }
        ranked = [rank for rank in ranks.values() if rank is not None]
        return {
            "state": snapshot.state.value,
            "capacity": snapshot.capacity,
            "availableSlots": snapshot.available_slots,
            "thresholdLiquidity": snapshot.threshold_liquidity,
            "bestRank": min(ranked) if ranked else None,
            "rankByPosition": ranks,
        }

    async def get_replacement_requirements(self) -> Dict[str, Any]:
        await self.refresh_ranking()
        return self._eligibility.get_replacement_requirements()

    async def check_eligibility(
        self,
        liquidity_usd: float,
        days: float = 0,
    ) -> EligibilityResult:
        await self.refresh_ranking()
        return self._eligibility.check_eligibility(liquidity_usd, days)

    async def get_program_analytics(self) -> Dict[str, Any]:
        """Program-wide figures, cached under a ``program:`` key."""
        async def fetch():
            pool, snapshot = await asyncio.gather(
                self.get_pool_state(), self.refresh_ranking()
            )
            config = self._budget.config
            apr_range = self._engine.program_apr_range(pool)
            return {
                "program": config.to_dict(),
                "budget": self._budget.get_status().to_dict(),
                "totalPoolLiquidityUSD": pool.total_liquidity_usd,
                "rankedLiquidityUSD": snapshot.total_liquidity,
                "activeParticipants": len(snapshot.slots),
                "totalParticipants": snapshot.total_participants,
                "slotState": snapshot.state.value,
                "programAPR": apr_range,
            }

        return await self._cache.get(program_key("analytics"), fetch)

    def get_budget_status(self, now: Optional[datetime] = None) -> BudgetStatus:
        return self._budget.get_status(now)

    # ===== ADMIN CONTRACTS =====

    def set_program_config(
        self,
        total_allocation: float,
        duration_days: int,
        **overrides: Any,
    ) -> ProgramConfig:
        """
        Replace the program config; ``daily_budget`` and program analytics
        update before this returns.

        Raises:
            ConfigInconsistencyError: The update is rejected and the prior
                config kept
        """
        return self._budget.set_program_config(total_allocation, duration_days, **overrides)

    def _on_config_change(self, old: ProgramConfig, new: ProgramConfig) -> None:
        removed = self._cache.invalidate_pattern(PROGRAM_KEY_PREFIX)
        if old.minimum_position_value != new.minimum_position_value:
            self._eligibility.set_minimum_position_value(new.minimum_position_value)
            self._cache.invalidate(ranking_key())
            self._ranked_from = None
        logger.info(f"Program config changed; invalidated {removed} analytics entries")

    def invalidate_address(self, address: str) -> None:
        """Drop cached data touched by a confirmed position-mutating transaction."""
        self._cache.invalidate(positions_key(address))
        self._cache.invalidate(ranking_key())
        self._cache.invalidate_pattern(PROGRAM_KEY_PREFIX)
        self._ranked_from = None
