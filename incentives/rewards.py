"""
Reward calculation engine.

    time_multiplier = 1 + (D_u / P) * w1
    daily_reward    = (L_u / L_T) * time_multiplier * daily_budget * IRM
    annualized_apr  = daily_reward * 365 / L_u * 100

L_u is the position's USD liquidity, L_T the pool's total USD liquidity,
D_u the days the position has been active (clamped to [0, P]), P the program
length in days, w1 the base weight and IRM the in-range multiplier.

Every function here is pure and synchronous. ``RewardEngine`` binds them to
the budget tracker so ``daily_budget`` always comes from one place.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .budget import BudgetTracker, SECONDS_PER_DAY, utcnow
from .errors import ValidationError
from .schemas import PoolState, Position, require_finite

logger = logging.getLogger("rewards.engine")

DAYS_PER_YEAR = 365

# Reference position used for program-level APR estimates
REFERENCE_POSITION_USD = 10_000.0


def time_multiplier(days_active: float, program_days: float, base_weight: float) -> float:
    """
    Loyalty boost in [1, 1 + base_weight], non-decreasing in ``days_active``.

    ``days_active`` beyond the program length earns no extra boost.
    """
    days = require_finite("days_active", days_active)
    program = require_finite("program_days", program_days)
    if program <= 0:
        raise ValidationError("program_days must be positive", field="program_days")
    weight = require_finite("base_weight", base_weight)
    if weight > 1:
        raise ValidationError(f"base_weight must be <= 1, got {weight}", field="base_weight")

    clamped = min(days, program)
    return 1 + (clamped / program) * weight


def in_range_multiplier(position: Position, out_of_range_factor: float = 0.0) -> float:
    """1.0 while the position brackets the current tick, else the reduced factor."""
    if position.in_range:
        return 1.0
    return out_of_range_factor


def daily_reward(
    position_liquidity: float,
    pool_liquidity: float,
    days_active: float,
    program_days: float,
    base_weight: float,
    daily_budget: float,
    irm: float = 1.0,
) -> float:
    """
    Tokens per day earned by one position.

    Returns 0 when the pool is empty or the position is out of range.

    Raises:
        ValidationError: On negative or non-finite inputs, or irm above 1
    """
    l_u = require_finite("position_liquidity", position_liquidity)
    l_t = require_finite("pool_liquidity", pool_liquidity)
    budget = require_finite("daily_budget", daily_budget)
    multiplier = require_finite("irm", irm)
    if multiplier > 1:
        raise ValidationError(f"irm must be <= 1, got {multiplier}", field="irm")
    boost = time_multiplier(days_active, program_days, base_weight)

    if l_t == 0 or multiplier == 0:
        return 0.0
    return (l_u / l_t) * boost * budget * multiplier


def annualized_apr(daily: float, position_liquidity: float) -> Optional[float]:
    """APR in percent; None when the position holds no liquidity."""
    reward = require_finite("daily_reward", daily)
    l_u = require_finite("position_liquidity", position_liquidity)
    if l_u == 0:
        return None
    return reward * DAYS_PER_YEAR / l_u * 100


def days_active(entry_timestamp: datetime, now: datetime) -> int:
    """Whole days since the position entered the program (never negative)."""
    seconds = (now - entry_timestamp).total_seconds()
    return max(int(seconds // SECONDS_PER_DAY), 0)


@dataclass
class PositionReward:
    """Reward breakdown for one position."""
    position_id: str
    liquidity_value_usd: float
    days_active: int
    time_multiplier: float
    in_range: bool
    in_range_multiplier: float
    liquidity_share: float
    daily_reward: float
    apr: Optional[float]
    can_claim: bool
    days_until_claim: int
    available: bool = True
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, position: Position, reason: str) -> "PositionReward":
        """Placeholder when the reward could not be computed."""
        return cls(
            position_id=position.id,
            liquidity_value_usd=position.liquidity_value_usd,
            days_active=0,
            time_multiplier=1.0,
            in_range=position.in_range,
            in_range_multiplier=0.0,
            liquidity_share=0.0,
            daily_reward=0.0,
            apr=0.0,
            can_claim=False,
            days_until_claim=0,
            available=False,
            error=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positionId": self.position_id,
            "liquidityValueUSD": self.liquidity_value_usd,
            "daysActive": self.days_active,
            "timeMultiplier": self.time_multiplier,
            "inRange": self.in_range,
            "inRangeMultiplier": self.in_range_multiplier,
            "liquidityShare": self.liquidity_share,
            "dailyReward": self.daily_reward,
            "apr": self.apr,
            "canClaim": self.can_claim,
            "daysUntilClaim": self.days_until_claim,
            "available": self.available,
            "error": self.error,
        }


class RewardEngine:
    """
    Applies the reward formula to validated positions.

    Args:
        budget: Source of ``daily_budget``, program length and base weight
        out_of_range_factor: IRM applied to out-of-range positions (0 = no reward)
        clock: Current time for days-active and claimability
    """

    def __init__(
        self,
        budget: BudgetTracker,
        out_of_range_factor: float = 0.0,
        clock=utcnow,
    ):
        factor = require_finite("out_of_range_factor", out_of_range_factor)
        if factor > 1:
            raise ValidationError(
                "out_of_range_factor must be <= 1", field="out_of_range_factor"
            )
        self._budget = budget
        self._out_of_range_factor = factor
        self._clock = clock

    @property
    def budget(self) -> BudgetTracker:
        return self._budget

    def calculate(
        self,
        position: Position,
        pool: PoolState,
        now: Optional[datetime] = None,
    ) -> PositionReward:
        """
        Compute one position's reward against a pool snapshot.

        The in-range multiplier is re-evaluated against the pool's current
        tick, not the tick the position was fetched with.
        """
        now = now or self._clock()
        config = self._budget.config
        live = position.with_current_tick(pool.current_tick)

        active = days_active(live.entry_timestamp, now)
        irm = in_range_multiplier(live, self._out_of_range_factor)
        boost = time_multiplier(active, config.duration_days, config.base_weight)
        reward = daily_reward(
            live.liquidity_value_usd,
            pool.total_liquidity_usd,
            active,
            config.duration_days,
            config.base_weight,
            self._budget.daily_budget,
            irm,
        )
        share = (
            live.liquidity_value_usd / pool.total_liquidity_usd
            if pool.total_liquidity_usd > 0
            else 0.0
        )
        days_until_claim = max(config.lock_period_days - active, 0)

        logger.debug(
            f"Position {live.id}: share={share:.6f} boost={boost:.4f} "
            f"irm={irm} daily={reward:.4f}"
        )
        return PositionReward(
            position_id=live.id,
            liquidity_value_usd=live.liquidity_value_usd,
            days_active=active,
            time_multiplier=boost,
            in_range=live.in_range,
            in_range_multiplier=irm,
            liquidity_share=share,
            daily_reward=reward,
            apr=annualized_apr(reward, live.liquidity_value_usd),
            can_claim=days_until_claim == 0,
            days_until_claim=days_until_claim,
        )

    def calculate_many(
        self,
        positions: Iterable[Position],
        pool: PoolState,
        now: Optional[datetime] = None,
    ) -> List[PositionReward]:
        """
        Compute rewards for several positions against one snapshot.

        A position whose computation fails is reported as unavailable; the
        others are unaffected.
        """
        now = now or self._clock()
        results = []
        for position in positions:
            try:
                results.append(self.calculate(position, pool, now))
            except ValidationError as e:
                logger.warning(f"Reward computation failed for {position.id}: {e}")
                results.append(PositionReward.unavailable(position, str(e)))
        return results

    @staticmethod
    def aggregate_apr(rewards: Iterable[PositionReward]) -> Optional[float]:
        """Liquidity-weighted APR across positions; None without liquidity."""
        rewards = [r for r in rewards if r.available]
        total_liquidity = sum(r.liquidity_value_usd for r in rewards)
        if total_liquidity <= 0:
            return None
        total_daily = sum(r.daily_reward for r in rewards)
        return annualized_apr(total_daily, total_liquidity)

    def program_apr_range(self, pool: PoolState) -> Dict[str, Optional[float]]:
        """
        APR of an in-range reference position on day 0 and at full loyalty.
        """
        config = self._budget.config
        if pool.total_liquidity_usd <= 0:
            return {"minimum": 0.0, "maximum": 0.0}
        pool_liquidity = pool.total_liquidity_usd + REFERENCE_POSITION_USD

        def apr_at(days: float) -> Optional[float]:
            reward = daily_reward(
                REFERENCE_POSITION_USD,
                pool_liquidity,
                days,
                config.duration_days,
                config.base_weight,
                self._budget.daily_budget,
            )
            return annualized_apr(reward, REFERENCE_POSITION_USD)

        return {"minimum": apr_at(0), "maximum": apr_at(config.duration_days)}
