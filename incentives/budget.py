"""
Program budget tracking.

The daily emission is fixed at ``total_allocation / duration_days`` for the
whole program rather than recomputed from whatever budget remains. A fixed
rate cannot drain the treasury early and gives participants a predictable
distribution for the full horizon.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pydantic

from .errors import ConfigInconsistencyError
from .schemas import ProgramConfig

logger = logging.getLogger("budget.tracker")

SECONDS_PER_DAY = 86400

ConfigListener = Callable[[ProgramConfig, ProgramConfig], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BudgetStatus:
    """Point-in-time view of program spend."""
    is_active: bool
    daily_budget: float
    total_allocation: float
    elapsed_days: float
    remaining_days: float
    distributed_budget: float
    remaining_budget: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isActive": self.is_active,
            "dailyBudget": self.daily_budget,
            "totalAllocation": self.total_allocation,
            "elapsedDays": self.elapsed_days,
            "remainingDays": self.remaining_days,
            "distributedBudget": self.distributed_budget,
            "remainingBudget": self.remaining_budget,
        }


class BudgetTracker:
    """
    Owns the ``ProgramConfig`` and everything derived from it.

    Reward computations read ``daily_budget`` from here so that a
    mid-program configuration change reaches every consumer at once.
    Listeners registered with ``subscribe`` are called synchronously after
    each successful update with ``(old_config, new_config)``.
    """

    def __init__(
        self,
        config: ProgramConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._clock = clock
        self._listeners: List[ConfigListener] = []

    @property
    def config(self) -> ProgramConfig:
        return self._config

    @property
    def daily_budget(self) -> float:
        return self._config.daily_budget

    def subscribe(self, listener: ConfigListener) -> None:
        self._listeners.append(listener)

    def set_program_config(
        self,
        total_allocation: float,
        duration_days: int,
        start_date: Optional[datetime] = None,
        base_weight: Optional[float] = None,
        lock_period_days: Optional[int] = None,
        minimum_position_value: Optional[float] = None,
    ) -> ProgramConfig:
        """
        Replace the program configuration.

        Omitted fields keep their current values.

        Raises:
            ConfigInconsistencyError: If the new values are invalid; the prior
                config stays in effect
        """
        if isinstance(total_allocation, (int, float)) and not math.isfinite(total_allocation):
            raise ConfigInconsistencyError(
                f"total_allocation must be finite, got {total_allocation}"
            )
        if isinstance(duration_days, (int, float)) and duration_days <= 0:
            raise ConfigInconsistencyError(
                f"duration_days must be positive, got {duration_days}"
            )

        current = self._config
        values = {
            "total_allocation": total_allocation,
            "duration_days": duration_days,
            "start_date": start_date if start_date is not None else current.start_date,
            "base_weight": base_weight if base_weight is not None else current.base_weight,
            "lock_period_days": (
                lock_period_days if lock_period_days is not None else current.lock_period_days
            ),
            "minimum_position_value": (
                minimum_position_value
                if minimum_position_value is not None
                else current.minimum_position_value
            ),
        }
        try:
            new_config = ProgramConfig(**values)
        except pydantic.ValidationError as e:
            logger.warning(f"Rejected program config update: {e.error_count()} error(s)")
            raise ConfigInconsistencyError(f"Invalid program config: {e}") from e

        self._config = new_config
        logger.info(
            f"Program config updated: allocation={new_config.total_allocation} "
            f"duration={new_config.duration_days}d "
            f"daily_budget={new_config.daily_budget:.2f}"
        )
        for listener in self._listeners:
            listener(current, new_config)
        return new_config

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self._clock()

    def elapsed_days(self, now: Optional[datetime] = None) -> float:
        """Days since program start, clamped to [0, duration_days]."""
        seconds = (self._now(now) - self._config.start_date).total_seconds()
        days = seconds / SECONDS_PER_DAY
        return min(max(days, 0.0), float(self._config.duration_days))

    def remaining_days(self, now: Optional[datetime] = None) -> float:
        return self._config.duration_days - self.elapsed_days(now)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        current = self._now(now)
        return self._config.start_date <= current <= self._config.end_date

    def distributed_budget(self, now: Optional[datetime] = None) -> float:
        """Emission to date at the fixed daily rate."""
        return self.daily_budget * self.elapsed_days(now)

    def remaining_budget(self, now: Optional[datetime] = None) -> float:
        return max(self._config.total_allocation - self.distributed_budget(now), 0.0)

    def get_status(self, now: Optional[datetime] = None) -> BudgetStatus:
        current = self._now(now)
        return BudgetStatus(
            is_active=self.is_active(current),
            daily_budget=self.daily_budget,
            total_allocation=self._config.total_allocation,
            elapsed_days=self.elapsed_days(current),
            remaining_days=self.remaining_days(current),
            distributed_budget=self.distributed_budget(current),
            remaining_budget=self.remaining_budget(current),
        )
