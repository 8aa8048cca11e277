"""
Liquidity-provider incentive rewards: reward engine, Top-N eligibility and
a coalescing cache in front of the position indexer.
"""
from .budget import BudgetStatus, BudgetTracker
from .cache import CacheManager
from .dashboard import DashboardData, IncentiveService
from .eligibility import (
    EligibilityManager,
    EligibilityResult,
    RankedSlot,
    RankingSnapshot,
    ReplacementStrategy,
    SlotState,
)
from .errors import (
    ConfigInconsistencyError,
    IncentiveError,
    UpstreamFailureError,
    UpstreamTimeoutError,
    ValidationError,
)
from .rewards import PositionReward, RewardEngine
from .schemas import PoolState, Position, ProgramConfig

__version__ = "0.1.0"

__all__ = [
    "BudgetStatus",
    "BudgetTracker",
    "CacheManager",
    "DashboardData",
    "IncentiveService",
    "EligibilityManager",
    "EligibilityResult",
    "RankedSlot",
    "RankingSnapshot",
    "ReplacementStrategy",
    "SlotState",
    "ConfigInconsistencyError",
    "IncentiveError",
    "UpstreamFailureError",
    "UpstreamTimeoutError",
    "ValidationError",
    "PositionReward",
    "RewardEngine",
    "PoolState",
    "Position",
    "ProgramConfig",
]
