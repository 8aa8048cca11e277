"""
Top-N eligibility and slot replacement.

Participants are ranked by USD liquidity (ties: earliest entry first). The
ranked view is rebuilt from a fresh snapshot on every refresh and swapped in
with a single assignment, so concurrent readers always see a complete list.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .budget import SECONDS_PER_DAY, utcnow
from .schemas import Position, require_finite

logger = logging.getLogger("eligibility.manager")

DEFAULT_CAPACITY = 100

# (name, horizon in days)
REPLACEMENT_HORIZONS: Tuple[Tuple[str, int], ...] = (
    ("immediate", 0),
    ("monthly", 30),
    ("quarterly", 90),
)


class SlotState(Enum):
    SLOTS_AVAILABLE = "slots_available"
    FULL = "full"


@dataclass(frozen=True)
class RankedSlot:
    rank: int
    position_id: str
    owner: str
    liquidity_value_usd: float
    since_timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "positionId": self.position_id,
            "owner": self.owner,
            "liquidityValueUSD": self.liquidity_value_usd,
            "sinceTimestamp": self.since_timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ReplacementStrategy:
    minimum_liquidity: float
    days: int
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minimumLiquidity": self.minimum_liquidity,
            "days": self.days,
            "description": self.description,
        }


@dataclass
class EligibilityResult:
    eligible: bool
    message: str
    rank: Optional[int] = None
    shortfall: Optional[float] = None
    advisory: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"eligible": self.eligible, "message": self.message}
        if self.rank is not None:
            result["rank"] = self.rank
        if self.shortfall is not None:
            result["shortfall"] = self.shortfall
        if self.advisory:
            result["advisory"] = self.advisory
        return result


@dataclass(frozen=True)
class RankingSnapshot:
    """Immutable ranked Top-N view built from one participant snapshot."""
    slots: Tuple[RankedSlot, ...]
    capacity: int
    built_at: datetime
    total_participants: int = 0
    _index: Dict[str, int] = field(default_factory=dict, compare=False, repr=False)

    @property
    def state(self) -> SlotState:
        if len(self.slots) >= self.capacity:
            return SlotState.FULL
        return SlotState.SLOTS_AVAILABLE

    @property
    def available_slots(self) -> int:
        return max(self.capacity - len(self.slots), 0)

    @property
    def last_slot(self) -> Optional[RankedSlot]:
        return self.slots[-1] if self.slots else None

    @property
    def threshold_liquidity(self) -> Optional[float]:
        """Liquidity to beat for entry while FULL; None while slots remain."""
        if self.state is SlotState.FULL:
            return self.slots[-1].liquidity_value_usd
        return None

    @property
    def total_liquidity(self) -> float:
        return sum(slot.liquidity_value_usd for slot in self.slots)

    def rank_of(self, position_id: str) -> Optional[int]:
        return self._index.get(position_id)

    def projected_rank(self, liquidity_usd: float) -> int:
        """Rank a newcomer with this liquidity would take (ties rank after incumbents)."""
        ahead = sum(1 for slot in self.slots if slot.liquidity_value_usd >= liquidity_usd)
        return ahead + 1


def rank_positions(
    positions: Iterable[Position],
    capacity: int = DEFAULT_CAPACITY,
    minimum_position_value: float = 0.0,
    now: Optional[datetime] = None,
) -> RankingSnapshot:
    """
    Build a ranking snapshot from validated positions.

    Positions with zero liquidity, or below ``minimum_position_value``, are
    not ranked. Order is liquidity descending, then earliest entry, then id.
    """
    if capacity < 1:
        raise ValueError("capacity must be at least 1")
    candidates = [
        p for p in positions
        if p.liquidity_value_usd > 0 and p.liquidity_value_usd >= minimum_position_value
    ]
    candidates.sort(key=lambda p: (-p.liquidity_value_usd, p.entry_timestamp, p.id))

    slots = tuple(
        RankedSlot(
            rank=i + 1,
            position_id=p.id,
            owner=p.owner,
            liquidity_value_usd=p.liquidity_value_usd,
            since_timestamp=p.entry_timestamp,
        )
        for i, p in enumerate(candidates[:capacity])
    )
    return RankingSnapshot(
        slots=slots,
        capacity=capacity,
        built_at=now or utcnow(),
        total_participants=len(candidates),
        _index={slot.position_id: slot.rank for slot in slots},
    )


class EligibilityManager:
    """
    Maintains the ranked Top-N view and answers entry questions against it.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        minimum_position_value: float = 0.0,
        clock=utcnow,
    ):
        self._capacity = capacity
        self._minimum_position_value = require_finite(
            "minimum_position_value", minimum_position_value
        )
        self._clock = clock
        self._snapshot = rank_positions([], capacity, now=clock())

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def snapshot(self) -> RankingSnapshot:
        return self._snapshot

    @property
    def state(self) -> SlotState:
        return self._snapshot.state

    def set_minimum_position_value(self, value: float) -> None:
        """Applies from the next refresh."""
        self._minimum_position_value = require_finite("minimum_position_value", value)

    def refresh(self, positions: Iterable[Position]) -> RankingSnapshot:
        """Replace the ranked view wholesale from a fresh snapshot."""
        previous = self._snapshot
        snapshot = rank_positions(
            positions,
            self._capacity,
            self._minimum_position_value,
            now=self._clock(),
        )
        self._snapshot = snapshot

        if snapshot.state is not previous.state:
            logger.info(
                f"Ranking state {previous.state.value} -> {snapshot.state.value} "
                f"({len(snapshot.slots)}/{self._capacity} slots)"
            )
        else:
            logger.debug(f"Ranking refreshed: {len(snapshot.slots)}/{self._capacity} slots")
        return snapshot

    def rank_of(self, position_id: str) -> Optional[int]:
        return self._snapshot.rank_of(position_id)

    def _days_active(self, slot: RankedSlot, now: datetime) -> int:
        seconds = (now - slot.since_timestamp).total_seconds()
        return max(int(seconds // SECONDS_PER_DAY), 0)

    def _horizon_minimum(self, slot: RankedSlot, days_active: int, horizon: int) -> float:
        # Rank-N's liquidity-time score spread over its tenure plus the horizon
        tenure = max(days_active, 1)
        minimum = slot.liquidity_value_usd * tenure / (tenure + horizon)
        return max(minimum, self._minimum_position_value)

    def replacement_strategies(
        self,
        snapshot: Optional[RankingSnapshot] = None,
    ) -> Dict[str, ReplacementStrategy]:
        """
        Replacement strategies while FULL; empty while slots remain.

        Only ``immediate`` is a hard entry rule. Longer horizons are
        projections that assume incumbents drift out over time.
        """
        snapshot = snapshot or self._snapshot
        if snapshot.state is not SlotState.FULL:
            return {}

        last = snapshot.last_slot
        tenure = self._days_active(last, self._clock())
        strategies = {}
        for name, horizon in REPLACEMENT_HORIZONS:
            if horizon == 0:
                strategies[name] = ReplacementStrategy(
                    minimum_liquidity=last.liquidity_value_usd,
                    days=0,
                    description=(
                        f"Add more than ${last.liquidity_value_usd:,.2f} to displace "
                        f"rank #{last.rank} now"
                    ),
                )
                continue
            minimum = self._horizon_minimum(last, tenure, horizon)
            strategies[name] = ReplacementStrategy(
                minimum_liquidity=minimum,
                days=horizon,
                description=(
                    f"About ${minimum:,.2f} held for {horizon} days may qualify "
                    f"as participants leave (projection, not guaranteed)"
                ),
            )
        return strategies

    def get_replacement_requirements(self) -> Dict[str, Any]:
        """Strategy table plus the current slot situation."""
        snapshot = self._snapshot
        result: Dict[str, Any] = {
            "state": snapshot.state.value,
            "slotsAvailable": snapshot.state is SlotState.SLOTS_AVAILABLE,
            "availableSlots": snapshot.available_slots,
            "capacity": snapshot.capacity,
            "totalParticipants": snapshot.total_participants,
            "minimumLiquidity": self._minimum_position_value,
        }

        if snapshot.state is SlotState.SLOTS_AVAILABLE:
            result["message"] = (
                f"{snapshot.available_slots} of {snapshot.capacity} slots open. "
                f"Any position of at least ${self._minimum_position_value:,.2f} qualifies."
            )
            return result

        last = snapshot.last_slot
        tenure = self._days_active(last, self._clock())
        result["minimumLiquidity"] = last.liquidity_value_usd
        result["rankNRequirements"] = {
            "rank": last.rank,
            "currentLiquidity": last.liquidity_value_usd,
            "daysActive": tenure,
            "liquidityScore": last.liquidity_value_usd * tenure,
        }
        result["replacementStrategies"] = {
            name: strategy.to_dict()
            for name, strategy in self.replacement_strategies(snapshot).items()
        }
        result["message"] = (
            f"All {snapshot.capacity} slots are taken. "
            f"Exceed ${last.liquidity_value_usd:,.2f} to enter immediately."
        )
        return result

    def check_eligibility(
        self,
        proposed_liquidity_usd: float,
        days_willing_to_wait: float = 0,
    ) -> EligibilityResult:
        """
        Would a new position with this liquidity enter the Top-N?

        Raises:
            ValidationError: On negative or non-finite input
        """
        liquidity = require_finite("proposed_liquidity_usd", proposed_liquidity_usd)
        days = require_finite("days_willing_to_wait", days_willing_to_wait)
        snapshot = self._snapshot

        if snapshot.state is SlotState.SLOTS_AVAILABLE:
            if liquidity <= 0 or liquidity < self._minimum_position_value:
                floor = max(self._minimum_position_value, 0.0)
                return EligibilityResult(
                    eligible=False,
                    shortfall=floor - liquidity if floor > liquidity else None,
                    message=(
                        f"A position needs more than $0 and at least ${floor:,.2f} "
                        f"of liquidity to be ranked."
                    ),
                )
            rank = snapshot.projected_rank(liquidity)
            return EligibilityResult(
                eligible=True,
                rank=rank,
                message=f"You would be ranked #{rank} with ${liquidity:,.2f} of liquidity.",
            )

        # Rank N already clears the minimum unless it was raised since the last refresh
        threshold = max(snapshot.threshold_liquidity, self._minimum_position_value)
        if liquidity > threshold:
            rank = snapshot.projected_rank(liquidity)
            return EligibilityResult(
                eligible=True,
                rank=rank,
                message=f"You would be ranked #{rank} with ${liquidity:,.2f} of liquidity.",
            )

        shortfall = threshold - liquidity
        advisory = None
        if days > 0:
            last = snapshot.last_slot
            tenure = self._days_active(last, self._clock())
            projected = self._horizon_minimum(last, tenure, int(days))
            if liquidity >= projected:
                advisory = (
                    f"If participants leave over the next {int(days)} days, "
                    f"${liquidity:,.2f} may become enough. This is a projection, "
                    f"not a guarantee."
                )
            else:
                advisory = (
                    f"Even over {int(days)} days, about ${projected:,.2f} would likely "
                    f"be needed. This is a projection, not a guarantee."
                )
        return EligibilityResult(
            eligible=False,
            shortfall=shortfall,
            message=(
                f"Need ${shortfall:,.2f} more liquidity to exceed "
                f"rank #{snapshot.capacity}."
            ),
            advisory=advisory,
        )
