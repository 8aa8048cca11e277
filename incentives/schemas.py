"""
Validated records for positions, pool state and program configuration.

Raw provider payloads are parsed here, at the ingestion boundary, so the reward
engine never sees NaN, negative liquidity or missing fields.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ValidationError


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ===== POSITION SCHEMAS =====

class Position(BaseModel):
    """A concentrated-liquidity position valued in USD."""
    id: str
    owner: str = ""
    liquidity_value_usd: float = Field(alias="liquidityValueUSD", ge=0, allow_inf_nan=False)
    entry_timestamp: datetime = Field(alias="entryTimestamp")
    tick_lower: int = Field(alias="tickLower")
    tick_upper: int = Field(alias="tickUpper")
    current_tick: int = Field(alias="currentTick")

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("id", "owner", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("entry_timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_range(self) -> "Position":
        if self.tick_lower > self.tick_upper:
            raise ValueError(
                f"tick_lower {self.tick_lower} is above tick_upper {self.tick_upper}"
            )
        return self

    @property
    def in_range(self) -> bool:
        """True while the current tick sits inside [tick_lower, tick_upper]."""
        return self.tick_lower <= self.current_tick <= self.tick_upper

    def with_current_tick(self, current_tick: int) -> "Position":
        """Copy of this position re-evaluated against a newer pool tick."""
        return self.model_copy(update={"current_tick": current_tick})


class PoolState(BaseModel):
    """Pool-level snapshot shared by every position's reward computation."""
    total_liquidity_usd: float = Field(alias="totalPoolLiquidityUSD", ge=0, allow_inf_nan=False)
    current_tick: int = Field(alias="currentTick")

    class Config:
        populate_by_name = True
        frozen = True


# ===== PROGRAM SCHEMAS =====

class ProgramConfig(BaseModel):
    """
    Incentive program parameters.

    ``daily_budget`` is derived from the allocation and duration and is never
    stored, so it always satisfies ``daily_budget * duration_days == total_allocation``.
    """
    total_allocation: float = Field(ge=0, allow_inf_nan=False)
    duration_days: int = Field(gt=0)
    start_date: datetime
    base_weight: float = Field(default=0.6, ge=0, le=1, allow_inf_nan=False)
    lock_period_days: int = Field(default=7, ge=0)
    minimum_position_value: float = Field(default=0.0, ge=0, allow_inf_nan=False)

    class Config:
        frozen = True

    @field_validator("start_date")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def daily_budget(self) -> float:
        return self.total_allocation / self.duration_days

    @property
    def end_date(self) -> datetime:
        return self.start_date + timedelta(days=self.duration_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAllocation": self.total_allocation,
            "durationDays": self.duration_days,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "baseWeight": self.base_weight,
            "lockPeriodDays": self.lock_period_days,
            "minimumPositionValue": self.minimum_position_value,
            "dailyBudget": self.daily_budget,
        }


# ===== INGESTION HELPERS =====

def _describe(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


def parse_position(raw: Dict[str, Any], owner: Optional[str] = None) -> Position:
    """
    Validate one raw position payload.

    Raises:
        ValidationError: If any field is missing, negative or non-finite
    """
    payload = dict(raw)
    if owner is not None and not payload.get("owner"):
        payload["owner"] = owner
    try:
        return Position.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid position {raw.get('id', '?')}: {_describe(e)}",
            field="position",
        ) from e


def parse_positions(raw: Iterable[Dict[str, Any]], owner: Optional[str] = None) -> List[Position]:
    """Validate a list of raw positions; the first malformed entry rejects the batch."""
    return [parse_position(item, owner=owner) for item in raw]


def parse_pool_state(raw: Dict[str, Any]) -> PoolState:
    try:
        return PoolState.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid pool state: {_describe(e)}", field="pool") from e


def require_finite(name: str, value: Any, minimum: float = 0.0) -> float:
    """
    Check a numeric input is a finite number no lower than ``minimum``.

    Raises:
        ValidationError: Otherwise; values are never silently clamped
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name)
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {value}", field=name)
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}", field=name)
    return float(value)
