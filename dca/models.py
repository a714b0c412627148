from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from dca.cron import parse_expression


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StrategyStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


IntervalUnit = Literal["minutes", "hours", "days", "weeks"]

_UNIT_SUFFIXES: dict[str, IntervalUnit] = {
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


class IntervalFrequency(BaseModel):
    kind: Literal["interval"] = "interval"
    value: int = Field(gt=0)
    unit: IntervalUnit = "days"

    @classmethod
    def parse(cls, text: str) -> "IntervalFrequency":
        """Build from shorthand such as ``30m``, ``1h``, ``1d`` or ``2w``."""
        text = text.strip().lower()
        unit = _UNIT_SUFFIXES.get(text[-1:])
        if unit is None or not text[:-1].isdigit():
            raise ValueError(f"Unsupported interval: {text}")
        return cls(value=int(text[:-1]), unit=unit)

    def duration(self) -> timedelta:
        return timedelta(**{self.unit: self.value})


class CronFrequency(BaseModel):
    kind: Literal["cron"] = "cron"
    expression: str

    @field_validator("expression")
    @classmethod
    def _valid_expression(cls, value: str) -> str:
        parse_expression(value)
        return value.strip()


class DynamicFrequency(BaseModel):
    kind: Literal["dynamic"] = "dynamic"
    policy: str = "volatility_adaptive"
    params: dict[str, float] = Field(default_factory=dict)


FrequencyModel = Annotated[
    Union[IntervalFrequency, CronFrequency, DynamicFrequency],
    Field(discriminator="kind"),
]


class Conditions(BaseModel):
    min_price: float | None = Field(default=None, gt=0)
    max_price: float | None = Field(default=None, gt=0)
    only_on_dip: bool = False
    dip_threshold_pct: float = -5.0

    @field_validator("dip_threshold_pct")
    @classmethod
    def _negative_dip(cls, value: float) -> float:
        if value >= 0:
            raise ValueError("dip_threshold_pct must be negative")
        return value

    @model_validator(mode="after")
    def _ordered_bounds(self) -> "Conditions":
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price cannot exceed max_price")
        return self


class Limits(BaseModel):
    max_total_invested: float | None = Field(default=None, gt=0)
    max_executions: int | None = Field(default=None, gt=0)
    end_time: datetime | None = None

    @field_validator("end_time")
    @classmethod
    def _utc_end(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class Advanced(BaseModel):
    value_averaging: bool = False
    weekend_boost: bool = False


class Runtime(BaseModel):
    status: StrategyStatus = StrategyStatus.ACTIVE
    total_executions: int = 0
    total_invested: float = 0.0
    total_received: float = 0.0
    next_execution_at: datetime | None = None
    last_execution_at: datetime | None = None
    last_outcome: str | None = None
    last_message: str | None = None
    consecutive_failures: int = 0

    @field_validator("next_execution_at", "last_execution_at")
    @classmethod
    def _utc_times(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class StrategyDefinition(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    owner: str
    name: str = ""
    asset_in: str
    asset_out: str
    per_execution_amount: float = Field(gt=0)
    max_slippage_bps: int | None = Field(default=None, ge=0)
    frequency: FrequencyModel
    conditions: Conditions = Field(default_factory=Conditions)
    limits: Limits = Field(default_factory=Limits)
    advanced: Advanced = Field(default_factory=Advanced)
    start_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    runtime: Runtime = Field(default_factory=Runtime)

    @field_validator("start_at", "created_at")
    @classmethod
    def _utc_times(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _distinct_assets(self) -> "StrategyDefinition":
        if self.asset_in == self.asset_out:
            raise ValueError("asset_in and asset_out must differ")
        return self

    @property
    def status(self) -> StrategyStatus:
        return self.runtime.status

    @classmethod
    def daily(
        cls,
        owner: str,
        asset_in: str,
        asset_out: str,
        total_amount: float,
        daily_amount: float,
        **kwargs: Any,
    ) -> "StrategyDefinition":
        """Fixed daily purchase that stops once ``total_amount`` is spent."""
        if daily_amount <= 0 or total_amount < daily_amount:
            raise ValueError("daily_amount must be positive and not exceed total_amount")
        executions = max(1, int(total_amount // daily_amount))
        return cls(
            owner=owner,
            asset_in=asset_in,
            asset_out=asset_out,
            per_execution_amount=daily_amount,
            frequency=IntervalFrequency(value=1, unit="days"),
            limits=Limits(max_total_invested=total_amount, max_executions=executions),
            **kwargs,
        )
