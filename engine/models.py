from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal


@dataclass
class Candle:
    ts: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class PriceSnapshot:
    asset: str
    price: float
    change_24h_pct: float


@dataclass(frozen=True)
class Quote:
    asset_in: str
    asset_out: str
    amount: float
    expected_out: float
    price_impact_bps: float


@dataclass(frozen=True)
class Fill:
    order_id: str
    asset_in: str
    asset_out: str
    amount_in: float
    actual_out: float
    actual_price: float


@dataclass(frozen=True)
class ExecutionRequest:
    strategy_id: str
    owner: str
    asset_in: str
    asset_out: str
    amount: float
    max_slippage_bps: int
    scheduled_time: datetime


class ExecutionOutcome(str, Enum):
    FILLED = "filled"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRecord:
    strategy_id: str
    scheduled_time: datetime
    amount_in: float
    amount_out: float
    price: float
    outcome: ExecutionOutcome
    reason: str | None = None
    order_id: str | None = None
    created_at: datetime | None = None


@dataclass
class PnL:
    amount: float
    pct: float


@dataclass
class Position:
    owner: str
    asset: str
    quantity: float
    average_cost: float | None
    last_price: float | None
    realized_pnl: float = 0.0
    archived: bool = False

    @property
    def market_value(self) -> float:
        if self.last_price is None:
            return 0.0
        return self.quantity * self.last_price

    @property
    def unrealized_pnl(self) -> PnL:
        if self.quantity <= 0 or self.average_cost is None or self.last_price is None:
            return PnL(0.0, 0.0)
        cost_basis = self.quantity * self.average_cost
        amount = self.market_value - cost_basis
        pct = (amount / cost_basis) * 100.0 if cost_basis else 0.0
        return PnL(amount, pct)


@dataclass(frozen=True)
class FillResult:
    """Outcome of applying a single fill to a position."""

    position: Position
    realized_pnl: float
    closed: bool


@dataclass(frozen=True)
class MACD:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class Stochastic:
    k: float
    d: float | None


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    bandwidth: float


@dataclass(frozen=True)
class PivotPoints:
    pivot: float
    r1: float
    r2: float
    r3: float
    s1: float
    s2: float
    s3: float


@dataclass(frozen=True)
class IndicatorSet:
    asset: str
    computed_at: datetime
    close: float | None
    sma20: float | None = None
    sma50: float | None = None
    sma200: float | None = None
    ema12: float | None = None
    ema26: float | None = None
    ema50: float | None = None
    macd: MACD | None = None
    rsi14: float | None = None
    stochastic: Stochastic | None = None
    williams_r: float | None = None
    bollinger: BollingerBands | None = None
    atr14: float | None = None
    obv: float = 0.0
    volume_sma20: float | None = None
    pivots: PivotPoints | None = None
    trend_strength: float | None = None
    volatility_score: float | None = None
    momentum_score: float | None = None
    undercomputed: tuple[str, ...] = ()


SignalDirection = Literal["buy", "sell", "hold"]


@dataclass(frozen=True)
class Signal:
    asset: str
    direction: SignalDirection
    strength: float
    contributing_indicators: tuple[str, ...] = field(default_factory=tuple)
    generated_at: datetime | None = None
    valid_until: datetime | None = None

    def is_valid(self, now: datetime) -> bool:
        return self.valid_until is None or now < self.valid_until
