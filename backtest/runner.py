from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np
import pandas as pd

from backtest.metrics import PerformanceReport, compute_performance
from dca.frequency import next_slot
from dca.models import DynamicFrequency, Runtime, StrategyDefinition, StrategyStatus
from dca.scheduler import WeekendBoost, evaluate_due, limit_reached
from engine.errors import ScheduleError
from engine.ledger import apply_fill
from engine.models import Candle, ExecutionOutcome, ExecutionRecord, Position, PriceSnapshot
from indicators.engine import candles_frame, compute_indicators


DAY_SECONDS = 86400


@dataclass
class BacktestResult:
    strategy: StrategyDefinition
    records: list[ExecutionRecord]
    position: Position | None
    final_price: float | None
    report: PerformanceReport


def load_candles_csv(csv_path: str) -> list[Candle]:
    df = pd.read_csv(csv_path)
    return [
        Candle(
            ts=int(row["timestamp"]),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row.get("volume", 0)),
        )
        for _, row in df.iterrows()
    ]


def _at(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def run_backtest(
    definition: StrategyDefinition,
    candles: list[Candle],
    fee_bps: float = 0.0,
    boost: WeekendBoost | None = None,
) -> BacktestResult:
    """Replay ``definition`` over ``candles``, filling at each candle's close.

    One due-check per candle at most; slots missed between candles roll
    forward exactly as they do live.
    """
    frame = candles_frame(candles)
    strategy = definition.model_copy(deep=True)
    strategy.runtime = Runtime()
    records: list[ExecutionRecord] = []
    position: Position | None = None
    if frame.empty:
        return BacktestResult(strategy, records, None, None, compute_performance(records))

    ordered = [Candle(**row) for row in frame.to_dict("records")]
    timestamps = frame["ts"].to_numpy()
    closes = frame["close"].to_numpy()
    strategy.runtime.next_execution_at = strategy.start_at or _at(timestamps[0])

    for i in range(len(frame)):
        if strategy.status != StrategyStatus.ACTIVE:
            break
        now = _at(timestamps[i])
        price = float(closes[i])
        scheduled = strategy.runtime.next_execution_at
        if scheduled is None or scheduled > now:
            continue

        # 24h change against the last close at or before now - 1 day
        j = int(np.searchsorted(timestamps, timestamps[i] - DAY_SECONDS, side="right")) - 1
        change = (price - closes[j]) / closes[j] * 100.0 if j >= 0 and closes[j] else 0.0
        snapshot = PriceSnapshot(asset=strategy.asset_out, price=price, change_24h_pct=change)

        decision = evaluate_due(strategy, snapshot, strategy.runtime.total_received * price, now, boost)
        if decision.action == "complete":
            records.append(ExecutionRecord(strategy.id, scheduled, 0.0, 0.0, price, ExecutionOutcome.SKIPPED, decision.reason))
            strategy.runtime.status = StrategyStatus.COMPLETED
            strategy.runtime.last_message = f"Completed: {decision.reason}"
            break

        if decision.action == "execute":
            fill_price = price * (1 + fee_bps / 10000.0)
            quantity = decision.amount / fill_price
            position = apply_fill(position, strategy.owner, strategy.asset_out, "buy", quantity, fill_price).position
            runtime = strategy.runtime
            runtime.total_executions += 1
            runtime.total_invested += decision.amount
            runtime.total_received += quantity
            runtime.last_execution_at = now
            runtime.last_outcome = "filled"
            records.append(
                ExecutionRecord(strategy.id, scheduled, decision.amount, quantity, fill_price, ExecutionOutcome.FILLED)
            )
            reason = limit_reached(strategy, now)
            if reason:
                strategy.runtime.status = StrategyStatus.COMPLETED
                strategy.runtime.last_message = f"Completed: {reason}"
                break
        else:
            strategy.runtime.last_outcome = "skipped"
            records.append(ExecutionRecord(strategy.id, scheduled, 0.0, 0.0, price, ExecutionOutcome.SKIPPED, decision.reason))

        indicators = None
        if isinstance(strategy.frequency, DynamicFrequency):
            indicators = compute_indicators(strategy.asset_out, ordered[: i + 1], now)
        try:
            strategy.runtime.next_execution_at = next_slot(strategy.frequency, scheduled, now, indicators)
        except ScheduleError as exc:
            strategy.runtime.status = StrategyStatus.FAILED
            strategy.runtime.last_message = f"Failed: {exc}"
            break

    final_price = float(closes[-1])
    if position is not None:
        position.last_price = final_price
    return BacktestResult(strategy, records, position, final_price, compute_performance(records, final_price))
