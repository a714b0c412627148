from __future__ import annotations

from dataclasses import dataclass

from engine.models import ExecutionOutcome, ExecutionRecord, PnL


@dataclass
class PerformanceReport:
    total_invested: float
    total_acquired: float
    average_entry_price: float | None
    current_price: float | None
    current_value: float
    unrealized_pnl: PnL
    executions: int
    filled: int
    skipped: int
    failed: int
    success_rate: float
    max_drawdown_pct: float


def max_drawdown(curve: list[float]) -> float:
    """Largest peak-to-trough decline of ``curve`` in percent of the peak."""
    peak = None
    worst = 0.0
    for value in curve:
        if peak is None or value > peak:
            peak = value
        if peak and peak > 0:
            worst = max(worst, (peak - value) / peak * 100.0)
    return worst


def compute_performance(records: list[ExecutionRecord], current_price: float | None = None) -> PerformanceReport:
    ordered = sorted(records, key=lambda r: r.scheduled_time)
    fills = [r for r in ordered if r.outcome == ExecutionOutcome.FILLED]
    skipped = sum(1 for r in ordered if r.outcome == ExecutionOutcome.SKIPPED)
    failed = sum(1 for r in ordered if r.outcome == ExecutionOutcome.FAILED)

    invested = 0.0
    acquired = 0.0
    # value per unit invested, sampled at every fill
    curve: list[float] = []
    for fill in fills:
        invested += fill.amount_in
        acquired += fill.amount_out
        curve.append(acquired * fill.price / invested)

    price = current_price if current_price is not None else (fills[-1].price if fills else None)
    current_value = acquired * price if price is not None else 0.0
    if invested > 0 and price is not None:
        curve.append(current_value / invested)

    pnl_amount = current_value - invested
    pnl_pct = pnl_amount / invested * 100.0 if invested > 0 else 0.0
    attempted = len(fills) + failed
    return PerformanceReport(
        total_invested=invested,
        total_acquired=acquired,
        average_entry_price=invested / acquired if acquired > 0 else None,
        current_price=price,
        current_value=current_value,
        unrealized_pnl=PnL(pnl_amount, pnl_pct),
        executions=len(ordered),
        filled=len(fills),
        skipped=skipped,
        failed=failed,
        success_rate=len(fills) / attempted * 100.0 if attempted else 0.0,
        max_drawdown_pct=max_drawdown(curve),
    )
