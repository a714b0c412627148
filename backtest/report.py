from __future__ import annotations

from backtest.metrics import PerformanceReport


def _fmt(value: float | None, digits: int = 8) -> str:
    return "n/a" if value is None else f"{value:.{digits}g}"


def render_report(report: PerformanceReport, title: str = "DCA performance") -> str:
    lines = [
        title,
        "-" * len(title),
        f"Executions:        {report.executions} ({report.filled} filled, {report.skipped} skipped, {report.failed} failed)",
        f"Success rate:      {report.success_rate:.1f}%",
        f"Total invested:    {_fmt(report.total_invested)}",
        f"Total acquired:    {_fmt(report.total_acquired)}",
        f"Avg entry price:   {_fmt(report.average_entry_price)}",
        f"Current price:     {_fmt(report.current_price)}",
        f"Current value:     {_fmt(report.current_value)}",
        f"Unrealized PnL:    {report.unrealized_pnl.amount:+.2f} ({report.unrealized_pnl.pct:+.2f}%)",
        f"Max drawdown:      {report.max_drawdown_pct:.2f}%",
    ]
    return "\n".join(lines)
