from __future__ import annotations

from dataclasses import dataclass

from dca.models import StrategyDefinition
from engine.errors import InvalidStrategy
from engine.models import ExecutionRequest, Quote


@dataclass
class RiskDecision:
    allowed: bool
    reason: str | None


class RiskManager:
    """Pre-trade checks on a single purchase. Stateless apart from the slippage cap."""

    def __init__(self, max_slippage_cap_bps: int = 1000) -> None:
        self.max_slippage_cap_bps = max_slippage_cap_bps

    def validate_slippage(self, max_slippage_bps: int) -> None:
        if max_slippage_bps < 0:
            raise InvalidStrategy("max_slippage_bps cannot be negative")
        if max_slippage_bps > self.max_slippage_cap_bps:
            raise InvalidStrategy(
                f"max_slippage_bps {max_slippage_bps} exceeds the cap of {self.max_slippage_cap_bps}"
            )

    def validate_definition(self, strategy: StrategyDefinition, default_slippage_bps: int) -> int:
        """Effective slippage tolerance for a new strategy; raises InvalidStrategy when out of bounds."""
        slippage = strategy.max_slippage_bps if strategy.max_slippage_bps is not None else default_slippage_bps
        self.validate_slippage(slippage)
        limits = strategy.limits
        if limits.max_total_invested is not None and limits.max_total_invested < strategy.per_execution_amount:
            raise InvalidStrategy("max_total_invested is smaller than a single purchase")
        return slippage

    def evaluate(self, request: ExecutionRequest, quote: Quote) -> RiskDecision:
        if request.amount <= 0:
            return RiskDecision(False, f"Invalid amount: {request.amount:g}")
        if request.max_slippage_bps > self.max_slippage_cap_bps:
            return RiskDecision(False, f"Slippage tolerance {request.max_slippage_bps} bps above cap")
        if quote.expected_out <= 0:
            return RiskDecision(False, "Quote returned no output")
        if quote.price_impact_bps > request.max_slippage_bps:
            return RiskDecision(
                False,
                f"Price impact {quote.price_impact_bps:.1f} bps exceeds limit {request.max_slippage_bps} bps",
            )
        return RiskDecision(True, None)
