from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Literal

from loguru import logger

from data.store import BaseStore
from dca.frequency import next_slot
from dca.models import DynamicFrequency, Runtime, StrategyDefinition, StrategyStatus, utcnow
from engine.errors import InvalidStrategy, ScheduleError, StrategyNotFound
from engine.models import IndicatorSet, PriceSnapshot


@dataclass(frozen=True)
class WeekendBoost:
    multiplier: float = 1.5
    days: frozenset[int] = field(default_factory=lambda: frozenset({5, 6}))

    def applies(self, now: datetime) -> bool:
        return now.weekday() in self.days


@dataclass(frozen=True)
class DueDecision:
    action: Literal["execute", "skip", "complete"]
    amount: float = 0.0
    reason: str | None = None


def check_conditions(strategy: StrategyDefinition, snapshot: PriceSnapshot) -> str | None:
    """Skip reason for a due strategy, or None when the market conditions pass."""
    conditions = strategy.conditions
    price = snapshot.price
    if conditions.min_price is not None and price < conditions.min_price:
        return f"price {price:g} below minimum {conditions.min_price:g}"
    if conditions.max_price is not None and price > conditions.max_price:
        return f"price {price:g} above maximum {conditions.max_price:g}"
    if conditions.only_on_dip and snapshot.change_24h_pct > conditions.dip_threshold_pct:
        return f"24h change {snapshot.change_24h_pct:g}% is not a dip of {conditions.dip_threshold_pct:g}%"
    return None


def limit_reached(strategy: StrategyDefinition, now: datetime) -> str | None:
    limits = strategy.limits
    runtime = strategy.runtime
    if limits.end_time is not None and now >= limits.end_time:
        return "end time reached"
    if limits.max_executions is not None and runtime.total_executions >= limits.max_executions:
        return f"maximum of {limits.max_executions} executions reached"
    if limits.max_total_invested is not None and runtime.total_invested >= limits.max_total_invested:
        return f"maximum investment of {limits.max_total_invested:g} {strategy.asset_in} reached"
    return None


def execution_amount(
    strategy: StrategyDefinition,
    position_value: float,
    now: datetime,
    boost: WeekendBoost | None = None,
) -> float:
    amount = strategy.per_execution_amount
    if strategy.advanced.value_averaging:
        target = strategy.per_execution_amount * (strategy.runtime.total_executions + 1)
        amount = target - position_value
    if amount > 0 and boost is not None and strategy.advanced.weekend_boost and boost.applies(now):
        amount *= boost.multiplier
    max_invested = strategy.limits.max_total_invested
    if amount > 0 and max_invested is not None:
        amount = min(amount, max_invested - strategy.runtime.total_invested)
    return amount


def evaluate_due(
    strategy: StrategyDefinition,
    snapshot: PriceSnapshot,
    position_value: float,
    now: datetime,
    boost: WeekendBoost | None = None,
) -> DueDecision:
    """Price bounds, then dip-only, then limits, then sizing."""
    reason = check_conditions(strategy, snapshot)
    if reason:
        return DueDecision("skip", reason=reason)
    reason = limit_reached(strategy, now)
    if reason:
        return DueDecision("complete", reason=reason)
    amount = execution_amount(strategy, position_value, now, boost)
    if amount <= 0:
        return DueDecision("skip", reason="position already at value-averaging target")
    return DueDecision("execute", amount=amount)


class StrategyScheduler:
    def __init__(
        self,
        store: BaseStore,
        boost: WeekendBoost | None = None,
        indicator_lookup: Callable[[str], IndicatorSet | None] | None = None,
    ) -> None:
        self.store = store
        self.boost = boost or WeekendBoost()
        self.indicator_lookup = indicator_lookup

    def create(self, definition: StrategyDefinition, now: datetime | None = None) -> str:
        now = now or utcnow()
        strategy = definition.model_copy(deep=True)
        strategy.runtime = Runtime()
        strategy.created_at = now
        try:
            first = strategy.start_at or self._slot(strategy, None, now)
        except ScheduleError as exc:
            raise InvalidStrategy(str(exc)) from exc
        if strategy.limits.end_time is not None and strategy.limits.end_time <= now:
            raise InvalidStrategy("end_time is already in the past")
        strategy.runtime.next_execution_at = first
        strategy.runtime.last_message = f"Next purchase at {first.isoformat()}"
        self.store.ensure_owner(strategy.owner)
        self.store.save_strategy(strategy)
        logger.bind(strategy_id=strategy.id, owner=strategy.owner).info(
            "Strategy created: {} {} -> {} every {}",
            strategy.per_execution_amount,
            strategy.asset_in,
            strategy.asset_out,
            strategy.frequency.kind,
        )
        return strategy.id

    def get(self, strategy_id: str) -> StrategyDefinition:
        strategy = self.store.get_strategy(strategy_id)
        if strategy is None:
            raise StrategyNotFound(strategy_id)
        return strategy

    def due(self, now: datetime) -> list[StrategyDefinition]:
        return self.store.list_due_strategies(now)

    def expire(self, now: datetime) -> list[StrategyDefinition]:
        """Complete every live strategy whose end time has passed."""
        expired = []
        for status in (StrategyStatus.ACTIVE, StrategyStatus.PAUSED):
            for strategy in self.store.list_strategies(status=status):
                end_time = strategy.limits.end_time
                if end_time is not None and now >= end_time:
                    expired.append(self.complete(strategy.id, "end time reached"))
        return expired

    def pause(self, strategy_id: str) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        if strategy.status in (StrategyStatus.COMPLETED, StrategyStatus.FAILED):
            raise InvalidStrategy(f"Strategy {strategy_id} is {strategy.status.value} and cannot be paused")
        strategy.runtime.status = StrategyStatus.PAUSED
        strategy.runtime.last_message = "Paused by owner"
        self.store.save_strategy(strategy)
        logger.bind(strategy_id=strategy_id, owner=strategy.owner).info("Strategy paused")
        return strategy

    def resume(self, strategy_id: str, now: datetime | None = None) -> StrategyDefinition:
        now = now or utcnow()
        strategy = self.get(strategy_id)
        if strategy.status == StrategyStatus.ACTIVE:
            return strategy
        if strategy.status != StrategyStatus.PAUSED:
            raise InvalidStrategy(f"Strategy {strategy_id} is {strategy.status.value} and cannot be resumed")
        strategy.runtime.status = StrategyStatus.ACTIVE
        self._advance(strategy, None, now)
        if strategy.status == StrategyStatus.ACTIVE:
            strategy.runtime.last_message = f"Resumed; next purchase at {strategy.runtime.next_execution_at.isoformat()}"
        self.store.save_strategy(strategy)
        logger.bind(strategy_id=strategy_id, owner=strategy.owner).info("Strategy resumed")
        return strategy

    def evaluate(
        self,
        strategy: StrategyDefinition,
        snapshot: PriceSnapshot,
        position_value: float,
        now: datetime,
        boost_multiplier: float | None = None,
    ) -> DueDecision:
        boost = self.boost
        if boost_multiplier is not None:
            boost = WeekendBoost(multiplier=boost_multiplier, days=self.boost.days)
        return evaluate_due(strategy, snapshot, position_value, now, boost)

    def after_fill(
        self,
        strategy_id: str,
        scheduled: datetime,
        now: datetime,
        amount_in: float,
        amount_out: float,
    ) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        runtime = strategy.runtime
        runtime.total_executions += 1
        runtime.total_invested += amount_in
        runtime.total_received += amount_out
        runtime.last_execution_at = now
        runtime.last_outcome = "filled"
        runtime.consecutive_failures = 0
        runtime.last_message = f"Bought {amount_out:g} {strategy.asset_out} for {amount_in:g} {strategy.asset_in}"
        reason = limit_reached(strategy, now)
        if reason:
            self._complete(strategy, reason)
        else:
            self._advance(strategy, scheduled, now)
        self.store.save_strategy(strategy)
        return strategy

    def after_skip(self, strategy_id: str, scheduled: datetime, now: datetime, reason: str) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        strategy.runtime.last_outcome = "skipped"
        strategy.runtime.last_message = f"Skipped: {reason}"
        self._advance(strategy, scheduled, now)
        self.store.save_strategy(strategy)
        logger.bind(strategy_id=strategy_id, owner=strategy.owner).info("Skipped: {}", reason)
        return strategy

    def after_failure(self, strategy_id: str, scheduled: datetime, now: datetime, message: str) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        strategy.runtime.last_outcome = "failed"
        strategy.runtime.last_message = message
        strategy.runtime.consecutive_failures += 1
        self._advance(strategy, scheduled, now)
        self.store.save_strategy(strategy)
        return strategy

    def advance(self, strategy_id: str, scheduled: datetime, now: datetime) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        self._advance(strategy, scheduled, now)
        self.store.save_strategy(strategy)
        return strategy

    def complete(self, strategy_id: str, reason: str) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        self._complete(strategy, reason)
        self.store.save_strategy(strategy)
        return strategy

    def fail(self, strategy_id: str, reason: str) -> StrategyDefinition:
        strategy = self.get(strategy_id)
        self._fail(strategy, reason)
        self.store.save_strategy(strategy)
        return strategy

    def _slot(self, strategy: StrategyDefinition, scheduled: datetime | None, now: datetime) -> datetime:
        indicators = None
        if isinstance(strategy.frequency, DynamicFrequency) and self.indicator_lookup is not None:
            indicators = self.indicator_lookup(strategy.asset_out)
        return next_slot(strategy.frequency, scheduled, now, indicators)

    def _advance(self, strategy: StrategyDefinition, scheduled: datetime | None, now: datetime) -> None:
        if strategy.status in (StrategyStatus.COMPLETED, StrategyStatus.FAILED):
            return
        try:
            strategy.runtime.next_execution_at = self._slot(strategy, scheduled, now)
        except ScheduleError as exc:
            self._fail(strategy, str(exc))

    def _complete(self, strategy: StrategyDefinition, reason: str) -> None:
        strategy.runtime.status = StrategyStatus.COMPLETED
        strategy.runtime.next_execution_at = None
        strategy.runtime.last_message = f"Completed: {reason}"
        logger.bind(strategy_id=strategy.id, owner=strategy.owner).info("Strategy completed: {}", reason)

    def _fail(self, strategy: StrategyDefinition, reason: str) -> None:
        strategy.runtime.status = StrategyStatus.FAILED
        strategy.runtime.next_execution_at = None
        strategy.runtime.last_message = f"Failed: {reason}"
        logger.bind(strategy_id=strategy.id, owner=strategy.owner).error("Strategy failed: {}", reason)
