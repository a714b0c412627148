from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from backtest.metrics import PerformanceReport, compute_performance
from data.store import BaseStore
from dca.models import DynamicFrequency, StrategyDefinition, StrategyStatus, utcnow
from dca.scheduler import StrategyScheduler
from engine.coordinator import ExecutionCoordinator
from engine.errors import GatewayError, InvalidStrategy
from engine.ledger import PositionLedger
from engine.models import ExecutionOutcome, Position, Signal
from engine.state import EngineStateStore
from risk.manager import RiskManager
from services.config_service import ConfigService
from services.gateways import GatewayRegistry
from services.scheduler import wait_next_tick
from services.signal_service import SignalService


@dataclass
class StrategyStatusView:
    strategy_id: str
    name: str
    status: StrategyStatus
    message: str
    total_executions: int
    total_invested: float
    total_received: float
    next_execution_at: datetime | None
    last_execution_at: datetime | None
    last_outcome: str | None


@dataclass
class TickSummary:
    at: datetime
    expired: int = 0
    due: int = 0
    filled: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)


class DcaOrchestrator:
    """Owner-facing operations plus the polling loop that drives due strategies."""

    def __init__(
        self,
        store: BaseStore,
        scheduler: StrategyScheduler,
        coordinator: ExecutionCoordinator,
        ledger: PositionLedger,
        signals: SignalService,
        gateways: GatewayRegistry,
        risk: RiskManager,
        config_service: ConfigService,
        state_store: EngineStateStore,
        tick_seconds: int = 60,
        max_parallel: int = 8,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.ledger = ledger
        self.signals = signals
        self.gateways = gateways
        self.risk = risk
        self.config_service = config_service
        self.state_store = state_store
        self.tick_seconds = tick_seconds
        self.max_parallel = max_parallel
        self._running = False

    def create_strategy(self, definition: StrategyDefinition, now: datetime | None = None) -> str:
        quote_asset = self.config_service.base.QUOTE_ASSET
        # prices are read against the configured quote asset, so purchases must be paid in it
        if definition.asset_in.upper() != quote_asset.upper():
            raise InvalidStrategy(f"asset_in must be the quote asset {quote_asset}, got {definition.asset_in}")
        config = self.config_service.load(definition.owner)
        slippage = self.risk.validate_definition(definition, config.max_slippage_bps)
        return self.scheduler.create(definition.model_copy(update={"max_slippage_bps": slippage}), now)

    def pause_strategy(self, strategy_id: str) -> StrategyStatusView:
        return self._view(self.scheduler.pause(strategy_id))

    def resume_strategy(self, strategy_id: str, now: datetime | None = None) -> StrategyStatusView:
        return self._view(self.scheduler.resume(strategy_id, now))

    def get_strategy_status(self, strategy_id: str) -> StrategyStatusView:
        return self._view(self.scheduler.get(strategy_id))

    def list_strategies(self, owner: str) -> list[StrategyStatusView]:
        return [self._view(s) for s in self.store.list_strategies(owner=owner)]

    async def get_signal(self, asset: str, now: datetime | None = None) -> Signal:
        return await self.signals.get_signal(asset, now)

    def get_position(self, owner: str, asset: str) -> Position | None:
        return self.ledger.get_position(owner, asset)

    async def get_strategy_performance(self, strategy_id: str) -> PerformanceReport:
        strategy = self.scheduler.get(strategy_id)
        records = self.store.list_execution_records(strategy.id)
        price = None
        try:
            price = (await self.gateways.for_owner(strategy.owner).get_latest_price(strategy.asset_out)).price
        except GatewayError as exc:
            logger.bind(strategy_id=strategy.id).warning("No live price for performance report: {}", exc)
        return compute_performance(records, price)

    def halt(self, reason: str = "halted by operator") -> None:
        self.state_store.update(halted=True, last_error=reason)
        logger.warning("Engine halted: {}", reason)

    def unhalt(self) -> None:
        self.state_store.update(halted=False)
        logger.info("Engine unhalted")

    async def refresh_dynamic_indicators(self, now: datetime) -> None:
        """Keep the indicator cache warm for assets driven by a dynamic frequency."""
        assets = {
            s.asset_out
            for s in self.store.list_strategies(status=StrategyStatus.ACTIVE)
            if isinstance(s.frequency, DynamicFrequency)
        }
        for asset in sorted(assets):
            try:
                await self.signals.get_signal(asset, now)
            except GatewayError as exc:
                logger.warning("Indicator refresh for {} failed with {}: {}", asset, type(exc).__name__, exc)

    async def run_once(self, now: datetime | None = None) -> TickSummary | None:
        state = self.state_store.load()
        if state.halted:
            logger.debug("Engine halted, tick skipped")
            return None
        now = now or utcnow()
        summary = TickSummary(at=now)
        try:
            summary.expired = len(self.scheduler.expire(now))
            await self.refresh_dynamic_indicators(now)
            due = self.scheduler.due(now)
            summary.due = len(due)
            semaphore = asyncio.Semaphore(self.max_parallel)

            async def _run(strategy_id: str):
                async with semaphore:
                    return await self.coordinator.process_due(strategy_id, now)

            results = await asyncio.gather(*(_run(s.id) for s in due), return_exceptions=True)
            for strategy, result in zip(due, results):
                if isinstance(result, BaseException):
                    logger.bind(strategy_id=strategy.id, owner=strategy.owner).opt(exception=result).error(
                        "Unexpected execution error: {}", result
                    )
                    summary.errors.append(f"{strategy.id}: {result}")
                elif result is None:
                    summary.deferred += 1
                elif result.outcome == ExecutionOutcome.FILLED:
                    summary.filled += 1
                elif result.outcome == ExecutionOutcome.SKIPPED:
                    summary.skipped += 1
                else:
                    summary.failed += 1
        except Exception as exc:
            logger.exception("Tick error: {}", exc)
            self.state_store.update(last_error=str(exc))
            return None
        self.state_store.update(
            last_tick_ts=int(now.timestamp()),
            last_error="; ".join(summary.errors) or None,
        )
        if summary.due or summary.expired:
            logger.info(
                "Tick: {} due, {} filled, {} skipped, {} failed, {} deferred, {} expired",
                summary.due,
                summary.filled,
                summary.skipped,
                summary.failed,
                summary.deferred,
                summary.expired,
            )
        return summary

    async def run_forever(self) -> None:
        self._running = True
        logger.info("Scheduler loop started, tick every {}s", self.tick_seconds)
        while self._running:
            await self.run_once()
            await wait_next_tick(self.tick_seconds)

    def stop(self) -> None:
        self._running = False

    @staticmethod
    def _view(strategy: StrategyDefinition) -> StrategyStatusView:
        runtime = strategy.runtime
        return StrategyStatusView(
            strategy_id=strategy.id,
            name=strategy.name,
            status=strategy.status,
            message=runtime.last_message or strategy.status.value.capitalize(),
            total_executions=runtime.total_executions,
            total_invested=runtime.total_invested,
            total_received=runtime.total_received,
            next_execution_at=runtime.next_execution_at,
            last_execution_at=runtime.last_execution_at,
            last_outcome=runtime.last_outcome,
        )
