from __future__ import annotations

from datetime import datetime

from loguru import logger

from adapters.base import OrderGateway
from data.store import BaseStore
from dca.models import StrategyDefinition, StrategyStatus, utcnow
from dca.scheduler import StrategyScheduler, limit_reached
from engine.errors import ConcurrencyConflict, GatewayError, GatewayRejected, LimitExceeded, owner_message_for
from engine.idempotency import Idempotency
from engine.ledger import PositionLedger
from engine.models import ExecutionOutcome, ExecutionRecord, ExecutionRequest, Fill
from risk.manager import RiskManager
from services.config_service import ConfigService
from services.gateways import GatewayRegistry
from services.notifier import Notifier


class ExecutionCoordinator:
    """Turns one due strategy into at most one order per scheduled slot.

    A strategy already executing in this process is deferred, and the
    (strategy, scheduled time) claim in the store stops overlapping
    processes from filling the same slot twice.
    """

    def __init__(
        self,
        store: BaseStore,
        scheduler: StrategyScheduler,
        ledger: PositionLedger,
        gateways: GatewayRegistry,
        risk: RiskManager,
        config_service: ConfigService,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.ledger = ledger
        self.gateways = gateways
        self.risk = risk
        self.config_service = config_service
        self.notifier = notifier
        self.idempotency = Idempotency(store)
        self._in_flight: set[str] = set()

    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def _acquire(self, strategy_id: str) -> None:
        if strategy_id in self._in_flight:
            raise ConcurrencyConflict(f"Strategy {strategy_id} already has an execution in flight")
        self._in_flight.add(strategy_id)

    async def process_due(self, strategy_id: str, now: datetime | None = None) -> ExecutionRecord | None:
        """Run the due-check for one strategy; returns the appended record, or None when nothing ran."""
        now = now or utcnow()
        try:
            self._acquire(strategy_id)
        except ConcurrencyConflict as exc:
            logger.bind(strategy_id=strategy_id).warning("Deferred: {}", exc)
            return None
        try:
            return await self._process(strategy_id, now)
        except ConcurrencyConflict as exc:
            logger.bind(strategy_id=strategy_id).warning("Aborted: {}", exc)
            return None
        finally:
            self._in_flight.discard(strategy_id)

    async def _process(self, strategy_id: str, now: datetime) -> ExecutionRecord | None:
        strategy = self.scheduler.get(strategy_id)
        log = logger.bind(strategy_id=strategy.id, owner=strategy.owner)
        scheduled = strategy.runtime.next_execution_at
        if strategy.status != StrategyStatus.ACTIVE or scheduled is None or scheduled > now:
            return None

        if not self.idempotency.check_and_add(strategy.id, scheduled):
            self.scheduler.advance(strategy.id, scheduled, now)
            raise ConcurrencyConflict(
                f"Slot {Idempotency.key(strategy.id, scheduled)} was already claimed"
            )

        # the slot is claimed: any failure from here on must be recorded against it
        try:
            config = self.config_service.load(strategy.owner)
            gateway = self.gateways.for_owner(strategy.owner)
            snapshot = await gateway.get_latest_price(strategy.asset_out)
            await self.ledger.mark_to_market(strategy.asset_out, snapshot.price)
            position_value = strategy.runtime.total_received * snapshot.price
            decision = self.scheduler.evaluate(
                strategy,
                snapshot,
                position_value,
                now,
                boost_multiplier=config.weekend_boost_multiplier,
            )
        except Exception as exc:
            return await self._record_failure(strategy, scheduled, now, 0.0, exc)

        if decision.action == "complete":
            reason = decision.reason or "limit reached"
            record = self._append(strategy, scheduled, ExecutionOutcome.SKIPPED, price=snapshot.price, reason=reason)
            self.scheduler.complete(strategy.id, reason)
            await self._notify_completed(strategy, reason)
            return record

        if decision.action == "skip":
            record = self._append(strategy, scheduled, ExecutionOutcome.SKIPPED, price=snapshot.price, reason=decision.reason)
            self.scheduler.after_skip(strategy.id, scheduled, now, decision.reason or "conditions not met")
            return record

        slippage = strategy.max_slippage_bps if strategy.max_slippage_bps is not None else config.max_slippage_bps
        request = ExecutionRequest(
            strategy_id=strategy.id,
            owner=strategy.owner,
            asset_in=strategy.asset_in,
            asset_out=strategy.asset_out,
            amount=decision.amount,
            max_slippage_bps=slippage,
            scheduled_time=scheduled,
        )
        try:
            fill = await self.execute(request, gateway)
        except Exception as exc:
            return await self._record_failure(strategy, scheduled, now, request.amount, exc)

        # the order is live on the exchange; book the record before anything else can raise
        try:
            record = self._append(
                strategy,
                scheduled,
                ExecutionOutcome.FILLED,
                amount_in=fill.amount_in,
                amount_out=fill.actual_out,
                price=fill.actual_price,
                order_id=fill.order_id,
            )
            updated = self.scheduler.after_fill(strategy.id, scheduled, now, fill.amount_in, fill.actual_out)
            await self.ledger.apply_fill(strategy.owner, strategy.asset_out, "buy", fill.actual_out, fill.actual_price)
        except Exception:
            log.bind(order_id=fill.order_id).exception(
                "Order {} filled ({:.8g} {} -> {:.8g} {}) but booking it failed",
                fill.order_id,
                fill.amount_in,
                strategy.asset_in,
                fill.actual_out,
                strategy.asset_out,
            )
            raise
        log.info(
            "Filled {:.8g} {} -> {:.8g} {} @ {:.8g}",
            fill.amount_in,
            strategy.asset_in,
            fill.actual_out,
            strategy.asset_out,
            fill.actual_price,
        )
        if updated.status == StrategyStatus.COMPLETED:
            await self._notify_completed(strategy, limit_reached(updated, now) or "limit reached")
        return record

    async def execute(self, request: ExecutionRequest, gateway: OrderGateway) -> Fill:
        """Quote, run the pre-trade checks, then submit once."""
        quote = await gateway.quote(request.asset_in, request.asset_out, request.amount)
        decision = self.risk.evaluate(request, quote)
        if not decision.allowed:
            raise GatewayRejected(decision.reason or "risk check failed")
        return await gateway.submit_order(request.asset_in, request.asset_out, request.amount, request.max_slippage_bps)

    def _append(
        self,
        strategy: StrategyDefinition,
        scheduled: datetime,
        outcome: ExecutionOutcome,
        amount_in: float = 0.0,
        amount_out: float = 0.0,
        price: float = 0.0,
        reason: str | None = None,
        order_id: str | None = None,
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            strategy_id=strategy.id,
            scheduled_time=scheduled,
            amount_in=amount_in,
            amount_out=amount_out,
            price=price,
            outcome=outcome,
            reason=reason,
            order_id=order_id,
            created_at=utcnow(),
        )
        self.store.append_execution_record(record)
        return record

    async def _record_failure(
        self,
        strategy: StrategyDefinition,
        scheduled: datetime,
        now: datetime,
        amount: float,
        exc: Exception,
    ) -> ExecutionRecord:
        log = logger.bind(strategy_id=strategy.id, owner=strategy.owner)
        if isinstance(exc, GatewayError):
            log.warning("Execution failed with {}: {}", type(exc).__name__, exc)
        else:
            log.opt(exception=exc).error("Execution failed with {}: {}", type(exc).__name__, exc)
        record = self._append(
            strategy,
            scheduled,
            ExecutionOutcome.FAILED,
            amount_in=amount,
            reason=f"{type(exc).__name__}: {exc}",
        )
        message = owner_message_for(exc)
        self.scheduler.after_failure(strategy.id, scheduled, now, message)
        await self._notify(strategy, message)
        return record

    async def _notify_completed(self, strategy: StrategyDefinition, reason: str) -> None:
        text = LimitExceeded(reason).owner_message()
        await self._notify(strategy, f"{strategy.name or strategy.id}: {text}")

    async def _notify(self, strategy: StrategyDefinition, text: str) -> None:
        if self.notifier is not None:
            await self.notifier.send(strategy.owner, text)
