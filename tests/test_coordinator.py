import asyncio
from datetime import timedelta

import pytest

from dca.models import Conditions, IntervalFrequency, Limits, StrategyDefinition, StrategyStatus
from engine.errors import GatewayRejected, GatewayTimeout, owner_message_for
from engine.models import ExecutionOutcome
from tests.conftest import T0


def _daily(**kwargs) -> StrategyDefinition:
    values = dict(
        owner="alice",
        asset_in="USDT",
        asset_out="BTC",
        per_execution_amount=50.0,
        frequency=IntervalFrequency.parse("1d"),
    )
    values.update(kwargs)
    return StrategyDefinition(**values)


@pytest.mark.asyncio
async def test_seven_daily_fills(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    for day in range(1, 8):
        await ctx.orchestrator.run_once(T0 + timedelta(days=day, seconds=30))

    status = ctx.orchestrator.get_strategy_status(strategy_id)
    assert status.status == StrategyStatus.ACTIVE
    assert status.total_executions == 7
    assert status.total_invested == pytest.approx(350.0)
    records = ctx.store.list_execution_records(strategy_id)
    assert [r.outcome for r in records] == [ExecutionOutcome.FILLED] * 7
    assert len({r.scheduled_time for r in records}) == 7
    position = ctx.orchestrator.get_position("alice", "BTC")
    assert position.quantity == pytest.approx(3.5)
    assert position.average_cost == pytest.approx(100.0)
    assert len(gateway.orders) == 7


@pytest.mark.asyncio
async def test_repeated_due_check_does_not_duplicate(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    now = T0 + timedelta(days=1)
    first = await ctx.coordinator.process_due(strategy_id, now)
    second = await ctx.coordinator.process_due(strategy_id, now)
    assert first.outcome == ExecutionOutcome.FILLED
    assert second is None
    assert len(ctx.store.list_execution_records(strategy_id)) == 1
    assert len(gateway.orders) == 1


@pytest.mark.asyncio
async def test_already_claimed_slot_is_aborted_and_advanced(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    slot = ctx.scheduler.get(strategy_id).runtime.next_execution_at
    assert ctx.coordinator.idempotency.add(strategy_id, slot)

    assert await ctx.coordinator.process_due(strategy_id, slot) is None
    assert gateway.orders == []
    assert ctx.store.list_execution_records(strategy_id) == []
    assert ctx.scheduler.get(strategy_id).runtime.next_execution_at == slot + timedelta(days=1)


@pytest.mark.asyncio
async def test_overlapping_execution_is_deferred(ctx, gateway):
    gateway.submit_delay = 0.05
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    now = T0 + timedelta(days=1)
    results = await asyncio.gather(
        ctx.coordinator.process_due(strategy_id, now),
        ctx.coordinator.process_due(strategy_id, now),
    )
    assert sum(1 for r in results if r is not None) == 1
    assert len(gateway.orders) == 1
    assert ctx.coordinator.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_gateway_timeout_keeps_strategy_active(ctx, gateway):
    gateway.submit_error = GatewayTimeout("no answer")
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    slot = ctx.scheduler.get(strategy_id).runtime.next_execution_at

    record = await ctx.coordinator.process_due(strategy_id, slot)
    assert record.outcome == ExecutionOutcome.FAILED
    assert record.reason.startswith("GatewayTimeout")

    strategy = ctx.scheduler.get(strategy_id)
    assert strategy.status == StrategyStatus.ACTIVE
    assert strategy.runtime.total_executions == 0
    assert strategy.runtime.consecutive_failures == 1
    assert strategy.runtime.next_execution_at == slot + timedelta(days=1)
    assert "retried" in ctx.orchestrator.get_strategy_status(strategy_id).message
    assert ctx.notifier.queue.qsize() == 1

    gateway.submit_error = None
    record = await ctx.coordinator.process_due(strategy_id, slot + timedelta(days=1))
    assert record.outcome == ExecutionOutcome.FILLED
    assert ctx.scheduler.get(strategy_id).runtime.consecutive_failures == 0


@pytest.mark.asyncio
async def test_price_lookup_failure_is_recorded(ctx, gateway):
    gateway.price_error = GatewayRejected("unknown symbol")
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    record = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1))
    assert record.outcome == ExecutionOutcome.FAILED
    assert ctx.scheduler.get(strategy_id).status == StrategyStatus.ACTIVE


@pytest.mark.asyncio
async def test_price_impact_above_tolerance_is_rejected(ctx, gateway):
    gateway.impact_bps = 500
    strategy_id = ctx.orchestrator.create_strategy(_daily(max_slippage_bps=100), T0)
    record = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1))
    assert record.outcome == ExecutionOutcome.FAILED
    assert "Price impact" in record.reason
    assert gateway.orders == []


@pytest.mark.asyncio
async def test_dip_condition_skips_then_executes(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(
        _daily(conditions=Conditions(only_on_dip=True, dip_threshold_pct=-5)), T0
    )
    gateway.set_price("BTC", 100.0, change_24h_pct=-3.0)
    skipped = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1))
    assert skipped.outcome == ExecutionOutcome.SKIPPED
    assert ctx.scheduler.get(strategy_id).runtime.next_execution_at == T0 + timedelta(days=2)

    gateway.set_price("BTC", 92.0, change_24h_pct=-8.0)
    filled = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=2))
    assert filled.outcome == ExecutionOutcome.FILLED
    assert filled.price == 92.0


@pytest.mark.asyncio
async def test_budget_limit_completes_and_notifies(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(_daily(limits=Limits(max_total_invested=100)), T0)
    await ctx.orchestrator.run_once(T0 + timedelta(days=1))
    await ctx.orchestrator.run_once(T0 + timedelta(days=2))
    status = ctx.orchestrator.get_strategy_status(strategy_id)
    assert status.status == StrategyStatus.COMPLETED
    assert status.total_invested == pytest.approx(100.0)
    assert status.next_execution_at is None
    assert ctx.notifier.queue.qsize() == 1
    alert = ctx.notifier.queue.get_nowait()
    assert alert.owner == "alice"
    assert alert.text == f"{strategy_id}: Strategy completed: maximum investment of 100 USDT reached."
    assert await ctx.orchestrator.run_once(T0 + timedelta(days=3)) is not None
    assert len(gateway.orders) == 2


@pytest.mark.asyncio
async def test_pause_does_not_cancel_in_flight_execution(ctx, gateway):
    gateway.submit_delay = 0.05
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    task = asyncio.create_task(ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1)))
    await asyncio.sleep(0.01)
    ctx.orchestrator.pause_strategy(strategy_id)
    record = await task
    assert record.outcome == ExecutionOutcome.FILLED
    strategy = ctx.scheduler.get(strategy_id)
    assert strategy.status == StrategyStatus.PAUSED
    assert strategy.runtime.total_executions == 1
    assert ctx.scheduler.due(T0 + timedelta(days=5)) == []


@pytest.mark.asyncio
async def test_unexpected_quote_error_is_recorded_against_the_slot(ctx, gateway, monkeypatch):
    async def broken_quote(asset_in, asset_out, amount):
        raise ConnectionResetError("connection reset by peer")

    monkeypatch.setattr(gateway, "quote", broken_quote)
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    slot = ctx.scheduler.get(strategy_id).runtime.next_execution_at

    record = await ctx.coordinator.process_due(strategy_id, slot)
    assert record.outcome == ExecutionOutcome.FAILED
    assert record.reason == "ConnectionResetError: connection reset by peer"
    assert record.amount_in == pytest.approx(50.0)
    assert gateway.orders == []

    strategy = ctx.scheduler.get(strategy_id)
    assert strategy.status == StrategyStatus.ACTIVE
    assert strategy.runtime.last_outcome == "failed"
    assert strategy.runtime.consecutive_failures == 1
    assert strategy.runtime.next_execution_at == slot + timedelta(days=1)
    assert strategy.runtime.last_message == owner_message_for(ConnectionResetError())
    assert ctx.notifier.queue.qsize() == 1

    monkeypatch.undo()
    record = await ctx.coordinator.process_due(strategy_id, slot + timedelta(days=1))
    assert record.outcome == ExecutionOutcome.FILLED


@pytest.mark.asyncio
async def test_failed_tick_does_not_strand_the_strategy(ctx, gateway, monkeypatch):
    async def broken_quote(asset_in, asset_out, amount):
        raise ValueError("malformed order book")

    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    monkeypatch.setattr(gateway, "quote", broken_quote)
    await ctx.orchestrator.run_once(T0 + timedelta(days=1))
    monkeypatch.undo()
    await ctx.orchestrator.run_once(T0 + timedelta(days=2))

    records = ctx.store.list_execution_records(strategy_id)
    assert [r.outcome for r in records] == [ExecutionOutcome.FAILED, ExecutionOutcome.FILLED]
    assert records[0].reason.startswith("ValueError")
    assert len(gateway.orders) == 1


@pytest.mark.asyncio
async def test_invalid_mark_price_is_recorded_as_failure(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    gateway.set_price("BTC", 0.0)
    record = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1))
    assert record.outcome == ExecutionOutcome.FAILED
    assert record.reason.startswith("PositionError")
    assert gateway.orders == []
    strategy = ctx.scheduler.get(strategy_id)
    assert strategy.status == StrategyStatus.ACTIVE
    assert strategy.runtime.next_execution_at == T0 + timedelta(days=2)


@pytest.mark.asyncio
async def test_fill_is_recorded_even_when_ledger_update_fails(ctx, gateway, monkeypatch):
    async def broken_apply_fill(*args, **kwargs):
        raise RuntimeError("disk full")

    strategy_id = ctx.orchestrator.create_strategy(_daily(), T0)
    monkeypatch.setattr(ctx.coordinator.ledger, "apply_fill", broken_apply_fill)

    with pytest.raises(RuntimeError, match="disk full"):
        await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1))

    records = ctx.store.list_execution_records(strategy_id)
    assert [r.outcome for r in records] == [ExecutionOutcome.FILLED]
    assert records[0].order_id == "fake-1"
    strategy = ctx.scheduler.get(strategy_id)
    assert strategy.runtime.total_executions == 1
    assert strategy.runtime.next_execution_at == T0 + timedelta(days=2)
    assert ctx.coordinator.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_end_time_completion_notifies_with_reason(ctx, gateway):
    strategy_id = ctx.orchestrator.create_strategy(
        _daily(name="weekly stack", limits=Limits(end_time=T0 + timedelta(days=1, hours=12))), T0
    )
    filled = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=1))
    assert filled.outcome == ExecutionOutcome.FILLED
    assert ctx.notifier.queue.qsize() == 0

    record = await ctx.coordinator.process_due(strategy_id, T0 + timedelta(days=2))
    assert record.outcome == ExecutionOutcome.SKIPPED
    assert record.reason == "end time reached"
    assert ctx.scheduler.get(strategy_id).status == StrategyStatus.COMPLETED
    alert = ctx.notifier.queue.get_nowait()
    assert alert.text == "weekly stack: Strategy completed: end time reached."


@pytest.mark.asyncio
async def test_daily_budget_strategy_runs_to_completion(ctx, gateway):
    definition = StrategyDefinition.daily("alice", "USDT", "BTC", total_amount=100, daily_amount=30)
    assert definition.limits.max_executions == 3
    assert definition.limits.max_total_invested == 100
    assert definition.frequency.duration() == timedelta(days=1)

    strategy_id = ctx.orchestrator.create_strategy(definition, T0)
    for day in range(1, 6):
        await ctx.orchestrator.run_once(T0 + timedelta(days=day, seconds=30))

    status = ctx.orchestrator.get_strategy_status(strategy_id)
    assert status.status == StrategyStatus.COMPLETED
    assert status.total_executions == 3
    assert status.total_invested == pytest.approx(90.0)
    assert [order[2] for order in gateway.orders] == [30.0, 30.0, 30.0]
    alert = ctx.notifier.queue.get_nowait()
    assert alert.text.endswith("Strategy completed: maximum of 3 executions reached.")


def test_daily_rejects_total_below_daily_amount():
    with pytest.raises(ValueError):
        StrategyDefinition.daily("alice", "USDT", "BTC", total_amount=20, daily_amount=30)
    with pytest.raises(ValueError):
        StrategyDefinition.daily("alice", "USDT", "BTC", total_amount=100, daily_amount=0)
    assert StrategyDefinition.daily("alice", "USDT", "BTC", total_amount=30, daily_amount=30).limits.max_executions == 1
