import asyncio
import random

import pytest

from engine.errors import PositionError
from engine.ledger import PositionLedger, apply_fill


@pytest.mark.parametrize("seed", range(25))
def test_average_cost_is_quantity_weighted(seed):
    rng = random.Random(seed)
    buys = [(rng.uniform(0.01, 10), rng.uniform(1, 1000)) for _ in range(rng.randint(1, 30))]
    position = None
    for quantity, price in buys:
        position = apply_fill(position, "alice", "BTC", "buy", quantity, price).position
    expected = sum(q * p for q, p in buys) / sum(q for q, _ in buys)
    assert position.average_cost == pytest.approx(expected)
    assert position.quantity == pytest.approx(sum(q for q, _ in buys))


@pytest.mark.parametrize("seed", range(10))
def test_full_sell_realizes_exact_pnl(seed):
    rng = random.Random(seed)
    position = apply_fill(None, "alice", "BTC", "buy", rng.uniform(1, 5), rng.uniform(10, 100)).position
    position = apply_fill(position, "alice", "BTC", "buy", rng.uniform(1, 5), rng.uniform(10, 100)).position
    sell_price = rng.uniform(10, 100)
    result = apply_fill(position, "alice", "BTC", "sell", position.quantity, sell_price)
    assert result.closed
    assert result.position.quantity == 0.0
    assert result.position.average_cost is None
    assert result.position.archived
    assert result.realized_pnl == (sell_price - position.average_cost) * position.quantity


def test_buy_buy_sell_scenario():
    position = apply_fill(None, "alice", "SOL", "buy", 10, 10).position
    position = apply_fill(position, "alice", "SOL", "buy", 5, 16).position
    assert position.average_cost == pytest.approx(190 / 15)
    result = apply_fill(position, "alice", "SOL", "sell", 15, 20)
    assert result.realized_pnl == pytest.approx(110.0)
    assert result.closed


def test_partial_sell_keeps_average_cost():
    position = apply_fill(None, "alice", "BTC", "buy", 4, 100).position
    result = apply_fill(position, "alice", "BTC", "sell", 1, 150)
    assert result.position.quantity == 3
    assert result.position.average_cost == 100
    assert result.realized_pnl == pytest.approx(50.0)
    assert result.position.realized_pnl == pytest.approx(50.0)
    assert not result.closed


def test_oversell_closes_at_position_size():
    position = apply_fill(None, "alice", "BTC", "buy", 2, 10).position
    result = apply_fill(position, "alice", "BTC", "sell", 5, 12)
    assert result.closed
    assert result.realized_pnl == pytest.approx(4.0)


def test_invalid_fills():
    with pytest.raises(PositionError):
        apply_fill(None, "alice", "BTC", "sell", 1, 10)
    with pytest.raises(PositionError):
        apply_fill(None, "alice", "BTC", "buy", 0, 10)
    with pytest.raises(PositionError):
        apply_fill(None, "alice", "BTC", "buy", 1, -1)


@pytest.mark.asyncio
async def test_ledger_persists_and_marks_to_market(store):
    ledger = PositionLedger(store)
    await ledger.apply_fill("alice", "BTC", "buy", 2, 100)
    await ledger.apply_fill("bob", "BTC", "buy", 1, 120)
    marked = await ledger.mark_to_market("BTC", 150)
    assert {p.owner for p in marked} == {"alice", "bob"}

    alice = ledger.get_position("alice", "BTC")
    assert alice.average_cost == 100
    assert alice.quantity == 2
    assert alice.market_value == 300
    assert alice.unrealized_pnl.amount == pytest.approx(100.0)
    assert alice.unrealized_pnl.pct == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_closed_position_is_archived(store):
    ledger = PositionLedger(store)
    await ledger.apply_fill("alice", "ETH", "buy", 1, 10)
    await ledger.apply_fill("alice", "ETH", "sell", 1, 12)
    position = ledger.get_position("alice", "ETH")
    assert position.archived
    assert position.quantity == 0
    assert ledger.list_positions("alice") == []
    await ledger.apply_fill("alice", "ETH", "buy", 3, 9)
    reopened = ledger.get_position("alice", "ETH")
    assert not reopened.archived
    assert reopened.average_cost == 9
    assert reopened.realized_pnl == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_concurrent_fills_on_same_key_are_not_lost(store):
    ledger = PositionLedger(store)
    await asyncio.gather(*(ledger.apply_fill("alice", "BTC", "buy", 1, 10 + i) for i in range(20)))
    position = ledger.get_position("alice", "BTC")
    assert position.quantity == 20
    assert position.average_cost == pytest.approx(sum(10 + i for i in range(20)) / 20)
    assert ledger.active_keys() == frozenset()


def test_reopening_keeps_lifetime_realized_pnl():
    position = apply_fill(None, "alice", "BTC", "buy", 2, 10).position
    closed = apply_fill(position, "alice", "BTC", "sell", 2, 15).position
    assert closed.realized_pnl == pytest.approx(10.0)
    reopened = apply_fill(closed, "alice", "BTC", "buy", 1, 20).position
    assert reopened.quantity == 1
    assert reopened.average_cost == 20
    assert reopened.realized_pnl == pytest.approx(10.0)
    again = apply_fill(reopened, "alice", "BTC", "sell", 1, 25)
    assert again.realized_pnl == pytest.approx(5.0)
    assert again.position.realized_pnl == pytest.approx(15.0)


@pytest.mark.asyncio
async def test_key_locks_serialize_waiters_and_are_released(store):
    ledger = PositionLedger(store)
    order = []

    async def writer(tag):
        async with ledger._guard("alice", "BTC"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(writer("a"), writer("b"), writer("c"))
    assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
    assert ledger.active_keys() == frozenset()
