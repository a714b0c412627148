from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Literal

from loguru import logger

from data.store import BaseStore
from engine.errors import PositionError
from engine.models import FillResult, Position


Side = Literal["buy", "sell"]


def apply_fill(position: Position | None, owner: str, asset: str, side: Side, quantity: float, price: float) -> FillResult:
    """Weighted-average-cost update for one fill.

    Buys re-average the cost basis; sells keep it and realize PnL on the
    sold quantity only. Selling at least the whole position closes it.
    """
    if quantity <= 0:
        raise PositionError(f"Fill quantity must be positive, got {quantity}")
    if price <= 0:
        raise PositionError(f"Fill price must be positive, got {price}")

    open_position = position if position is not None and position.quantity > 0 else None
    # lifetime realized PnL survives a close and re-open
    realized_so_far = position.realized_pnl if position is not None else 0.0

    if side == "buy":
        old_quantity = open_position.quantity if open_position else 0.0
        old_cost = open_position.average_cost if open_position else 0.0
        new_quantity = old_quantity + quantity
        new_cost = (old_quantity * old_cost + quantity * price) / new_quantity
        updated = Position(
            owner=owner,
            asset=asset,
            quantity=new_quantity,
            average_cost=new_cost,
            last_price=price,
            realized_pnl=realized_so_far,
        )
        return FillResult(position=updated, realized_pnl=0.0, closed=False)

    if side == "sell":
        if open_position is None:
            raise PositionError(f"No open {asset} position for {owner} to sell")
        average_cost = open_position.average_cost
        if quantity >= open_position.quantity:
            realized = (price - average_cost) * open_position.quantity
            closed = Position(
                owner=owner,
                asset=asset,
                quantity=0.0,
                average_cost=None,
                last_price=price,
                realized_pnl=realized_so_far + realized,
                archived=True,
            )
            return FillResult(position=closed, realized_pnl=realized, closed=True)
        realized = (price - average_cost) * quantity
        reduced = Position(
            owner=owner,
            asset=asset,
            quantity=open_position.quantity - quantity,
            average_cost=average_cost,
            last_price=price,
            realized_pnl=realized_so_far + realized,
        )
        return FillResult(position=reduced, realized_pnl=realized, closed=False)

    raise PositionError(f"Unknown fill side: {side}")


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class PositionLedger:
    """Per-(owner, asset) cost basis. Writers for the same key are serialized.

    A key's lock lives only while some writer holds or waits on it.
    """

    def __init__(self, store: BaseStore) -> None:
        self.store = store
        self._locks: dict[tuple[str, str], _KeyLock] = {}

    @asynccontextmanager
    async def _guard(self, owner: str, asset: str) -> AsyncIterator[None]:
        key = (owner, asset)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def active_keys(self) -> frozenset[tuple[str, str]]:
        return frozenset(self._locks)

    def get_position(self, owner: str, asset: str) -> Position | None:
        return self.store.get_position(owner, asset)

    def list_positions(self, owner: str) -> list[Position]:
        return self.store.list_open_positions(owner=owner)

    async def apply_fill(self, owner: str, asset: str, side: Side, quantity: float, price: float) -> FillResult:
        async with self._guard(owner, asset):
            current = self.store.get_position(owner, asset)
            result = apply_fill(current, owner, asset, side, quantity, price)
            self.store.save_position(result.position)
        if result.closed:
            logger.info("Position closed: {} {} realized {:.8g}", owner, asset, result.realized_pnl)
        else:
            logger.debug(
                "Position {} {}: qty={:.8g} avg_cost={:.8g}",
                owner,
                asset,
                result.position.quantity,
                result.position.average_cost,
            )
        return result

    async def mark_to_market(self, asset: str, price: float) -> list[Position]:
        """Refresh last price on every open position in ``asset``; cost basis is untouched."""
        if price <= 0:
            raise PositionError(f"Mark price must be positive, got {price}")
        marked = []
        for position in self.store.list_open_positions(asset=asset):
            async with self._guard(position.owner, asset):
                current = self.store.get_position(position.owner, asset)
                if current is None:
                    continue
                current.last_price = price
                self.store.save_position(current)
                marked.append(current)
        return marked
