import asyncio
import itertools
from datetime import datetime, timezone

import pytest

from adapters.base import OrderGateway
from data.store import SQLiteStore
from engine.errors import GatewayError
from engine.models import Candle, Fill, PriceSnapshot, Quote
from services.config_service import Settings
from services.context import AppContext


T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)  # a Monday


class FakeGateway(OrderGateway):
    name = "fake"

    def __init__(self, price: float = 100.0, change_24h_pct: float = 0.0) -> None:
        self.prices: dict[str, PriceSnapshot] = {}
        self.default_price = PriceSnapshot("*", price, change_24h_pct)
        self.candles: dict[str, list[Candle]] = {}
        self.impact_bps = 0.0
        self.submit_error: GatewayError | None = None
        self.price_error: GatewayError | None = None
        self.submit_delay = 0.0
        self.orders: list[tuple[str, str, float, int]] = []
        self.closed = False
        self._ids = itertools.count(1)

    def set_price(self, asset: str, price: float, change_24h_pct: float = 0.0) -> None:
        self.prices[asset] = PriceSnapshot(asset, price, change_24h_pct)

    async def get_candles(self, asset, interval, limit=200):
        return self.candles.get(asset, [])[-limit:]

    async def get_latest_price(self, asset):
        if self.price_error is not None:
            raise self.price_error
        snapshot = self.prices.get(asset)
        if snapshot is None:
            return PriceSnapshot(asset, self.default_price.price, self.default_price.change_24h_pct)
        return snapshot

    async def quote(self, asset_in, asset_out, amount):
        price = (await self.get_latest_price(asset_out)).price
        return Quote(asset_in, asset_out, amount, amount / price, self.impact_bps)

    async def submit_order(self, asset_in, asset_out, amount, max_slippage_bps):
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error
        price = (await self.get_latest_price(asset_out)).price
        self.orders.append((asset_in, asset_out, amount, max_slippage_bps))
        return Fill(f"fake-{next(self._ids)}", asset_in, asset_out, amount, amount / price, price)

    async def close(self):
        self.closed = True


def make_candles(closes, start_ts=1_700_000_000, step=3600, volume=1.0):
    return [
        Candle(ts=start_ts + i * step, open=c, high=c + 1.0, low=c - 1.0, close=c, volume=volume)
        for i, c in enumerate(closes)
    ]


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "dca.db"))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def settings(tmp_path):
    return Settings(_env_file=None, DATABASE_PATH=str(tmp_path / "dca.db"), DATABASE_URL="", GATEWAY="paper")


@pytest.fixture
def ctx(settings, store, gateway, alerts):
    async def sender(alert):
        alerts.append(alert)

    return AppContext(settings, store=store, gateway_factory=lambda name, creds: gateway, sender=sender)
