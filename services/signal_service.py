from __future__ import annotations

import asyncio
from datetime import datetime

from loguru import logger

from data.store import BaseStore
from dca.models import utcnow
from engine.models import IndicatorSet, Signal
from indicators.engine import compute_indicators
from services.gateways import GatewayRegistry
from strategies.base import SignalStrategy


class SignalService:
    """Latest IndicatorSet and Signal per asset, recomputed once the cached signal expires."""

    def __init__(
        self,
        store: BaseStore,
        gateways: GatewayRegistry,
        strategy: SignalStrategy,
        interval: str = "1h",
        candle_limit: int = 250,
    ) -> None:
        self.store = store
        self.gateways = gateways
        self.strategy = strategy
        self.interval = interval
        self.candle_limit = candle_limit

    async def refresh(self, asset: str, now: datetime | None = None) -> Signal:
        now = now or utcnow()
        gateway = self.gateways.default()
        candles = await gateway.get_candles(asset, self.interval, self.candle_limit)
        indicators = await asyncio.to_thread(compute_indicators, asset, candles, now)
        price = indicators.close
        if price is None:
            price = (await gateway.get_latest_price(asset)).price
        signal = self.strategy.generate(indicators, price, now)
        self.store.save_indicator_set(indicators)
        self.store.save_signal(signal)
        logger.info(
            "Signal {} {} strength={:.0f} [{}]",
            asset,
            signal.direction,
            signal.strength,
            ", ".join(signal.contributing_indicators),
        )
        return signal

    async def get_signal(self, asset: str, now: datetime | None = None) -> Signal:
        now = now or utcnow()
        cached = self.store.get_signal(asset)
        if cached is not None and cached.is_valid(now):
            return cached
        return await self.refresh(asset, now)

    def latest_indicators(self, asset: str) -> IndicatorSet | None:
        return self.store.get_indicator_set(asset)
