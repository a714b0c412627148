from __future__ import annotations

import random
import time

from loguru import logger

from adapters.base import OrderGateway
from engine.errors import GatewayRejected
from engine.models import Candle, Fill, PriceSnapshot, Quote


class PaperGateway(OrderGateway):
    """Simulated fills at the data provider's latest price plus slippage and fee."""

    name = "paper"

    def __init__(
        self,
        data_provider: OrderGateway,
        slippage_bps: float = 2.0,
        fee_bps: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        self.data_provider = data_provider
        self.slippage_bps = slippage_bps
        self.fee_bps = fee_bps
        self.rng = rng or random.Random()

    async def get_candles(self, asset: str, interval: str, limit: int = 200) -> list[Candle]:
        return await self.data_provider.get_candles(asset, interval, limit=limit)

    async def get_latest_price(self, asset: str) -> PriceSnapshot:
        return await self.data_provider.get_latest_price(asset)

    async def quote(self, asset_in: str, asset_out: str, amount: float) -> Quote:
        snapshot = await self.get_latest_price(asset_out)
        impact_bps = self.slippage_bps + self.fee_bps
        price = snapshot.price * (1 + impact_bps / 10000.0)
        return Quote(
            asset_in=asset_in,
            asset_out=asset_out,
            amount=amount,
            expected_out=amount / price,
            price_impact_bps=impact_bps,
        )

    async def submit_order(self, asset_in: str, asset_out: str, amount: float, max_slippage_bps: int) -> Fill:
        snapshot = await self.get_latest_price(asset_out)
        if snapshot.price <= 0:
            raise GatewayRejected(f"No usable price for {asset_out}")
        slip_bps = self.slippage_bps * self.rng.uniform(0.5, 1.5)
        if slip_bps > max_slippage_bps:
            raise GatewayRejected(f"Slippage {slip_bps:.1f} bps exceeds limit {max_slippage_bps} bps")
        fill_price = snapshot.price * (1 + slip_bps / 10000.0)
        final_price = fill_price * (1 + self.fee_bps / 10000.0)
        fill = Fill(
            order_id=f"paper-{int(time.time() * 1000)}",
            asset_in=asset_in,
            asset_out=asset_out,
            amount_in=amount,
            actual_out=amount / final_price,
            actual_price=final_price,
        )
        logger.info("Paper fill: {}", fill)
        return fill

    async def close(self) -> None:
        await self.data_provider.close()
