from __future__ import annotations

from abc import ABC, abstractmethod

from engine.models import Candle, Fill, PriceSnapshot, Quote


class OrderGateway(ABC):
    """Market data and order routing for one venue.

    Prices are expressed in units of the input asset per unit of the
    output asset, so buying ``asset_out`` with ``amount`` of ``asset_in``
    yields roughly ``amount / price``.
    """

    name = "gateway"

    @abstractmethod
    async def get_candles(self, asset: str, interval: str, limit: int = 200) -> list[Candle]:
        raise NotImplementedError

    @abstractmethod
    async def get_latest_price(self, asset: str) -> PriceSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def quote(self, asset_in: str, asset_out: str, amount: float) -> Quote:
        raise NotImplementedError

    @abstractmethod
    async def submit_order(self, asset_in: str, asset_out: str, amount: float, max_slippage_bps: int) -> Fill:
        raise NotImplementedError

    async def close(self) -> None:
        return None
