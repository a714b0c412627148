from __future__ import annotations

import asyncio
from typing import Any

import requests
from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException
from loguru import logger

from adapters.base import OrderGateway
from engine.errors import GatewayError, GatewayRejected, GatewayTimeout
from engine.models import Candle, Fill, PriceSnapshot, Quote


_TIMEFRAME_MAP = {
    "1m": Client.KLINE_INTERVAL_1MINUTE,
    "5m": Client.KLINE_INTERVAL_5MINUTE,
    "15m": Client.KLINE_INTERVAL_15MINUTE,
    "30m": Client.KLINE_INTERVAL_30MINUTE,
    "1h": Client.KLINE_INTERVAL_1HOUR,
    "4h": Client.KLINE_INTERVAL_4HOUR,
    "1d": Client.KLINE_INTERVAL_1DAY,
    "1w": Client.KLINE_INTERVAL_1WEEK,
}


def walk_asks(asks: list[list[Any]], amount: float) -> tuple[float, float]:
    """Spend ``amount`` of quote currency down the ask side; returns (base bought, average price)."""
    remaining = amount
    bought = 0.0
    for price_text, qty_text in asks:
        price = float(price_text)
        level_cost = price * float(qty_text)
        spend = min(remaining, level_cost)
        bought += spend / price
        remaining -= spend
        if remaining <= 1e-12:
            break
    if remaining > 1e-12 or bought <= 0:
        raise GatewayRejected(f"Order book too thin for {amount:g}")
    return bought, amount / bought


class BinanceSpotGateway(OrderGateway):
    name = "binance"

    def __init__(self, api_key: str = "", api_secret: str = "", quote_asset: str = "USDT") -> None:
        self.client = Client(api_key, api_secret)
        self.quote_asset = quote_asset
        self._has_keys = bool(api_key and api_secret)

    def _symbol(self, asset: str, quote: str | None = None) -> str:
        return f"{asset}{quote or self.quote_asset}".upper()

    async def _call(self, func, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except BinanceAPIException as exc:
            raise GatewayRejected(f"Binance: {exc.message}") from exc
        except BinanceRequestException as exc:
            raise GatewayError(f"Binance request failed: {exc.message}") from exc
        except requests.exceptions.Timeout as exc:
            raise GatewayTimeout(f"Binance did not answer: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise GatewayError(f"Binance transport error: {exc}") from exc

    async def get_candles(self, asset: str, interval: str, limit: int = 200) -> list[Candle]:
        binance_interval = _TIMEFRAME_MAP.get(interval)
        if not binance_interval:
            raise ValueError(f"Unsupported timeframe: {interval}")
        klines = await self._call(self.client.get_klines, symbol=self._symbol(asset), interval=binance_interval, limit=limit)
        candles = []
        for k in klines:
            candles.append(
                Candle(
                    ts=int(k[0] / 1000),
                    open=float(k[1]),
                    high=float(k[2]),
                    low=float(k[3]),
                    close=float(k[4]),
                    volume=float(k[5]),
                )
            )
        return candles

    async def get_latest_price(self, asset: str) -> PriceSnapshot:
        ticker = await self._call(self.client.get_ticker, symbol=self._symbol(asset))
        return PriceSnapshot(
            asset=asset,
            price=float(ticker["lastPrice"]),
            change_24h_pct=float(ticker["priceChangePercent"]),
        )

    async def quote(self, asset_in: str, asset_out: str, amount: float) -> Quote:
        depth = await self._call(self.client.get_order_book, symbol=self._symbol(asset_out, asset_in), limit=100)
        asks = depth.get("asks", [])
        if not asks:
            raise GatewayRejected(f"No asks for {asset_out}/{asset_in}")
        best_ask = float(asks[0][0])
        expected_out, average_price = walk_asks(asks, amount)
        return Quote(
            asset_in=asset_in,
            asset_out=asset_out,
            amount=amount,
            expected_out=expected_out,
            price_impact_bps=(average_price - best_ask) / best_ask * 10000.0,
        )

    async def submit_order(self, asset_in: str, asset_out: str, amount: float, max_slippage_bps: int) -> Fill:
        if not self._has_keys:
            raise GatewayRejected("Binance API keys missing for live order")
        resp = await self._call(
            self.client.create_order,
            symbol=self._symbol(asset_out, asset_in),
            side=Client.SIDE_BUY,
            type=Client.ORDER_TYPE_MARKET,
            quoteOrderQty=f"{amount:.8f}",
        )
        executed = float(resp.get("executedQty", 0.0))
        spent = float(resp.get("cummulativeQuoteQty", amount))
        if executed <= 0:
            raise GatewayRejected(f"Order {resp.get('orderId')} was not filled")
        fill = Fill(
            order_id=str(resp.get("orderId")),
            asset_in=asset_in,
            asset_out=asset_out,
            amount_in=spent,
            actual_out=executed,
            actual_price=spent / executed,
        )
        logger.info("Binance fill: {}", fill)
        return fill
