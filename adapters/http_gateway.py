from __future__ import annotations

from typing import Any

import httpx

from adapters.base import OrderGateway
from engine.errors import GatewayError, GatewayRejected, GatewayTimeout
from engine.models import Candle, Fill, PriceSnapshot, Quote


class HttpGateway(OrderGateway):
    """JSON-over-HTTP venue: ``/candles``, ``/price``, ``/quote`` and ``/orders``."""

    name = "http"

    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, transport=transport, timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"{method} {path} timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = exc.response.text[:200]
            if 400 <= status < 500:
                raise GatewayRejected(f"{method} {path} returned {status}: {detail}") from exc
            raise GatewayError(f"{method} {path} returned {status}: {detail}") from exc
        except httpx.RequestError as exc:
            raise GatewayError(f"{method} {path} failed: {exc}") from exc
        return resp.json()

    async def get_candles(self, asset: str, interval: str, limit: int = 200) -> list[Candle]:
        data = await self._request("GET", "/candles", params={"asset": asset, "interval": interval, "limit": limit})
        return [Candle(**row) for row in data]

    async def get_latest_price(self, asset: str) -> PriceSnapshot:
        data = await self._request("GET", "/price", params={"asset": asset})
        return PriceSnapshot(asset=asset, price=float(data["price"]), change_24h_pct=float(data["change_24h_pct"]))

    async def quote(self, asset_in: str, asset_out: str, amount: float) -> Quote:
        data = await self._request(
            "GET",
            "/quote",
            params={"asset_in": asset_in, "asset_out": asset_out, "amount": amount},
        )
        return Quote(
            asset_in=asset_in,
            asset_out=asset_out,
            amount=amount,
            expected_out=float(data["expected_out"]),
            price_impact_bps=float(data["price_impact_bps"]),
        )

    async def submit_order(self, asset_in: str, asset_out: str, amount: float, max_slippage_bps: int) -> Fill:
        data = await self._request(
            "POST",
            "/orders",
            json={
                "asset_in": asset_in,
                "asset_out": asset_out,
                "amount": amount,
                "max_slippage_bps": max_slippage_bps,
            },
        )
        return Fill(
            order_id=str(data["order_id"]),
            asset_in=asset_in,
            asset_out=asset_out,
            amount_in=float(data.get("amount_in", amount)),
            actual_out=float(data["actual_out"]),
            actual_price=float(data["actual_price"]),
        )

    async def close(self) -> None:
        await self.client.aclose()
