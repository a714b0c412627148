from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from adapters.base import OrderGateway
from engine.errors import GatewayError, GatewayRejected, GatewayTimeout
from engine.models import Candle, Fill, PriceSnapshot, Quote


T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Gateway call failed with {}: {}; attempt {} will be retried",
        type(exc).__name__,
        exc,
        retry_state.attempt_number,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient gateway failures. Rejections are final."""

    max_attempts: int = 3
    backoff_min_seconds: float = 0.5
    backoff_max_seconds: float = 5.0
    multiplier: float = 1.0

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.multiplier,
                min=self.backoff_min_seconds,
                max=self.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(GatewayError) & retry_if_not_exception_type(GatewayRejected),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        result: T
        async for attempt in self.retrying():
            with attempt:
                result = await func(*args, **kwargs)
        return result


class GuardedGateway(OrderGateway):
    """Puts a timeout on every call and retries reads.

    Orders are submitted once; a failed submission is retried on the
    strategy's next slot, never inside the same tick.
    """

    def __init__(self, inner: OrderGateway, policy: RetryPolicy | None = None, timeout_seconds: float = 10.0) -> None:
        self.inner = inner
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.name = inner.name

    async def _bounded(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise GatewayTimeout(f"{self.name}.{operation} timed out after {self.timeout_seconds:g}s") from exc

    async def get_candles(self, asset: str, interval: str, limit: int = 200) -> list[Candle]:
        return await self.policy.call(
            self._bounded, "get_candles", lambda: self.inner.get_candles(asset, interval, limit)
        )

    async def get_latest_price(self, asset: str) -> PriceSnapshot:
        return await self.policy.call(self._bounded, "get_latest_price", lambda: self.inner.get_latest_price(asset))

    async def quote(self, asset_in: str, asset_out: str, amount: float) -> Quote:
        return await self.policy.call(self._bounded, "quote", lambda: self.inner.quote(asset_in, asset_out, amount))

    async def submit_order(self, asset_in: str, asset_out: str, amount: float, max_slippage_bps: int) -> Fill:
        return await self._bounded(
            "submit_order",
            lambda: self.inner.submit_order(asset_in, asset_out, amount, max_slippage_bps),
        )

    async def close(self) -> None:
        await self.inner.close()
