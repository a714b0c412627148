from __future__ import annotations

import asyncio
import time
from datetime import timedelta


_TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
    "1w": 604800,
}


def timeframe_seconds(tf: str) -> int:
    if tf not in _TIMEFRAME_SECONDS:
        raise ValueError(f"Unsupported timeframe: {tf}")
    return _TIMEFRAME_SECONDS[tf]


def timeframe_delta(tf: str) -> timedelta:
    return timedelta(seconds=timeframe_seconds(tf))


def seconds_until_next_tick(seconds: int, now: float | None = None) -> float:
    now = time.time() if now is None else now
    next_tick = ((int(now) // seconds) + 1) * seconds
    return max(0.0, next_tick - now)


async def wait_next_tick(seconds: int) -> None:
    """Sleep until the next wall-clock multiple of ``seconds``."""
    await asyncio.sleep(seconds_until_next_tick(seconds))
