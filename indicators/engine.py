"""Candle series -> IndicatorSet snapshot.

``compute_indicators`` is pure and never raises on short input: each
indicator degrades to ``None`` on its own and its name is listed in
``IndicatorSet.undercomputed``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

import pandas as pd
from loguru import logger

from engine.models import Candle, IndicatorSet
from indicators.composite import momentum_score, trend_strength, volatility_score
from indicators.core import (
    atr,
    bollinger_bands,
    ema,
    macd,
    obv,
    pivot_points,
    rsi,
    sma,
    stochastic,
    williams_r,
)


_NULLABLE_FIELDS = (
    "sma20",
    "sma50",
    "sma200",
    "ema12",
    "ema26",
    "ema50",
    "macd",
    "rsi14",
    "stochastic",
    "williams_r",
    "bollinger",
    "atr14",
    "volume_sma20",
    "pivots",
    "trend_strength",
    "volatility_score",
    "momentum_score",
)


def candles_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    df = pd.DataFrame(
        [c.__dict__ for c in candles],
        columns=["ts", "open", "high", "low", "close", "volume"],
    )
    if df.empty:
        return df
    df = df.sort_values("ts").drop_duplicates(subset="ts", keep="last").reset_index(drop=True)
    return df.astype({"open": float, "high": float, "low": float, "close": float, "volume": float})


def compute_indicators(asset: str, candles: Sequence[Candle], now: datetime | None = None) -> IndicatorSet:
    computed_at = now or datetime.now(timezone.utc)
    df = candles_frame(candles)
    if df.empty:
        return IndicatorSet(asset=asset, computed_at=computed_at, close=None, undercomputed=_NULLABLE_FIELDS)

    close = df["close"]
    high = df["high"]
    low = df["low"]
    volume = df["volume"]
    last = df.iloc[-1]

    values = {
        "sma20": sma(close, 20),
        "sma50": sma(close, 50),
        "sma200": sma(close, 200),
        "ema12": ema(close, 12),
        "ema26": ema(close, 26),
        "ema50": ema(close, 50),
        "macd": macd(close),
        "rsi14": rsi(close, 14),
        "stochastic": stochastic(high, low, close, 14),
        "williams_r": williams_r(high, low, close, 14),
        "bollinger": bollinger_bands(close, 20, 2.0),
        "atr14": atr(high, low, close, 14),
        "volume_sma20": sma(volume, 20),
        "pivots": pivot_points(float(last["high"]), float(last["low"]), float(last["close"])),
        "trend_strength": trend_strength(close),
        "volatility_score": volatility_score(close),
        "momentum_score": momentum_score(close),
    }
    undercomputed = tuple(name for name in _NULLABLE_FIELDS if values[name] is None)
    if undercomputed:
        logger.debug("{}: {} candles, undercomputed {}", asset, len(df), ", ".join(undercomputed))

    return IndicatorSet(
        asset=asset,
        computed_at=computed_at,
        close=float(last["close"]),
        obv=obv(close, volume),
        undercomputed=undercomputed,
        **values,
    )
