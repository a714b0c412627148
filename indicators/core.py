"""Single-indicator primitives over pandas Series.

Every function returns ``None`` when the series is shorter than the
indicator's minimum window. Flat-price windows resolve to fixed sentinels
instead of dividing by zero.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from engine.models import MACD, BollingerBands, PivotPoints, Stochastic


FLAT_STOCHASTIC_K = 50.0
FLAT_WILLIAMS_R = -50.0


def sma(values: pd.Series, period: int) -> float | None:
    if period <= 0 or len(values) < period:
        return None
    return float(values.iloc[-period:].mean())


def ema_series(values: pd.Series, period: int) -> pd.Series:
    # adjust=False seeds the recursion with the first value, alpha = 2 / (period + 1)
    return values.ewm(span=period, adjust=False).mean()


def ema(values: pd.Series, period: int) -> float | None:
    if period <= 0 or len(values) < period:
        return None
    return float(ema_series(values, period).iloc[-1])


def macd(closes: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> MACD | None:
    if len(closes) < slow + signal - 1:
        return None
    line_series = ema_series(closes, fast) - ema_series(closes, slow)
    # MACD line at every point where the slow EMA has a full window
    history = line_series.iloc[slow - 1 :].reset_index(drop=True)
    signal_series = ema_series(history, signal)
    line = float(history.iloc[-1])
    signal_value = float(signal_series.iloc[-1])
    return MACD(line=line, signal=signal_value, histogram=line - signal_value)


def rsi(closes: pd.Series, period: int = 14) -> float | None:
    if len(closes) < period + 1:
        return None
    changes = closes.diff().iloc[-period:]
    avg_gain = float(changes.clip(lower=0).sum()) / period
    avg_loss = float((-changes.clip(upper=0)).sum()) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def stochastic(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14, smooth: int = 3) -> Stochastic | None:
    if len(close) < period:
        return None
    highest = high.rolling(period).max()
    lowest = low.rolling(period).min()
    span = highest - lowest
    k_series = ((close - lowest) / span * 100.0).where(span > 0, FLAT_STOCHASTIC_K)
    k_values = k_series.iloc[period - 1 :]
    d = float(k_values.iloc[-smooth:].mean()) if len(k_values) >= smooth else None
    return Stochastic(k=float(k_values.iloc[-1]), d=d)


def williams_r(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> float | None:
    if len(close) < period:
        return None
    highest = float(high.iloc[-period:].max())
    lowest = float(low.iloc[-period:].min())
    span = highest - lowest
    if span <= 0:
        return FLAT_WILLIAMS_R
    return (highest - float(close.iloc[-1])) / span * -100.0


def bollinger_bands(closes: pd.Series, period: int = 20, width: float = 2.0) -> BollingerBands | None:
    if len(closes) < period:
        return None
    window = closes.iloc[-period:]
    middle = float(window.mean())
    std = float(window.std(ddof=0))
    upper = middle + width * std
    lower = middle - width * std
    bandwidth = (upper - lower) / middle if middle != 0 else 0.0
    return BollingerBands(upper=upper, middle=middle, lower=lower, bandwidth=bandwidth)


def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    prev_close = close.shift()
    ranges = pd.concat(
        [
            high - low,
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    return ranges.max(axis=1).iloc[1:]


def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> float | None:
    if len(close) < period + 1:
        return None
    tr = true_range(high, low, close)
    return float(tr.iloc[-period:].mean())


def obv(close: pd.Series, volume: pd.Series) -> float:
    if len(close) < 2:
        return 0.0
    direction = np.sign(close.diff()).fillna(0.0)
    return float((direction * volume).sum())


def pivot_points(high: float, low: float, close: float) -> PivotPoints:
    pivot = (high + low + close) / 3.0
    return PivotPoints(
        pivot=pivot,
        r1=(2 * pivot) - low,
        r2=pivot + (high - low),
        r3=high + 2 * (pivot - low),
        s1=(2 * pivot) - high,
        s2=pivot - (high - low),
        s3=low - 2 * (high - pivot),
    )
