from __future__ import annotations

import math

import numpy as np
import pandas as pd

from indicators.core import rsi, sma


TRADING_DAYS = 252


def _clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    return max(lower, min(upper, value))


def trend_strength(closes: pd.Series) -> float | None:
    """Four 25-point conditions on price vs SMA20/SMA50 and the 10-bar slope."""
    if len(closes) < 20:
        return None
    price = float(closes.iloc[-1])
    sma20 = sma(closes, 20)
    sma50 = sma(closes, 50)

    score = 0.0
    if price > sma20:
        score += 25
    if sma50 is not None and price > sma50:
        score += 25
    if sma50 is not None and sma20 > sma50:
        score += 25
    slope = (price - float(closes.iloc[-10])) / 10
    if slope > 0:
        score += 25
    return _clamp(score)


def volatility_score(closes: pd.Series) -> float | None:
    if len(closes) < 20:
        return None
    returns = closes.pct_change().iloc[1:].replace([np.inf, -np.inf], np.nan).dropna()
    if returns.empty:
        return 0.0
    annualized = float(returns.std(ddof=0)) * math.sqrt(TRADING_DAYS)
    return _clamp(annualized * 100.0)


def momentum_score(closes: pd.Series) -> float | None:
    if len(closes) < 10:
        return None
    rsi_value = rsi(closes, 14)
    if rsi_value is None:
        rsi_value = 50.0
    base = float(closes.iloc[-10])
    change_pct = (float(closes.iloc[-1]) - base) / base * 100.0 if base else 0.0
    change_term = _clamp(change_pct * 2, -50.0, 50.0)
    return _clamp((rsi_value + change_term + 50.0) / 2)
