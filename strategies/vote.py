from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from engine.models import IndicatorSet, Signal
from strategies.base import SignalStrategy


@dataclass(frozen=True)
class VoteWeights:
    rsi_extreme: int = 2
    macd_crossover: int = 1
    trend_alignment: int = 1
    band_touch: int = 1


class IndicatorVoteStrategy(SignalStrategy):
    """Weighted bullish/bearish votes over an IndicatorSet.

    net = bullish - bearish; |net| <= 1 holds, otherwise the direction of
    net with strength min(100, |net| * 20).
    """

    def __init__(
        self,
        validity: timedelta,
        weights: VoteWeights | None = None,
        oversold: float = 30.0,
        overbought: float = 70.0,
    ) -> None:
        self.validity = validity
        self.weights = weights or VoteWeights()
        self.oversold = oversold
        self.overbought = overbought

    def generate(self, indicators: IndicatorSet, price: float, now: datetime) -> Signal:
        bullish = 0
        bearish = 0
        contributing: list[str] = []

        rsi = indicators.rsi14
        if rsi is not None:
            if rsi < self.oversold:
                bullish += self.weights.rsi_extreme
                contributing.append("rsi:oversold")
            elif rsi > self.overbought:
                bearish += self.weights.rsi_extreme
                contributing.append("rsi:overbought")

        macd = indicators.macd
        if macd is not None:
            if macd.line > macd.signal and macd.histogram > 0:
                bullish += self.weights.macd_crossover
                contributing.append("macd:bullish_crossover")
            elif macd.line < macd.signal and macd.histogram < 0:
                bearish += self.weights.macd_crossover
                contributing.append("macd:bearish_crossover")

        sma20, sma50 = indicators.sma20, indicators.sma50
        if sma20 is not None and sma50 is not None:
            if price > sma20 > sma50:
                bullish += self.weights.trend_alignment
                contributing.append("ma:uptrend")
            elif price < sma20 < sma50:
                bearish += self.weights.trend_alignment
                contributing.append("ma:downtrend")

        bands = indicators.bollinger
        if bands is not None:
            if price < bands.lower:
                bullish += self.weights.band_touch
                contributing.append("bollinger:below_lower")
            elif price > bands.upper:
                bearish += self.weights.band_touch
                contributing.append("bollinger:above_upper")

        net = bullish - bearish
        if net > 1:
            direction, strength = "buy", min(100.0, net * 20.0)
        elif net < -1:
            direction, strength = "sell", min(100.0, abs(net) * 20.0)
        else:
            direction, strength = "hold", 0.0

        return Signal(
            asset=indicators.asset,
            direction=direction,
            strength=strength,
            contributing_indicators=tuple(contributing),
            generated_at=now,
            valid_until=now + self.validity,
        )
