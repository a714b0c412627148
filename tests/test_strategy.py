from datetime import datetime, timedelta, timezone

from engine.models import MACD, BollingerBands, IndicatorSet
from strategies.vote import IndicatorVoteStrategy, VoteWeights


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _indicators(**kwargs) -> IndicatorSet:
    return IndicatorSet(asset="BTC", computed_at=NOW, close=100.0, **kwargs)


def test_bullish_votes_produce_buy_signal():
    indicators = _indicators(
        rsi14=25.0,
        macd=MACD(line=1.0, signal=0.5, histogram=0.5),
        sma20=95.0,
        sma50=90.0,
        bollinger=BollingerBands(upper=130.0, middle=115.0, lower=101.0, bandwidth=0.25),
    )
    signal = IndicatorVoteStrategy(timedelta(hours=1)).generate(indicators, 100.0, NOW)
    assert signal.direction == "buy"
    assert signal.strength == 100.0
    assert signal.contributing_indicators == (
        "rsi:oversold",
        "macd:bullish_crossover",
        "ma:uptrend",
        "bollinger:below_lower",
    )
    assert signal.valid_until == NOW + timedelta(hours=1)
    assert signal.is_valid(NOW + timedelta(minutes=59))
    assert not signal.is_valid(NOW + timedelta(hours=1))


def test_rsi_alone_is_a_two_vote_signal():
    signal = IndicatorVoteStrategy(timedelta(hours=1)).generate(_indicators(rsi14=80.0), 100.0, NOW)
    assert signal.direction == "sell"
    assert signal.strength == 40.0
    assert signal.contributing_indicators == ("rsi:overbought",)


def test_single_vote_holds():
    signal = IndicatorVoteStrategy(timedelta(hours=1)).generate(
        _indicators(macd=MACD(line=-1.0, signal=-0.5, histogram=-0.5)), 100.0, NOW
    )
    assert signal.direction == "hold"
    assert signal.strength == 0.0
    assert signal.contributing_indicators == ("macd:bearish_crossover",)


def test_opposing_votes_cancel():
    indicators = _indicators(rsi14=20.0, sma20=105.0, sma50=110.0, macd=MACD(line=-1.0, signal=0.0, histogram=-1.0))
    signal = IndicatorVoteStrategy(timedelta(hours=1)).generate(indicators, 100.0, NOW)
    assert signal.direction == "hold"


def test_missing_indicators_do_not_vote():
    signal = IndicatorVoteStrategy(timedelta(minutes=5)).generate(_indicators(), 100.0, NOW)
    assert signal.direction == "hold"
    assert signal.contributing_indicators == ()


def test_custom_weights():
    strategy = IndicatorVoteStrategy(timedelta(hours=1), weights=VoteWeights(rsi_extreme=5))
    signal = strategy.generate(_indicators(rsi14=10.0), 100.0, NOW)
    assert signal.direction == "buy"
    assert signal.strength == 100.0
