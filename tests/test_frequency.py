from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from dca.frequency import get_policy, next_slot, register_policy
from dca.models import CronFrequency, DynamicFrequency, IntervalFrequency, StrategyDefinition
from engine.errors import ScheduleError
from engine.models import IndicatorSet


T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def test_interval_parse_shorthand():
    assert IntervalFrequency.parse("30m").duration() == timedelta(minutes=30)
    assert IntervalFrequency.parse("1d") == IntervalFrequency(value=1, unit="days")
    assert IntervalFrequency.parse("2w").duration() == timedelta(weeks=2)
    with pytest.raises(ValueError):
        IntervalFrequency.parse("1y")


def test_interval_anchors_on_previous_slot():
    frequency = IntervalFrequency(value=1, unit="days")
    assert next_slot(frequency, T0, T0 + timedelta(minutes=3)) == T0 + timedelta(days=1)


def test_late_tick_rolls_forward_without_catch_up():
    frequency = IntervalFrequency(value=1, unit="hours")
    now = T0 + timedelta(hours=5, minutes=10)
    assert next_slot(frequency, T0, now) == T0 + timedelta(hours=6)


def test_interval_without_anchor_starts_from_now():
    frequency = IntervalFrequency(value=4, unit="hours")
    assert next_slot(frequency, None, T0) == T0 + timedelta(hours=4)


def test_cron_slot():
    assert next_slot(CronFrequency(expression="0 12 * * *"), T0, T0) == T0.replace(hour=12)


def test_cron_frequency_rejects_bad_expression():
    with pytest.raises(ValidationError):
        CronFrequency(expression="not a cron")


def test_volatility_adaptive_spacing():
    frequency = DynamicFrequency(params={"base_minutes": 60})
    calm = IndicatorSet(asset="BTC", computed_at=T0, close=1.0, volatility_score=0.0)
    wild = IndicatorSet(asset="BTC", computed_at=T0, close=1.0, volatility_score=100.0)
    assert next_slot(frequency, None, T0) == T0 + timedelta(minutes=60)
    assert next_slot(frequency, None, T0, calm) == T0 + timedelta(minutes=90)
    assert next_slot(frequency, None, T0, wild) == T0 + timedelta(minutes=30)


def test_unknown_policy_is_a_schedule_error():
    with pytest.raises(ScheduleError):
        next_slot(DynamicFrequency(policy="nope"), None, T0)


def test_registered_policy_is_used():
    @register_policy("every_ten_minutes")
    def _ten(frequency, now, indicators):
        return timedelta(minutes=10)

    assert get_policy("every_ten_minutes") is _ten
    assert next_slot(DynamicFrequency(policy="every_ten_minutes"), None, T0) == T0 + timedelta(minutes=10)


def test_non_positive_policy_spacing_is_rejected():
    @register_policy("broken")
    def _broken(frequency, now, indicators):
        return timedelta(0)

    with pytest.raises(ScheduleError):
        next_slot(DynamicFrequency(policy="broken"), None, T0)


def test_frequency_union_parses_from_json():
    strategy = StrategyDefinition.model_validate(
        {
            "owner": "alice",
            "asset_in": "USDT",
            "asset_out": "BTC",
            "per_execution_amount": 10,
            "frequency": {"kind": "cron", "expression": "0 9 * * mon"},
        }
    )
    assert isinstance(strategy.frequency, CronFrequency)
    restored = StrategyDefinition.model_validate_json(strategy.model_dump_json())
    assert restored.frequency == strategy.frequency
    assert restored.id == strategy.id
