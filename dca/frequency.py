from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from dca.cron import next_fire_time
from dca.models import CronFrequency, DynamicFrequency, IntervalFrequency
from engine.errors import ScheduleError
from engine.models import IndicatorSet


DynamicPolicy = Callable[[DynamicFrequency, datetime, IndicatorSet | None], timedelta]

_POLICIES: dict[str, DynamicPolicy] = {}


def register_policy(name: str) -> Callable[[DynamicPolicy], DynamicPolicy]:
    def decorator(func: DynamicPolicy) -> DynamicPolicy:
        _POLICIES[name] = func
        return func

    return decorator


def get_policy(name: str) -> DynamicPolicy:
    policy = _POLICIES.get(name)
    if policy is None:
        raise ScheduleError(f"Unknown dynamic scheduling policy: {name}")
    return policy


@register_policy("volatility_adaptive")
def volatility_adaptive(frequency: DynamicFrequency, now: datetime, indicators: IndicatorSet | None) -> timedelta:
    """Buy more often in volatile markets, less often in quiet ones."""
    base_minutes = float(frequency.params.get("base_minutes", 1440))
    min_factor = float(frequency.params.get("min_factor", 0.5))
    max_factor = float(frequency.params.get("max_factor", 1.5))
    factor = 1.0
    if indicators is not None and indicators.volatility_score is not None:
        factor = max(min_factor, min(max_factor, 1.5 - indicators.volatility_score / 100.0))
    return timedelta(minutes=base_minutes * factor)


def next_slot(
    frequency: IntervalFrequency | CronFrequency | DynamicFrequency,
    scheduled: datetime | None,
    now: datetime,
    indicators: IndicatorSet | None = None,
) -> datetime:
    """Next normal execution slot strictly after ``now``.

    Interval slots are anchored on the previous scheduled time; a late tick
    rolls forward by whole intervals instead of bursting to catch up.
    """
    if isinstance(frequency, IntervalFrequency):
        step = frequency.duration()
        slot = (scheduled or now) + step
        if slot <= now:
            slot += step * ((now - slot) // step + 1)
        return slot.replace(microsecond=0)

    if isinstance(frequency, CronFrequency):
        try:
            return next_fire_time(frequency.expression, now)
        except ValueError as exc:
            raise ScheduleError(str(exc)) from exc

    if isinstance(frequency, DynamicFrequency):
        spacing = get_policy(frequency.policy)(frequency, now, indicators)
        if spacing <= timedelta(0):
            raise ScheduleError(f"Policy {frequency.policy} returned non-positive spacing {spacing}")
        return (now + spacing).replace(microsecond=0)

    raise ScheduleError(f"Unsupported frequency model: {type(frequency).__name__}")
