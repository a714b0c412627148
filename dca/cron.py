"""Five-field cron expressions and a pure next-fire-time function.

Fields: minute hour day-of-month month day-of-week. Each field accepts
``*``, numbers, ``a-b`` ranges, ``/step`` and comma lists; months and
weekdays also accept three-letter names, and weekday ``7`` is Sunday.
When both day fields are restricted a day matches if either one does.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_WEEKDAY_NAMES = {name: number for number, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

_SEARCH_HORIZON = timedelta(days=366 * 5)


@dataclass(frozen=True)
class CronExpression:
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool
    weekdays_restricted: bool

    def day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        # cron counts Sunday as 0, Python's weekday() counts Monday as 0
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        if self.days_restricted:
            return day_ok
        if self.weekdays_restricted:
            return weekday_ok
        return True


def _value(token: str, names: dict[str, int]) -> int:
    token = token.strip().lower()
    if token in names:
        return names[token]
    if not token.isdigit():
        raise ValueError(f"Invalid cron value: {token!r}")
    return int(token)


def _parse_field(text: str, low: int, high: int, names: dict[str, int] | None = None) -> frozenset[int]:
    names = names or {}
    values: set[int] = set()
    for item in text.split(","):
        if not item:
            raise ValueError(f"Empty item in cron field {text!r}")
        step = 1
        base = item
        if "/" in item:
            base, step_text = item.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"Invalid cron step: {item!r}")
            step = int(step_text)
        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, last = base.split("-", 1)
            start, end = _value(first, names), _value(last, names)
        else:
            start = _value(base, names)
            end = high if "/" in item else start
        if start < low or end > high or start > end:
            raise ValueError(f"Cron field {item!r} outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def parse_expression(expression: str) -> CronExpression:
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression needs 5 fields, got {len(parts)}: {expression!r}")
    minute, hour, day, month, weekday = parts
    weekdays = frozenset(0 if d == 7 else d for d in _parse_field(weekday, 0, 7, _WEEKDAY_NAMES))
    return CronExpression(
        minutes=_parse_field(minute, 0, 59),
        hours=_parse_field(hour, 0, 23),
        days=_parse_field(day, 1, 31),
        months=_parse_field(month, 1, 12, _MONTH_NAMES),
        weekdays=weekdays,
        days_restricted=not day.startswith("*"),
        weekdays_restricted=not weekday.startswith("*"),
    )


def next_fire_time(expression: str | CronExpression, now: datetime) -> datetime:
    """First matching minute strictly after ``now`` (UTC; naive input is taken as UTC)."""
    cron = parse_expression(expression) if isinstance(expression, str) else expression
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    candidate = now.astimezone(timezone.utc).replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = candidate + _SEARCH_HORIZON

    while candidate <= limit:
        if candidate.month not in cron.months:
            year = candidate.year + (1 if candidate.month == 12 else 0)
            month = candidate.month % 12 + 1
            candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
            continue
        if not cron.day_matches(candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if candidate.hour not in cron.hours:
            candidate = (candidate + timedelta(hours=1)).replace(minute=0)
            continue
        if candidate.minute not in cron.minutes:
            candidate += timedelta(minutes=1)
            continue
        return candidate

    raise ValueError(f"Cron expression {expression!r} never fires")
