"""Cron expressions for scheduled backups.

Five fields (minute, hour, day of month, month, day of week) with ``*``,
lists, ranges and ``/`` steps, month and weekday names, and the ``@daily``
style macros. Matching has one-minute resolution. When both day fields are
restricted a time matches if either one does, as in classic cron.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import ValidationError

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTHS = {
    name: number
    for number, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_WEEKDAYS = {
    name: number
    for number, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}
_NO_NAMES: Mapping[str, int] = {}

# (label, lowest, highest, names)
_FIELDS = (
    ("minute", 0, 59, _NO_NAMES),
    ("hour", 0, 23, _NO_NAMES),
    ("day of month", 1, 31, _NO_NAMES),
    ("month", 1, 12, _MONTHS),
    ("day of week", 0, 7, _WEEKDAYS),
)

# Four years and a day, so 29 February is always reachable.
_SEARCH_DAYS = 4 * 366 + 1


@dataclass(frozen=True, slots=True)
class CronSchedule:
    """A parsed cron expression."""

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool = False
    weekdays_restricted: bool = False

    def matches(self, moment: datetime) -> bool:
        """Return whether the minute containing *moment* is scheduled."""
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and self._day_matches(moment)
        )

    def _day_matches(self, moment: datetime) -> bool:
        if moment.month not in self.months:
            return False
        day_ok = moment.day in self.days
        # datetime counts Monday as 0, cron counts Sunday as 0.
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def next_after(self, moment: datetime) -> datetime | None:
        """Return the first scheduled minute strictly after *moment*.

        ``None`` means the expression never fires (``0 0 31 2 *``).
        """
        start = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        midnight = start.replace(hour=0, minute=0)
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)
        for offset in range(_SEARCH_DAYS):
            day = midnight + timedelta(days=offset)
            if not self._day_matches(day):
                continue
            for hour in hours:
                for minute in minutes:
                    candidate = day.replace(hour=hour, minute=minute)
                    if candidate >= start:
                        return candidate
        return None


def parse_cron(expression: str) -> CronSchedule:
    """Parse *expression* or raise :class:`ValidationError` naming the bad field."""
    text = " ".join((expression or "").split())
    fields = MACROS.get(text.lower(), text).split(" ")
    if len(fields) != len(_FIELDS):
        raise ValidationError(
            f"Invalid cron expression '{text}': expected 5 fields "
            "(minute hour day-of-month month day-of-week)."
        )
    parsed: list[frozenset[int]] = []
    for raw, (label, low, high, names) in zip(fields, _FIELDS):
        try:
            parsed.append(_parse_field(raw.lower(), low, high, names))
        except ValueError as exc:
            raise ValidationError(f"Invalid cron expression '{text}': {label} {exc}.") from exc
    minutes, hours, days, months, weekdays = parsed
    return CronSchedule(
        expression=text,
        minutes=minutes,
        hours=hours,
        days=days,
        months=months,
        weekdays=frozenset(0 if day == 7 else day for day in weekdays),
        days_restricted=not fields[2].startswith("*"),
        weekdays_restricted=not fields[4].startswith("*"),
    )


def validate_cron(expression: str) -> str:
    """Return the normalised *expression* after checking that it parses."""
    return parse_cron(expression).expression


def _parse_field(text: str, low: int, high: int, names: Mapping[str, int]) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        base, slash, step_text = part.partition("/")
        step = 1
        if slash:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"has an invalid step '{part}'")
            step = int(step_text)
        if base == "*":
            start, stop = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start = _parse_value(first, low, high, names)
            stop = _parse_value(last, low, high, names)
            if start > stop:
                raise ValueError(f"has a reversed range '{part}'")
        else:
            start = _parse_value(base, low, high, names)
            stop = high if slash else start
        values.update(range(start, stop + 1, step))
    return frozenset(values)


def _parse_value(token: str, low: int, high: int, names: Mapping[str, int]) -> int:
    if token in names:
        return names[token]
    if not token.isdigit():
        raise ValueError(f"has an invalid value '{token}'")
    value = int(token)
    if not low <= value <= high:
        raise ValueError(f"value {value} is outside {low}-{high}")
    return value


__all__ = ["MACROS", "CronSchedule", "parse_cron", "validate_cron"]
