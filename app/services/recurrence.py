"""Next-occurrence calculation for recurring reminders.

Pure functions only: no I/O, no clock reads. Callers inject the reference
instant, which keeps the dispatcher deterministic under test.

All arithmetic happens on civil dates + wall-clock time in the reminder's own
timezone and is converted to UTC exactly once, so DST transitions neither skip
nor double-fire a day.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

WEEKDAY_INDEX = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

RULES = ("one_time", "daily", "weekdays", "weekly", "custom")


class RecurrenceConfigError(ValueError):
    """Raised for schedules that can never produce a valid occurrence."""


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise RecurrenceConfigError(f"timezone '{name}' is not a valid Olson timezone string") from exc


def _allowed_weekdays(rule: str, days: Iterable[str]) -> frozenset[int]:
    if rule == "daily":
        return frozenset(range(7))
    if rule == "weekdays":
        return frozenset(range(5))
    if rule in ("weekly", "custom"):
        try:
            allowed = frozenset(WEEKDAY_INDEX[d.lower()] for d in days)
        except KeyError as exc:
            raise RecurrenceConfigError(f"unknown weekday {exc.args[0]!r}") from exc
        if not allowed:
            raise RecurrenceConfigError(f"rule '{rule}' requires at least one weekday")
        return allowed
    raise RecurrenceConfigError(f"unknown recurrence rule '{rule}'")


def validate_rule(
    rule: str,
    tz: str,
    *,
    days: Iterable[str] = (),
    at: Optional[datetime] = None,
) -> None:
    """Reject configurations the dispatcher could never schedule."""
    _zone(tz)
    if rule == "one_time":
        if at is None:
            raise RecurrenceConfigError("rule 'one_time' requires an 'at' instant")
        if at.tzinfo is None:
            raise RecurrenceConfigError("'at' must be timezone-aware")
        return
    _allowed_weekdays(rule, days)


def _localize(day: date, time_of_day: time, zone: ZoneInfo) -> datetime:
    # fold=0: a wall time inside a DST gap resolves forward, an ambiguous one
    # resolves to its first instance.
    wall = datetime.combine(day, time_of_day.replace(tzinfo=None), tzinfo=zone)
    return wall.astimezone(timezone.utc)


def next_occurrence(
    rule: str,
    time_of_day: time,
    tz: str,
    reference: datetime,
    *,
    days: Iterable[str] = (),
    at: Optional[datetime] = None,
) -> Optional[datetime]:
    """Return the first due instant strictly after *reference* (UTC-aware).

    ``None`` means the schedule is exhausted (a one-off already in the past);
    the caller is expected to mark the reminder completed.
    """
    if reference.tzinfo is None:
        raise ValueError("reference must be timezone-aware")

    if rule == "one_time":
        validate_rule(rule, tz, at=at)
        at_utc = at.astimezone(timezone.utc)
        return at_utc if at_utc > reference else None

    zone = _zone(tz)
    allowed = _allowed_weekdays(rule, days)
    start = reference.astimezone(zone).date()
    # Today plus one full week always contains a qualifying weekday.
    for offset in range(8):
        day = start + timedelta(days=offset)
        if day.weekday() not in allowed:
            continue
        candidate = _localize(day, time_of_day, zone)
        if candidate > reference:
            return candidate
    raise RecurrenceConfigError(f"no occurrence found for rule '{rule}'")  # pragma: no cover
