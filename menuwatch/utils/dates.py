"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import date, datetime, timezone

import pendulum

DEFAULT_TZ = "America/New_York"
PERIODS = ("daily", "weekly", "monthly")


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def today_in_tz() -> date:
    return now_in_tz().date()


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    utc = value.astimezone(timezone.utc)
    return datetime(utc.year, utc.month, utc.day, utc.hour, utc.minute, utc.second, utc.microsecond)


def period_bounds(period: str, as_of: date | None = None) -> tuple[datetime, datetime]:
    """Return the UTC [start, end) window of the period containing ``as_of``.

    Boundaries are computed in the configured local timezone so a "daily"
    period matches the calendar day operators see.
    """
    if period not in PERIODS:
        raise ValueError(f"Unknown period {period!r}")
    tz = pendulum.timezone(timezone_name())
    day = as_of or today_in_tz()
    anchor = pendulum.datetime(day.year, day.month, day.day, tz=tz)
    unit = {"daily": "day", "weekly": "week", "monthly": "month"}[period]
    start = anchor.start_of(unit)
    end = start.add(**{f"{unit}s": 1})
    return to_utc_naive(start), to_utc_naive(end)
