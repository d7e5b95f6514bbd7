from __future__ import annotations

from datetime import date, datetime, timedelta

from schedule_engine.models import (
    CronTiming,
    DailyTiming,
    MonthlyTiming,
    OnceTiming,
    ScheduleTiming,
    WeeklyTiming,
)
from schedule_engine.next_run import parse_time
from schedule_engine.util import ensure_utc, now_utc, parse_iso

_SHORT_DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
_LONG_DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_SHORT_MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_WEEKDAYS = frozenset({1, 2, 3, 4, 5})
_WEEKEND = frozenset({0, 6})


def get_ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _clock_text(hours: int, minutes: int) -> str:
    period = "PM" if hours >= 12 else "AM"
    return f"{hours % 12 or 12}:{minutes:02d} {period}"


def _short_date(value: date) -> str:
    return f"{_SHORT_MONTH_NAMES[value.month - 1]} {value.day}"


def format_next_run(next_run_at: str | datetime | None, now: datetime | None = None) -> str:
    if isinstance(next_run_at, str):
        next_run_at = parse_iso(next_run_at)
    if next_run_at is None:
        return "Not scheduled"

    instant = ensure_utc(next_run_at)
    reference = now_utc() if now is None else ensure_utc(now)
    local = instant.astimezone()
    local_now = reference.astimezone()
    clock = _clock_text(local.hour, local.minute)

    if local.date() == local_now.date():
        return f"Today at {clock}"
    if local.date() == local_now.date() + timedelta(days=1):
        return f"Tomorrow at {clock}"
    if (instant - reference) < timedelta(days=7):
        return f"{_LONG_DAY_NAMES[local.weekday()]} at {clock}"
    return f"{_short_date(local.date())} at {clock}"


def format_timing(timing: ScheduleTiming) -> str:
    clock = parse_time(timing.time) or (0, 0)
    time_text = _clock_text(*clock)

    if isinstance(timing, OnceTiming):
        if timing.date:
            try:
                when = date.fromisoformat(timing.date[:10])
            except ValueError:
                return f"Once at {time_text}"
            return f"Once on {_short_date(when)}, {when.year} at {time_text}"
        return f"Once at {time_text}"

    if isinstance(timing, DailyTiming):
        return f"Daily at {time_text}"

    if isinstance(timing, WeeklyTiming):
        days = timing.days_of_week
        if not days:
            return f"Weekly at {time_text}"
        if len(days) == 5 and _WEEKDAYS.issubset(days):
            return f"Weekdays at {time_text}"
        if len(days) == 2 and _WEEKEND.issubset(days):
            return f"Weekends at {time_text}"
        names = ", ".join(_SHORT_DAY_NAMES[day] for day in days if 0 <= day <= 6)
        return f"{names} at {time_text}"

    if isinstance(timing, MonthlyTiming):
        if timing.day_of_month is not None:
            return f"Monthly on the {get_ordinal(timing.day_of_month)} at {time_text}"
        return f"Monthly at {time_text}"

    if isinstance(timing, CronTiming):
        return timing.cron_expression or "Custom schedule"

    return "Unknown schedule"
