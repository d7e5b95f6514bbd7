from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta

from schedule_engine.cron import CronExpressionError, find_next_cron_match, parse_cron_expression
from schedule_engine.models import (
    CronTiming,
    DailyTiming,
    MonthlyTiming,
    OnceTiming,
    ScheduleTiming,
    WeeklyTiming,
)
from schedule_engine.timezones import adjust_for_timezone, local_date, local_wall_clock
from schedule_engine.util import ensure_utc, now_utc, parse_iso

logger = logging.getLogger(__name__)

MAX_WEEKLY_SEARCH_DAYS = 8
MAX_MONTHLY_SEARCH_MONTHS = 13
# Covers the widest gap between the host offset and any IANA offset.
MAX_DAILY_SEARCH_DAYS = 3

_TIME_RE = re.compile(r"^\s*(\d{1,2})\s*:\s*(\d{1,2})\s*$")


def calculate_next_run(timing: ScheduleTiming, after: datetime | None = None) -> datetime | None:
    after = now_utc() if after is None else ensure_utc(after)

    if isinstance(timing, OnceTiming):
        return _next_once_run(timing, after)
    if isinstance(timing, DailyTiming):
        return _next_daily_run(timing, after)
    if isinstance(timing, WeeklyTiming):
        return _next_weekly_run(timing, after)
    if isinstance(timing, MonthlyTiming):
        return _next_monthly_run(timing, after)
    if isinstance(timing, CronTiming):
        return _next_cron_run(timing, after)

    logger.debug("Unknown timing type: %r", timing)
    return None


def get_next_n_runs(timing: ScheduleTiming, n: int, after: datetime | None = None) -> list[datetime]:
    results: list[datetime] = []
    current = now_utc() if after is None else ensure_utc(after)
    for _ in range(n):
        next_run = calculate_next_run(timing, current)
        if next_run is None:
            break
        results.append(next_run)
        current = next_run + timedelta(minutes=1)
    return results


def parse_time(value: str | None) -> tuple[int, int] | None:
    if value is None:
        return None
    match = _TIME_RE.match(value)
    if match is None:
        logger.debug("Invalid time format: %r, defaulting to 00:00", value)
        return 0, 0
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        logger.debug("Invalid time format: %r, defaulting to 00:00", value)
        return 0, 0
    return hours, minutes


def weekday_number(value: date) -> int:
    """Day of week with Sunday as 0."""
    return (value.weekday() + 1) % 7


def last_day_of_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - timedelta(days=1)).day


def _month_index(value: date) -> int:
    return value.year * 12 + (value.month - 1)


def _month_from_index(index: int) -> tuple[int, int]:
    return index // 12, (index % 12) + 1


def _at(value: date, clock: tuple[int, int], tz_name: str | None) -> datetime:
    return adjust_for_timezone(local_wall_clock(value, *clock), tz_name)


def _parse_calendar_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    parsed = parse_iso(value)
    return parsed.date() if parsed is not None else None


def _next_once_run(timing: OnceTiming, after: datetime) -> datetime | None:
    if not timing.date:
        logger.debug("Missing date for once schedule")
        return None
    target_date = _parse_calendar_date(timing.date)
    clock = parse_time(timing.time)
    if target_date is None or clock is None:
        logger.debug("Invalid date or time for once schedule: %r %r", timing.date, timing.time)
        return None

    candidate = _at(target_date, clock, timing.timezone)
    if candidate <= after:
        return None
    return candidate


def _next_daily_run(timing: DailyTiming, after: datetime) -> datetime | None:
    clock = parse_time(timing.time)
    if clock is None:
        logger.debug("Missing time for daily schedule")
        return None

    candidate_date = local_date(after)
    for _ in range(MAX_DAILY_SEARCH_DAYS):
        candidate = _at(candidate_date, clock, timing.timezone)
        if candidate > after:
            return candidate
        candidate_date += timedelta(days=1)

    logger.debug("Could not find next daily run after %s", after.isoformat())
    return None


def _next_weekly_run(timing: WeeklyTiming, after: datetime) -> datetime | None:
    days = {day for day in timing.days_of_week if 0 <= day <= 6}
    if not days:
        logger.debug("No days specified for weekly schedule")
        return None
    clock = parse_time(timing.time)
    if clock is None:
        logger.debug("Missing time for weekly schedule")
        return None

    candidate_date = local_date(after)
    for _ in range(MAX_WEEKLY_SEARCH_DAYS):
        if weekday_number(candidate_date) in days:
            candidate = _at(candidate_date, clock, timing.timezone)
            if candidate > after:
                return candidate
        candidate_date += timedelta(days=1)

    logger.debug("Could not find next weekly run day")
    return None


def _next_monthly_run(timing: MonthlyTiming, after: datetime) -> datetime | None:
    day_of_month = timing.day_of_month
    if day_of_month is None or not 1 <= day_of_month <= 31:
        logger.debug("Invalid day of month: %r", day_of_month)
        return None
    clock = parse_time(timing.time)
    if clock is None:
        logger.debug("Missing time for monthly schedule")
        return None

    start_index = _month_index(local_date(after))
    for offset in range(MAX_MONTHLY_SEARCH_MONTHS):
        year, month = _month_from_index(start_index + offset)
        day = min(day_of_month, last_day_of_month(year, month))
        candidate = _at(date(year, month, day), clock, timing.timezone)
        if candidate > after:
            return candidate

    logger.debug("Could not find next monthly run within %d months", MAX_MONTHLY_SEARCH_MONTHS)
    return None


def _next_cron_run(timing: CronTiming, after: datetime) -> datetime | None:
    if not timing.cron_expression:
        logger.debug("Missing cron expression")
        return None
    try:
        cron = parse_cron_expression(timing.cron_expression)
    except CronExpressionError as exc:
        logger.debug("Failed to parse cron expression %r: %s", timing.cron_expression, exc)
        return None
    # timing.timezone is not applied to cron schedules; they follow the host clock.
    return find_next_cron_match(cron, after)
