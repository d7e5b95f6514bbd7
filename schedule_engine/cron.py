from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from schedule_engine.util import ensure_utc

logger = logging.getLogger(__name__)

# One year plus a leap day, in minutes.
MAX_CRON_SEARCH_MINUTES = 366 * 24 * 60

_MINUTES_PER_HOUR = 60
_MINUTES_PER_DAY = 24 * 60


class CronExpressionError(ValueError):
    pass


@dataclass(frozen=True)
class ParsedCron:
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days_of_month: tuple[int, ...]
    months: tuple[int, ...]
    days_of_week: tuple[int, ...]
    day_of_month_wild: bool
    day_of_week_wild: bool

    def day_matches(self, value: datetime) -> bool:
        dom_matches = value.day in self.days_of_month
        dow_matches = (value.weekday() + 1) % 7 in self.days_of_week
        # POSIX: when both day fields are restricted, either one may match.
        if not self.day_of_month_wild and not self.day_of_week_wild:
            return dom_matches or dow_matches
        if not self.day_of_month_wild:
            return dom_matches
        if not self.day_of_week_wild:
            return dow_matches
        return True


def parse_cron_expression(expression: str) -> ParsedCron:
    parts = expression.strip().split()
    if len(parts) != 5:
        raise CronExpressionError(f"Invalid cron expression: expected 5 fields, got {len(parts)}")

    minute_part, hour_part, dom_part, month_part, dow_part = parts
    return ParsedCron(
        minutes=parse_cron_field(minute_part, 0, 59),
        hours=parse_cron_field(hour_part, 0, 23),
        days_of_month=parse_cron_field(dom_part, 1, 31),
        months=parse_cron_field(month_part, 1, 12),
        days_of_week=parse_cron_field(dow_part, 0, 6),
        day_of_month_wild=dom_part == "*",
        day_of_week_wild=dow_part == "*",
    )


def parse_cron_field(field: str, low: int, high: int) -> tuple[int, ...]:
    if field == "*":
        return tuple(range(low, high + 1))

    values: set[int] = set()
    for part in field.split(","):
        if "-" in part:
            start_text, _, end_text = part.partition("-")
            try:
                start = int(start_text, 10)
                end = int(end_text, 10)
            except ValueError as exc:
                raise CronExpressionError(f"Invalid range in cron field: {part}") from exc
            if start < low or end > high or start > end:
                raise CronExpressionError(f"Invalid range in cron field: {part}")
            values.update(range(start, end + 1))
        else:
            try:
                value = int(part, 10)
            except ValueError as exc:
                raise CronExpressionError(f"Invalid value in cron field: {part}") from exc
            if value < low or value > high:
                raise CronExpressionError(f"Invalid value in cron field: {part}")
            values.add(value)
    return tuple(sorted(values))


def is_valid_cron_expression(expression: str) -> bool:
    try:
        parse_cron_expression(expression)
    except CronExpressionError:
        return False
    return True


def find_next_cron_match(cron: ParsedCron, after: datetime) -> datetime | None:
    after = ensure_utc(after)
    # The search walks the host's local wall clock.
    candidate = after.astimezone().replace(tzinfo=None, second=0, microsecond=0)
    candidate += timedelta(minutes=1)

    months = frozenset(cron.months)
    hours = frozenset(cron.hours)
    minutes = frozenset(cron.minutes)

    elapsed = 0
    while elapsed < MAX_CRON_SEARCH_MINUTES:
        if candidate.month not in months or not cron.day_matches(candidate):
            step = _MINUTES_PER_DAY - (candidate.hour * _MINUTES_PER_HOUR + candidate.minute)
        elif candidate.hour not in hours:
            step = _MINUTES_PER_HOUR - candidate.minute
        elif candidate.minute not in minutes:
            step = 1
        else:
            match = candidate.astimezone(timezone.utc)
            if match > after:
                return match
            step = 1
        candidate += timedelta(minutes=step)
        elapsed += step

    logger.debug("No cron match within one year after %s", after.isoformat())
    return None
