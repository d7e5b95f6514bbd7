"""Wall-clock adjustment between the host timezone and named IANA zones.

Instants handled here are built from a host-local wall-clock reading (a date plus
an "HH:MM" time).  ``adjust_for_timezone`` shifts such an instant so that the
same wall-clock reading applies in the requested zone instead.  Offsets are
taken at the instant being adjusted, so DST transitions in either zone are
respected for that instant.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from schedule_engine.util import ensure_utc

logger = logging.getLogger(__name__)

_ZERO = timedelta(0)


def host_offset(instant: datetime) -> timedelta:
    """UTC offset of the host timezone at ``instant``."""
    return ensure_utc(instant).astimezone().utcoffset() or _ZERO


def zone_offset(tz_name: str, instant: datetime) -> timedelta:
    """UTC offset of ``tz_name`` at ``instant``; unknown zones count as UTC."""
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Invalid timezone: %s", tz_name)
        return _ZERO
    return ensure_utc(instant).astimezone(zone).utcoffset() or _ZERO


def adjust_for_timezone(instant: datetime, tz_name: str | None) -> datetime:
    instant = ensure_utc(instant)
    if not tz_name:
        return instant
    diff = host_offset(instant) - zone_offset(tz_name, instant)
    if diff == _ZERO:
        return instant
    return instant + diff


def local_wall_clock(value: date, hour: int, minute: int) -> datetime:
    """The UTC instant at which the host clock reads ``value hour:minute``."""
    naive = datetime.combine(value, time(hour, minute))
    return naive.astimezone(timezone.utc)


def local_date(instant: datetime) -> date:
    return ensure_utc(instant).astimezone().date()
