from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Literal

ScheduleFrequency = Literal["once", "daily", "weekly", "monthly", "cron"]
ScheduleStatus = Literal["active", "paused", "completed", "error"]

FREQUENCIES: tuple[str, ...] = ("once", "daily", "weekly", "monthly", "cron")
STATUSES: tuple[str, ...] = ("active", "paused", "completed", "error")
SCHEMA_VERSION = 1


class ScheduleValidationError(ValueError):
    pass


@dataclass(frozen=True)
class OnceTiming:
    frequency: ClassVar[str] = "once"

    time: str | None = None
    date: str | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class DailyTiming:
    frequency: ClassVar[str] = "daily"

    time: str | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class WeeklyTiming:
    frequency: ClassVar[str] = "weekly"

    time: str | None = None
    days_of_week: tuple[int, ...] = ()
    timezone: str | None = None


@dataclass(frozen=True)
class MonthlyTiming:
    frequency: ClassVar[str] = "monthly"

    time: str | None = None
    day_of_month: int | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class CronTiming:
    frequency: ClassVar[str] = "cron"

    cron_expression: str | None = None
    # Display only; the cron fields carry the time of day.
    time: str | None = None
    timezone: str | None = None


ScheduleTiming = OnceTiming | DailyTiming | WeeklyTiming | MonthlyTiming | CronTiming
TIMING_TYPES: tuple[type, ...] = (OnceTiming, DailyTiming, WeeklyTiming, MonthlyTiming, CronTiming)


@dataclass(frozen=True)
class HistoryEntry:
    executed_at: datetime
    session_id: str
    success: bool
    error: str | None = None
    duration_ms: int | None = None
    note: str | None = None
    is_retry: bool = False
    retry_attempt: int | None = None


@dataclass(frozen=True)
class ScheduleRecord:
    id: str
    name: str
    timing: ScheduleTiming
    execution: dict[str, Any]
    status: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    icon: str | None = None
    group: str | None = None
    session_config: dict[str, Any] | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    history: tuple[HistoryEntry, ...] = ()
    open_on_run: bool = False
    retry_on_failure: bool = False
    max_retries: int | None = None
    retry_delay_minutes: tuple[int, ...] | None = None
    consecutive_failures: int = 0


@dataclass
class SchedulesDocument:
    version: int = SCHEMA_VERSION
    schedules: list[ScheduleRecord] = field(default_factory=list)


# Fields a caller may change through ScheduleStore.update.
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "timing",
        "execution",
        "status",
        "description",
        "icon",
        "group",
        "session_config",
        "next_run_at",
        "last_run_at",
        "history",
        "open_on_run",
        "retry_on_failure",
        "max_retries",
        "retry_delay_minutes",
        "consecutive_failures",
    }
)
