from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from schedule_engine.models import (
    FREQUENCIES,
    SCHEMA_VERSION,
    STATUSES,
    TIMING_TYPES,
    CronTiming,
    DailyTiming,
    HistoryEntry,
    MonthlyTiming,
    OnceTiming,
    ScheduleRecord,
    SchedulesDocument,
    ScheduleTiming,
    ScheduleValidationError,
    WeeklyTiming,
)
from schedule_engine.util import iso_utc, parse_iso

logger = logging.getLogger(__name__)


def _optional_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _int_tuple(value: Any) -> tuple[int, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item for item in value if isinstance(item, int) and not isinstance(item, bool))


def _require_string(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ScheduleValidationError(f"{key} must be a non-empty string")
    return value


def timing_from_dict(value: Any) -> ScheduleTiming:
    if not isinstance(value, Mapping):
        raise ScheduleValidationError("timing must be an object")

    frequency = str(value.get("frequency") or "").strip().lower()
    if frequency not in FREQUENCIES:
        raise ScheduleValidationError("timing.frequency must be once, daily, weekly, monthly, or cron")

    time_value = value.get("time") if isinstance(value.get("time"), str) else None
    tz = _optional_string(value.get("timezone"))

    if frequency == "once":
        date_value = value.get("date") if isinstance(value.get("date"), str) else None
        return OnceTiming(time=time_value, date=date_value, timezone=tz)
    if frequency == "daily":
        return DailyTiming(time=time_value, timezone=tz)
    if frequency == "weekly":
        return WeeklyTiming(time=time_value, days_of_week=_int_tuple(value.get("daysOfWeek")), timezone=tz)
    if frequency == "monthly":
        return MonthlyTiming(time=time_value, day_of_month=_optional_int(value.get("date")), timezone=tz)
    expression = value.get("cronExpression") if isinstance(value.get("cronExpression"), str) else None
    return CronTiming(cron_expression=expression, time=time_value, timezone=tz)


def timing_to_dict(timing: ScheduleTiming) -> dict[str, Any]:
    payload: dict[str, Any] = {"frequency": timing.frequency}
    if timing.time is not None:
        payload["time"] = timing.time
    if isinstance(timing, OnceTiming) and timing.date is not None:
        payload["date"] = timing.date
    elif isinstance(timing, WeeklyTiming):
        payload["daysOfWeek"] = list(timing.days_of_week)
    elif isinstance(timing, MonthlyTiming) and timing.day_of_month is not None:
        payload["date"] = timing.day_of_month
    elif isinstance(timing, CronTiming) and timing.cron_expression is not None:
        payload["cronExpression"] = timing.cron_expression
    if timing.timezone is not None:
        payload["timezone"] = timing.timezone
    return payload


def coerce_timing(value: Any) -> ScheduleTiming:
    if isinstance(value, TIMING_TYPES):
        return value
    return timing_from_dict(value)


def history_entry_to_dict(entry: HistoryEntry) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "executedAt": iso_utc(entry.executed_at),
        "sessionId": entry.session_id,
        "success": entry.success,
    }
    if entry.error is not None:
        payload["error"] = entry.error
    if entry.duration_ms is not None:
        payload["durationMs"] = entry.duration_ms
    if entry.note is not None:
        payload["note"] = entry.note
    if entry.is_retry:
        payload["isRetry"] = True
    if entry.retry_attempt is not None:
        payload["retryAttempt"] = entry.retry_attempt
    return payload


def history_entry_from_dict(payload: Any) -> HistoryEntry:
    if not isinstance(payload, Mapping):
        raise ScheduleValidationError("history entry must be an object")
    executed_at = parse_iso(payload.get("executedAt"))
    if executed_at is None:
        raise ScheduleValidationError("history entry executedAt must be an ISO timestamp")
    session_id = payload.get("sessionId")
    return HistoryEntry(
        executed_at=executed_at,
        session_id=session_id if isinstance(session_id, str) else "",
        success=bool(payload.get("success")),
        error=payload.get("error") if isinstance(payload.get("error"), str) else None,
        duration_ms=_optional_int(payload.get("durationMs")),
        note=payload.get("note") if isinstance(payload.get("note"), str) else None,
        is_retry=bool(payload.get("isRetry")),
        retry_attempt=_optional_int(payload.get("retryAttempt")),
    )


def _parse_history(value: Any) -> tuple[HistoryEntry, ...]:
    if not isinstance(value, list):
        return ()
    entries: list[HistoryEntry] = []
    for item in value:
        try:
            entries.append(history_entry_from_dict(item))
        except ScheduleValidationError as exc:
            logger.warning("Dropping malformed history entry: %s", exc)
    return tuple(entries)


def serialize_schedule(record: ScheduleRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": record.id,
        "name": record.name,
    }
    if record.description is not None:
        payload["description"] = record.description
    if record.icon is not None:
        payload["icon"] = record.icon
    payload["timing"] = timing_to_dict(record.timing)
    payload["execution"] = record.execution
    if record.session_config is not None:
        payload["sessionConfig"] = record.session_config
    payload["status"] = record.status
    payload["createdAt"] = iso_utc(record.created_at)
    payload["updatedAt"] = iso_utc(record.updated_at)
    if record.next_run_at is not None:
        payload["nextRunAt"] = iso_utc(record.next_run_at)
    if record.last_run_at is not None:
        payload["lastRunAt"] = iso_utc(record.last_run_at)
    payload["history"] = [history_entry_to_dict(entry) for entry in record.history]
    payload["openOnRun"] = record.open_on_run
    if record.group is not None:
        payload["group"] = record.group
    payload["retryOnFailure"] = record.retry_on_failure
    if record.max_retries is not None:
        payload["maxRetries"] = record.max_retries
    if record.retry_delay_minutes is not None:
        payload["retryDelayMinutes"] = list(record.retry_delay_minutes)
    payload["consecutiveFailures"] = record.consecutive_failures
    return payload


def parse_schedule(payload: Any) -> ScheduleRecord:
    if not isinstance(payload, Mapping):
        raise ScheduleValidationError("schedule must be an object")

    status = payload.get("status")
    if status not in STATUSES:
        raise ScheduleValidationError(f"Invalid schedule status: {status!r}")

    created_at = parse_iso(payload.get("createdAt"))
    updated_at = parse_iso(payload.get("updatedAt"))
    if created_at is None or updated_at is None:
        raise ScheduleValidationError("createdAt and updatedAt must be ISO timestamps")

    execution = payload.get("execution")
    session_config = payload.get("sessionConfig")
    history = payload.get("history")
    retry_delays = payload.get("retryDelayMinutes")

    return ScheduleRecord(
        id=_require_string(payload, "id"),
        name=_require_string(payload, "name"),
        timing=timing_from_dict(payload.get("timing")),
        execution=dict(execution) if isinstance(execution, Mapping) else {},
        status=status,
        created_at=created_at,
        updated_at=updated_at,
        description=payload.get("description") if isinstance(payload.get("description"), str) else None,
        icon=payload.get("icon") if isinstance(payload.get("icon"), str) else None,
        group=payload.get("group") if isinstance(payload.get("group"), str) else None,
        session_config=dict(session_config) if isinstance(session_config, Mapping) else None,
        next_run_at=parse_iso(payload.get("nextRunAt")),
        last_run_at=parse_iso(payload.get("lastRunAt")),
        history=_parse_history(history),
        open_on_run=bool(payload.get("openOnRun")),
        retry_on_failure=bool(payload.get("retryOnFailure")),
        max_retries=_optional_int(payload.get("maxRetries")),
        retry_delay_minutes=_int_tuple(retry_delays) if isinstance(retry_delays, list) else None,
        consecutive_failures=_optional_int(payload.get("consecutiveFailures")) or 0,
    )


def serialize_document(document: SchedulesDocument) -> dict[str, Any]:
    return {
        "version": document.version,
        "schedules": [serialize_schedule(record) for record in document.schedules],
    }


def parse_document(payload: Any) -> SchedulesDocument:
    if not isinstance(payload, Mapping):
        raise ScheduleValidationError("Schedules document must be an object")
    if payload.get("version") != SCHEMA_VERSION:
        raise ScheduleValidationError(f"Unknown schedules document version: {payload.get('version')!r}")
    schedules = payload.get("schedules")
    if not isinstance(schedules, list):
        raise ScheduleValidationError("schedules must be a list")
    records: list[ScheduleRecord] = []
    for item in schedules:
        try:
            records.append(parse_schedule(item))
        except ScheduleValidationError as exc:
            schedule_id = item.get("id") if isinstance(item, Mapping) else None
            logger.warning("Skipping malformed schedule %r: %s", schedule_id, exc)
    return SchedulesDocument(version=SCHEMA_VERSION, schedules=records)
