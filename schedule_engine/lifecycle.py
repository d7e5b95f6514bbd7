from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from schedule_engine.history import append_history
from schedule_engine.models import HistoryEntry, ScheduleRecord
from schedule_engine.next_run import calculate_next_run
from schedule_engine.storage import ScheduleStore
from schedule_engine.util import ensure_utc

logger = logging.getLogger(__name__)

AUTO_PAUSE_FAILURE_THRESHOLD = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MINUTES: tuple[int, ...] = (5, 15, 60)
FALLBACK_RETRY_DELAY_MINUTES = 5
MISSED_RUN_NOTE = "Executed on startup (missed scheduled time)"


def effective_max_retries(record: ScheduleRecord) -> int:
    if record.max_retries is None:
        return DEFAULT_MAX_RETRIES
    return max(0, record.max_retries)


def effective_retry_delays(record: ScheduleRecord) -> tuple[int, ...]:
    if record.retry_delay_minutes is None:
        return DEFAULT_RETRY_DELAY_MINUTES
    return record.retry_delay_minutes


def retry_delay_for_attempt(record: ScheduleRecord, attempt: int) -> timedelta:
    delays = effective_retry_delays(record)
    if not delays:
        return timedelta(minutes=FALLBACK_RETRY_DELAY_MINUTES)
    index = min(max(attempt, 1) - 1, len(delays) - 1)
    return timedelta(minutes=delays[index])


def current_retry_attempt(record: ScheduleRecord) -> int | None:
    """Retry number of the run about to be reported, or None for a regular run."""
    if not record.retry_on_failure:
        return None
    if 0 < record.consecutive_failures <= effective_max_retries(record):
        return record.consecutive_failures
    return None


def _entry_for(
    record: ScheduleRecord,
    *,
    executed_at: datetime,
    session_id: str,
    success: bool,
    error: str | None,
    duration_ms: int | None,
    note: str | None,
) -> HistoryEntry:
    attempt = current_retry_attempt(record)
    return HistoryEntry(
        executed_at=executed_at,
        session_id=session_id,
        success=success,
        error=error,
        duration_ms=duration_ms,
        note=note,
        is_retry=attempt is not None,
        retry_attempt=attempt,
    )


def _next_natural_occurrence(record: ScheduleRecord, now: datetime) -> ScheduleRecord:
    next_run = calculate_next_run(record.timing, now)
    if next_run is None:
        logger.info("Schedule %r (%s) has no further runs, marking completed", record.name, record.id)
        return replace(record, status="completed", next_run_at=None)
    return replace(record, next_run_at=next_run)


def apply_success(record: ScheduleRecord, entry: HistoryEntry, *, now: datetime) -> ScheduleRecord:
    updated = replace(
        record,
        history=append_history(record.history, entry),
        last_run_at=entry.executed_at,
        consecutive_failures=0,
    )
    if updated.status != "active":
        return updated
    return _next_natural_occurrence(updated, now)


def apply_failure(record: ScheduleRecord, entry: HistoryEntry, *, now: datetime) -> ScheduleRecord:
    failures = record.consecutive_failures + 1
    updated = replace(
        record,
        history=append_history(record.history, entry),
        last_run_at=entry.executed_at,
        consecutive_failures=failures,
    )
    if updated.status != "active":
        return updated

    if updated.retry_on_failure:
        max_retries = effective_max_retries(updated)
        if failures <= max_retries:
            retry_at = now + retry_delay_for_attempt(updated, failures)
            logger.info(
                "Scheduling retry %d/%d for %r (%s) at %s",
                failures,
                max_retries,
                updated.name,
                updated.id,
                retry_at.isoformat(),
            )
            return replace(updated, next_run_at=retry_at)
        logger.warning("Max retries exhausted for %r (%s)", updated.name, updated.id)

    if failures >= AUTO_PAUSE_FAILURE_THRESHOLD:
        logger.warning(
            "Auto-pausing schedule %r (%s) after %d consecutive failures",
            updated.name,
            updated.id,
            failures,
        )
        return replace(updated, status="error", next_run_at=None)

    next_run = calculate_next_run(updated.timing, now)
    if next_run is None:
        # A failed final occurrence is not a completion.
        logger.warning("Final run of %r (%s) failed, marking error", updated.name, updated.id)
        return replace(updated, status="error", next_run_at=None)
    return replace(updated, next_run_at=next_run)


class ScheduleLifecycle:
    def __init__(self, store: ScheduleStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is None:
            return self._store.now()
        return ensure_utc(self._clock()).replace(microsecond=0)

    def record_success(
        self,
        schedule_id: str,
        *,
        session_id: str = "",
        duration_ms: int | None = None,
        note: str | None = None,
    ) -> ScheduleRecord | None:
        now = self._now()

        def apply(existing: ScheduleRecord) -> ScheduleRecord:
            entry = _entry_for(
                existing,
                executed_at=now,
                session_id=session_id,
                success=True,
                error=None,
                duration_ms=duration_ms,
                note=note,
            )
            return apply_success(existing, entry, now=now)

        return self._store.mutate(schedule_id, apply)

    def record_failure(
        self,
        schedule_id: str,
        *,
        session_id: str = "",
        error: str | None = None,
        duration_ms: int | None = None,
        note: str | None = None,
    ) -> ScheduleRecord | None:
        now = self._now()

        def apply(existing: ScheduleRecord) -> ScheduleRecord:
            entry = _entry_for(
                existing,
                executed_at=now,
                session_id=session_id,
                success=False,
                error=error,
                duration_ms=duration_ms,
                note=note,
            )
            return apply_failure(existing, entry, now=now)

        return self._store.mutate(schedule_id, apply)

    def record_outcome(
        self,
        schedule_id: str,
        *,
        success: bool,
        session_id: str = "",
        error: str | None = None,
        duration_ms: int | None = None,
        note: str | None = None,
    ) -> ScheduleRecord | None:
        if success:
            return self.record_success(schedule_id, session_id=session_id, duration_ms=duration_ms, note=note)
        return self.record_failure(
            schedule_id,
            session_id=session_id,
            error=error,
            duration_ms=duration_ms,
            note=note,
        )
