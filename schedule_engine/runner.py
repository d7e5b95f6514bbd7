from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from schedule_engine.lifecycle import MISSED_RUN_NOTE, ScheduleLifecycle
from schedule_engine.models import HistoryEntry, ScheduleRecord
from schedule_engine.next_run import calculate_next_run
from schedule_engine.storage import ScheduleStore
from schedule_engine.util import env_int, now_utc

logger = logging.getLogger(__name__)

SKIPPED_OVERLAP_ERROR = "Skipped - previous execution still running"
MIN_TIMER_DELAY = timedelta(seconds=1)


def _get_missed_run_delay_seconds() -> int:
    return env_int("SCHEDULE_ENGINE_MISSED_RUN_DELAY_SECONDS", 2)


def _get_misfire_grace_seconds() -> int:
    return env_int("SCHEDULE_ENGINE_MISFIRE_GRACE_SECONDS", 300)


class ScheduleAlreadyRunningError(RuntimeError):
    def __init__(self, *, schedule_id: str) -> None:
        super().__init__(f"Schedule already running: {schedule_id}")
        self.schedule_id = schedule_id


@dataclass(frozen=True)
class ExecutionResult:
    session_id: str = ""
    success: bool = True
    error: str | None = None


@dataclass(frozen=True)
class ScheduleExecutedEvent:
    schedule_id: str
    session_id: str
    success: bool
    error: str | None
    record: ScheduleRecord | None


Executor = Callable[[ScheduleRecord], Awaitable[ExecutionResult]]
Listener = Callable[[ScheduleExecutedEvent], Any]


class ScheduleRunner:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        executor: Executor,
        listeners: Iterable[Listener] = (),
        missed_run_delay_seconds: int | None = None,
        misfire_grace_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._lifecycle = ScheduleLifecycle(store)
        self._executor = executor
        self._listeners: list[Listener] = list(listeners)
        self._missed_run_delay = timedelta(
            seconds=_get_missed_run_delay_seconds() if missed_run_delay_seconds is None else missed_run_delay_seconds
        )
        self._misfire_grace_seconds = (
            _get_misfire_grace_seconds() if misfire_grace_seconds is None else misfire_grace_seconds
        )
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._lock = asyncio.Lock()
        self._store_lock = asyncio.Lock()
        self._executing: set[str] = set()
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_executing(self, schedule_id: str) -> bool:
        return schedule_id in self._executing

    def next_fire_time(self, schedule_id: str) -> datetime | None:
        job = self._scheduler.get_job(schedule_id)
        if job is None:
            return None
        return job.next_run_time

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            # Jobs added before start() stay pending, so catch-up replaces the
            # regular timer of a missed schedule before anything can fire.
            await self.reload()
            await self._catch_up_missed()
            self._scheduler.start()
            self._started = True
            logger.info("Schedule runner started with %d jobs", len(self._scheduler.get_jobs()))

    async def shutdown(self) -> None:
        async with self._lock:
            if not self._started:
                return
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Schedule runner stopped")

    async def reload(self) -> None:
        records = await self._call_store(self._store.list_schedules)
        self._scheduler.remove_all_jobs()
        for record in records:
            if record.status == "active":
                await self._arm(record)

    async def reschedule(self, schedule_id: str) -> None:
        self._disarm(schedule_id)
        record = await self._call_store(self._store.get, schedule_id)
        if record is not None and record.status == "active":
            await self._arm(record)

    async def run_now(self, schedule_id: str, *, note: str | None = None) -> ScheduleRecord | None:
        if schedule_id in self._executing:
            raise ScheduleAlreadyRunningError(schedule_id=schedule_id)
        # Claimed before the first await so a concurrent call sees it.
        self._executing.add(schedule_id)
        try:
            record = await self._call_store(self._store.get, schedule_id)
            if record is None:
                return None
            return await self._execute(record, note=note)
        finally:
            self._executing.discard(schedule_id)

    async def _call_store(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        async with self._store_lock:
            return await asyncio.to_thread(fn, *args, **kwargs)

    async def _catch_up_missed(self) -> None:
        missed = await self._call_store(self._store.get_missed_schedules)
        run_at = now_utc() + self._missed_run_delay
        for record in missed:
            logger.info("Found missed schedule %r (%s), was due %s", record.name, record.id, record.next_run_at)
            self._add_job(record.id, run_at, note=MISSED_RUN_NOTE)

    async def _arm(self, record: ScheduleRecord) -> None:
        next_run = record.next_run_at
        if next_run is None:
            next_run = calculate_next_run(record.timing, self._store.now())
            if next_run is None:
                logger.debug("No next run for %r (%s)", record.name, record.id)
                return
            await self._call_store(self._store.update_next_run_at, record.id, next_run)

        earliest = now_utc() + MIN_TIMER_DELAY
        self._add_job(record.id, max(next_run, earliest), note=None)
        logger.info("Scheduled %r (%s) for %s", record.name, record.id, next_run.isoformat())

    def _add_job(self, schedule_id: str, run_at: datetime, *, note: str | None) -> None:
        self._scheduler.add_job(
            self._run_schedule_job,
            trigger=DateTrigger(run_date=run_at),
            args=[schedule_id],
            kwargs={"note": note},
            id=schedule_id,
            replace_existing=True,
            misfire_grace_time=self._misfire_grace_seconds,
        )

    def _disarm(self, schedule_id: str) -> None:
        try:
            self._scheduler.remove_job(schedule_id)
        except JobLookupError:
            pass

    async def _run_schedule_job(self, schedule_id: str, note: str | None = None) -> None:
        record = await self._call_store(self._store.get, schedule_id)
        if record is None:
            logger.warning("Timer fired for unknown schedule: %s", schedule_id)
            return
        if record.status != "active":
            logger.info("Skipping %r (%s), status is %s", record.name, schedule_id, record.status)
            return

        if schedule_id in self._executing:
            logger.warning("Skipping %r (%s), previous execution still running", record.name, schedule_id)
            entry = HistoryEntry(
                executed_at=self._store.now(),
                session_id="",
                success=False,
                error=SKIPPED_OVERLAP_ERROR,
            )
            await self._call_store(self._store.add_history_entry, schedule_id, entry)
            return

        self._executing.add(schedule_id)
        try:
            await self._execute(record, note=note)
        finally:
            self._executing.discard(schedule_id)

    async def _execute(self, record: ScheduleRecord, *, note: str | None) -> ScheduleRecord | None:
        # Callers hold the schedule's slot in self._executing.
        schedule_id = record.id
        logger.info("Executing %r (%s)", record.name, schedule_id)
        started = time.monotonic()
        try:
            result = await self._executor(record)
        except Exception as exc:
            logger.exception("Schedule run failed: %s", schedule_id)
            result = ExecutionResult(success=False, error=str(exc) or type(exc).__name__)

        duration_ms = int((time.monotonic() - started) * 1000)
        updated = await self._call_store(
            self._lifecycle.record_outcome,
            schedule_id,
            success=result.success,
            session_id=result.session_id,
            error=result.error,
            duration_ms=duration_ms,
            note=note,
        )

        if updated is not None and updated.status == "active":
            await self._arm(updated)
        else:
            self._disarm(schedule_id)

        await self._notify(
            ScheduleExecutedEvent(
                schedule_id=schedule_id,
                session_id=result.session_id,
                success=result.success,
                error=result.error,
                record=updated,
            )
        )
        return updated

    async def _notify(self, event: ScheduleExecutedEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Schedule listener failed: %s", event.schedule_id)
