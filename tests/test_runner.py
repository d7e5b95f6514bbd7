import asyncio
from datetime import timedelta

import pytest

from schedule_engine.lifecycle import MISSED_RUN_NOTE
from schedule_engine.models import DailyTiming
from schedule_engine.runner import (
    SKIPPED_OVERLAP_ERROR,
    ExecutionResult,
    ScheduleAlreadyRunningError,
    ScheduleRunner,
    _get_misfire_grace_seconds,
    _get_missed_run_delay_seconds,
)
from schedule_engine.storage import ScheduleStore
from schedule_engine.util import now_utc

EXECUTION = {"prompt": "Triage new issues"}


class RecordingExecutor:
    def __init__(self, result: ExecutionResult | None = None, error: Exception | None = None) -> None:
        self.calls = []
        self._result = result or ExecutionResult(session_id="session-1")
        self._error = error

    async def __call__(self, record):
        self.calls.append(record.id)
        if self._error is not None:
            raise self._error
        return self._result


def _create(store: ScheduleStore, **kwargs):
    kwargs.setdefault("timing", DailyTiming(time="09:00"))
    return store.create(name=kwargs.pop("name", "Triage"), execution=EXECUTION, **kwargs)


@pytest.mark.asyncio
async def test_start_arms_active_schedules(tmp_path):
    store = ScheduleStore(tmp_path)
    active = _create(store)
    paused = _create(store, name="Paused", status="paused")
    runner = ScheduleRunner(store=store, executor=RecordingExecutor())
    await runner.start()
    try:
        assert runner.running
        assert runner.next_fire_time(active.id) == active.next_run_at
        assert runner.next_fire_time(paused.id) is None
    finally:
        await runner.shutdown()
    assert not runner.running


@pytest.mark.asyncio
async def test_run_now_records_success_and_notifies(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    events = []
    async_events = []

    async def async_listener(event):
        async_events.append(event)

    executor = RecordingExecutor()
    runner = ScheduleRunner(store=store, executor=executor, listeners=[events.append])
    runner.add_listener(async_listener)
    await runner.start()
    try:
        updated = await runner.run_now(record.id)
    finally:
        await runner.shutdown()

    assert executor.calls == [record.id]
    assert updated.history[0].success is True
    assert updated.history[0].session_id == "session-1"
    assert updated.history[0].duration_ms is not None
    assert updated.consecutive_failures == 0
    assert store.get(record.id) == updated

    assert len(events) == 1
    assert events[0].schedule_id == record.id
    assert events[0].success is True
    assert events[0].session_id == "session-1"
    assert events[0].record == updated
    assert async_events == events


@pytest.mark.asyncio
async def test_run_now_unknown_schedule(tmp_path):
    runner = ScheduleRunner(store=ScheduleStore(tmp_path), executor=RecordingExecutor())
    assert await runner.run_now("missing") is None


@pytest.mark.asyncio
async def test_executor_exception_is_recorded_as_failure(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    events = []
    runner = ScheduleRunner(
        store=store,
        executor=RecordingExecutor(error=RuntimeError("agent crashed")),
        listeners=[events.append],
    )
    await runner.start()
    try:
        updated = await runner.run_now(record.id)
    finally:
        await runner.shutdown()

    assert updated.consecutive_failures == 1
    assert updated.history[0].success is False
    assert updated.history[0].error == "agent crashed"
    assert events[0].success is False
    assert events[0].error == "agent crashed"


@pytest.mark.asyncio
async def test_failed_result_arms_retry_timer(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store, retry_on_failure=True)
    runner = ScheduleRunner(
        store=store,
        executor=RecordingExecutor(result=ExecutionResult(session_id="s", success=False, error="timeout")),
    )
    await runner.start()
    try:
        before = now_utc()
        updated = await runner.run_now(record.id)
        fire_time = runner.next_fire_time(record.id)
    finally:
        await runner.shutdown()

    assert updated.next_run_at - before >= timedelta(minutes=5)
    assert updated.next_run_at - before <= timedelta(minutes=5, seconds=5)
    assert fire_time == updated.next_run_at


@pytest.mark.asyncio
async def test_auto_paused_schedule_is_disarmed(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    store.update(record.id, consecutive_failures=2)
    runner = ScheduleRunner(store=store, executor=RecordingExecutor(error=RuntimeError("boom")))
    await runner.start()
    try:
        updated = await runner.run_now(record.id)
        assert updated.status == "error"
        assert runner.next_fire_time(record.id) is None
    finally:
        await runner.shutdown()


@pytest.mark.asyncio
async def test_missed_schedules_run_shortly_after_start(tmp_path):
    store = ScheduleStore(tmp_path)
    missed = _create(store, name="Missed")
    upcoming = _create(store, name="Upcoming")
    store.update_next_run_at(missed.id, now_utc() - timedelta(hours=1))

    runner = ScheduleRunner(store=store, executor=RecordingExecutor(), missed_run_delay_seconds=60)
    await runner.start()
    try:
        job = runner._scheduler.get_job(missed.id)
        assert job.kwargs["note"] == MISSED_RUN_NOTE
        assert job.next_run_time - now_utc() <= timedelta(seconds=60)
        assert job.next_run_time - now_utc() > timedelta(seconds=50)

        upcoming_job = runner._scheduler.get_job(upcoming.id)
        assert upcoming_job.kwargs["note"] is None
    finally:
        await runner.shutdown()


@pytest.mark.asyncio
async def test_timer_job_records_note(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    executor = RecordingExecutor()
    runner = ScheduleRunner(store=store, executor=executor)
    await runner.start()
    try:
        await runner._run_schedule_job(record.id, note=MISSED_RUN_NOTE)
    finally:
        await runner.shutdown()

    assert executor.calls == [record.id]
    assert store.get(record.id).history[0].note == MISSED_RUN_NOTE


@pytest.mark.asyncio
async def test_timer_job_skips_inactive_and_unknown_schedules(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store, status="paused")
    executor = RecordingExecutor()
    runner = ScheduleRunner(store=store, executor=executor)
    await runner.start()
    try:
        await runner._run_schedule_job(record.id)
        await runner._run_schedule_job("missing")
    finally:
        await runner.shutdown()

    assert executor.calls == []
    assert store.get(record.id).history == ()


@pytest.mark.asyncio
async def test_overlapping_runs_are_rejected_and_logged(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_executor(schedule):
        started.set()
        await release.wait()
        return ExecutionResult(session_id="slow")

    runner = ScheduleRunner(store=store, executor=slow_executor)
    await runner.start()
    try:
        first = asyncio.create_task(runner.run_now(record.id))
        await asyncio.wait_for(started.wait(), timeout=5)
        assert runner.is_executing(record.id)

        with pytest.raises(ScheduleAlreadyRunningError) as excinfo:
            await runner.run_now(record.id)
        assert excinfo.value.schedule_id == record.id

        await runner._run_schedule_job(record.id)
        skipped = store.get(record.id).history[0]
        assert skipped.success is False
        assert skipped.error == SKIPPED_OVERLAP_ERROR

        release.set()
        updated = await asyncio.wait_for(first, timeout=5)
    finally:
        await runner.shutdown()

    assert not runner.is_executing(record.id)
    assert [entry.session_id for entry in updated.history] == ["slow", ""]


@pytest.mark.asyncio
async def test_concurrent_run_now_executes_once(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    calls = []

    async def sleepy_executor(schedule):
        calls.append(schedule.id)
        await asyncio.sleep(0.05)
        return ExecutionResult(session_id="only")

    runner = ScheduleRunner(store=store, executor=sleepy_executor)
    await runner.start()
    try:
        results = await asyncio.gather(
            runner.run_now(record.id),
            runner.run_now(record.id),
            return_exceptions=True,
        )
    finally:
        await runner.shutdown()

    assert calls == [record.id]
    errors = [result for result in results if isinstance(result, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ScheduleAlreadyRunningError)
    assert [entry.session_id for entry in store.get(record.id).history] == ["only"]
    assert not runner.is_executing(record.id)


@pytest.mark.asyncio
async def test_timer_fired_during_manual_run_is_skipped(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    release = asyncio.Event()
    calls = []

    async def blocking_executor(schedule):
        calls.append(schedule.id)
        await release.wait()
        return ExecutionResult(session_id="manual")

    runner = ScheduleRunner(store=store, executor=blocking_executor)
    await runner.start()
    try:
        manual = asyncio.create_task(runner.run_now(record.id))
        timer = asyncio.create_task(runner._run_schedule_job(record.id))
        await asyncio.wait_for(timer, timeout=5)
        release.set()
        await asyncio.wait_for(manual, timeout=5)
    finally:
        await runner.shutdown()

    assert calls == [record.id]
    history = store.get(record.id).history
    assert [entry.session_id for entry in history] == ["manual", ""]
    assert history[1].error == SKIPPED_OVERLAP_ERROR


@pytest.mark.asyncio
async def test_run_now_unknown_schedule_releases_slot(tmp_path):
    runner = ScheduleRunner(store=ScheduleStore(tmp_path), executor=RecordingExecutor())
    assert await runner.run_now("missing") is None
    assert not runner.is_executing("missing")
    assert await runner.run_now("missing") is None


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_others(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    events = []

    def broken(event):
        raise RuntimeError("listener down")

    runner = ScheduleRunner(store=store, executor=RecordingExecutor(), listeners=[broken, events.append])
    await runner.start()
    try:
        await runner.run_now(record.id)
    finally:
        await runner.shutdown()

    assert len(events) == 1
    runner.remove_listener(broken)
    runner.remove_listener(broken)


@pytest.mark.asyncio
async def test_reschedule_follows_status_changes(tmp_path):
    store = ScheduleStore(tmp_path)
    record = _create(store)
    runner = ScheduleRunner(store=store, executor=RecordingExecutor())
    await runner.start()
    try:
        store.pause(record.id)
        await runner.reschedule(record.id)
        assert runner.next_fire_time(record.id) is None

        resumed = store.resume(record.id)
        await runner.reschedule(record.id)
        assert runner.next_fire_time(record.id) == resumed.next_run_at

        store.delete(record.id)
        await runner.reschedule(record.id)
        assert runner.next_fire_time(record.id) is None
    finally:
        await runner.shutdown()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SCHEDULE_ENGINE_MISSED_RUN_DELAY_SECONDS", "7")
    monkeypatch.setenv("SCHEDULE_ENGINE_MISFIRE_GRACE_SECONDS", "not-a-number")
    assert _get_missed_run_delay_seconds() == 7
    assert _get_misfire_grace_seconds() == 300

    monkeypatch.delenv("SCHEDULE_ENGINE_MISSED_RUN_DELAY_SECONDS")
    assert _get_missed_run_delay_seconds() == 2
