from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from schedule_engine.history import append_history
from schedule_engine.models import (
    STATUSES,
    UPDATABLE_FIELDS,
    HistoryEntry,
    ScheduleRecord,
    SchedulesDocument,
    ScheduleTiming,
    ScheduleValidationError,
)
from schedule_engine.next_run import calculate_next_run
from schedule_engine.serialization import (
    coerce_timing,
    parse_document,
    serialize_document,
    timing_from_dict,
    timing_to_dict,
)
from schedule_engine.util import ensure_utc, now_utc

logger = logging.getLogger(__name__)

SCHEDULES_DIR = "schedules"
SCHEDULES_FILE = "config.json"


def _normalize_timing(value: Any) -> ScheduleTiming:
    return timing_from_dict(timing_to_dict(coerce_timing(value)))


def _normalize_status(value: Any) -> str:
    if value not in STATUSES:
        raise ScheduleValidationError(f"status must be one of {', '.join(STATUSES)}")
    return value


def _normalize_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ScheduleValidationError("name is required")
    return value.strip()


def _normalize_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ScheduleValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    normalized = dict(changes)
    if "name" in normalized:
        normalized["name"] = _normalize_name(normalized["name"])
    if "timing" in normalized:
        normalized["timing"] = _normalize_timing(normalized["timing"])
    if "status" in normalized:
        normalized["status"] = _normalize_status(normalized["status"])
    if "execution" in normalized:
        normalized["execution"] = dict(normalized["execution"] or {})
    if "history" in normalized:
        normalized["history"] = tuple(normalized["history"])
    if normalized.get("retry_delay_minutes") is not None:
        normalized["retry_delay_minutes"] = tuple(normalized["retry_delay_minutes"])
    for key in ("next_run_at", "last_run_at"):
        if normalized.get(key) is not None:
            normalized[key] = ensure_utc(normalized[key]).replace(microsecond=0)
    return normalized


class ScheduleStore:
    """Schedules of one workspace, kept in ``{workspace_root}/schedules/config.json``.

    Every operation loads the document, applies its change and saves it back.
    Nothing here locks: within a process callers must serialize access, and a
    single process is expected to own the document.
    """

    def __init__(self, workspace_root: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._workspace_root = Path(workspace_root)
        self._config_path = self._workspace_root / SCHEDULES_DIR / SCHEDULES_FILE
        self._clock = clock or now_utc

    @property
    def config_path(self) -> Path:
        return self._config_path

    def now(self) -> datetime:
        return ensure_utc(self._clock()).replace(microsecond=0)

    def load(self) -> SchedulesDocument:
        if not self._config_path.exists():
            return SchedulesDocument()

        try:
            text = self._config_path.read_text(encoding="utf-8")
            return parse_document(json.loads(text))
        except (UnicodeDecodeError, json.JSONDecodeError, ScheduleValidationError) as exc:
            logger.warning("Ignoring unreadable schedules config %s: %s", self._config_path, exc)
            return SchedulesDocument()

    def save(self, document: SchedulesDocument) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(serialize_document(document), ensure_ascii=False, indent=2) + "\n"
        tmp_path = self._config_path.with_suffix(".json.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(self._config_path)

    def get(self, schedule_id: str) -> ScheduleRecord | None:
        for record in self.load().schedules:
            if record.id == schedule_id:
                return record
        return None

    def exists(self, schedule_id: str) -> bool:
        return self.get(schedule_id) is not None

    def list_schedules(self) -> list[ScheduleRecord]:
        return sorted(self.load().schedules, key=lambda record: record.created_at, reverse=True)

    def list_active_schedules(self) -> list[ScheduleRecord]:
        return [record for record in self.load().schedules if record.status == "active"]

    def is_name_unique(self, name: str, *, exclude_id: str | None = None) -> bool:
        folded = name.strip().casefold()
        return not any(
            record.name.casefold() == folded and record.id != exclude_id for record in self.load().schedules
        )

    def create(
        self,
        *,
        name: str,
        timing: ScheduleTiming | Mapping[str, Any],
        execution: Mapping[str, Any],
        status: str = "active",
        description: str | None = None,
        icon: str | None = None,
        group: str | None = None,
        session_config: Mapping[str, Any] | None = None,
        open_on_run: bool = False,
        retry_on_failure: bool = False,
        max_retries: int | None = None,
        retry_delay_minutes: tuple[int, ...] | list[int] | None = None,
    ) -> ScheduleRecord:
        normalized_timing = _normalize_timing(timing)
        now = self.now()
        record = ScheduleRecord(
            id=uuid.uuid4().hex,
            name=_normalize_name(name),
            timing=normalized_timing,
            execution=dict(execution),
            status=_normalize_status(status),
            created_at=now,
            updated_at=now,
            description=description,
            icon=icon,
            group=group,
            session_config=dict(session_config) if session_config is not None else None,
            next_run_at=calculate_next_run(normalized_timing, now),
            history=(),
            open_on_run=open_on_run,
            retry_on_failure=retry_on_failure,
            max_retries=max_retries,
            retry_delay_minutes=tuple(retry_delay_minutes) if retry_delay_minutes is not None else None,
            consecutive_failures=0,
        )

        document = self.load()
        document.schedules.append(record)
        self.save(document)
        logger.info("Created schedule %r (%s), next run %s", record.name, record.id, record.next_run_at)
        return record

    def mutate(
        self,
        schedule_id: str,
        fn: Callable[[ScheduleRecord], ScheduleRecord],
    ) -> ScheduleRecord | None:
        document = self.load()
        for index, existing in enumerate(document.schedules):
            if existing.id == schedule_id:
                break
        else:
            logger.debug("Schedule not found: %s", schedule_id)
            return None

        updated = replace(fn(existing), id=existing.id, created_at=existing.created_at, updated_at=self.now())
        document.schedules[index] = updated
        self.save(document)
        return updated

    def update(self, schedule_id: str, **changes: Any) -> ScheduleRecord | None:
        normalized = _normalize_changes(changes)

        def apply(existing: ScheduleRecord) -> ScheduleRecord:
            merged = replace(existing, **normalized)
            if "next_run_at" in normalized:
                return merged
            if "timing" in normalized and merged.timing != existing.timing:
                return replace(merged, next_run_at=calculate_next_run(merged.timing, self.now()))
            if merged.status == "active" and existing.status != "active":
                return replace(merged, next_run_at=calculate_next_run(merged.timing, self.now()))
            return merged

        updated = self.mutate(schedule_id, apply)
        if updated is not None:
            logger.debug("Updated schedule %r (%s)", updated.name, schedule_id)
        return updated

    def delete(self, schedule_id: str) -> bool:
        document = self.load()
        remaining = [record for record in document.schedules if record.id != schedule_id]
        if len(remaining) == len(document.schedules):
            logger.debug("Schedule not found: %s", schedule_id)
            return False
        document.schedules = remaining
        self.save(document)
        logger.info("Deleted schedule %s", schedule_id)
        return True

    def pause(self, schedule_id: str) -> ScheduleRecord | None:
        return self.update(schedule_id, status="paused")

    def resume(self, schedule_id: str) -> ScheduleRecord | None:
        def apply(existing: ScheduleRecord) -> ScheduleRecord:
            return replace(
                existing,
                status="active",
                consecutive_failures=0,
                next_run_at=calculate_next_run(existing.timing, self.now()),
            )

        return self.mutate(schedule_id, apply)

    def set_status(self, schedule_id: str, status: str) -> ScheduleRecord | None:
        return self.update(schedule_id, status=status)

    def update_next_run_at(self, schedule_id: str, next_run_at: datetime | None) -> ScheduleRecord | None:
        return self.update(schedule_id, next_run_at=next_run_at)

    def add_history_entry(self, schedule_id: str, entry: HistoryEntry) -> ScheduleRecord | None:
        def apply(existing: ScheduleRecord) -> ScheduleRecord:
            return replace(
                existing,
                history=append_history(existing.history, entry),
                last_run_at=entry.executed_at,
            )

        return self.mutate(schedule_id, apply)

    def get_missed_schedules(self, now: datetime | None = None) -> list[ScheduleRecord]:
        reference = self.now() if now is None else ensure_utc(now)
        return [
            record
            for record in self.list_active_schedules()
            if record.next_run_at is not None and record.next_run_at <= reference
        ]

    get_due_schedules = get_missed_schedules
