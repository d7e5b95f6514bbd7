from __future__ import annotations

from collections.abc import Iterable

from schedule_engine.models import HistoryEntry

MAX_HISTORY_ENTRIES = 10


def append_history(
    history: Iterable[HistoryEntry],
    entry: HistoryEntry,
    *,
    capacity: int = MAX_HISTORY_ENTRIES,
) -> tuple[HistoryEntry, ...]:
    """Most recent first; the oldest entries fall off once ``capacity`` is reached."""
    return (entry, *history)[:capacity]
