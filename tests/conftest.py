import time
from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> datetime:
        self.current = value
        return self.current


def _apply_tz(monkeypatch, name: str) -> None:
    monkeypatch.setenv("TZ", name)
    time.tzset()


@pytest.fixture(autouse=True)
def utc_host(monkeypatch):
    _apply_tz(monkeypatch, "UTC")
    yield
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
def host_timezone(monkeypatch):
    def _set(name: str) -> None:
        _apply_tz(monkeypatch, name)

    return _set


@pytest.fixture
def clock():
    # Sunday, June 15, 2025, 10:00 UTC
    return FakeClock(datetime(2025, 6, 15, 10, 0, tzinfo=timezone.utc))
