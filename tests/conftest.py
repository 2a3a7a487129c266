from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from dose_tracker import DoseTracker
from slot_registry import Slot


class FakeClock:
    """Controllable wall + monotonic clock; both advance together by default."""

    def __init__(self, start: datetime) -> None:
        self.wall = start
        self.mono = 1000.0

    def now(self) -> datetime:
        return self.wall

    def monotonic(self) -> float:
        return self.mono

    def set(self, when: datetime) -> None:
        self.mono += (when - self.wall).total_seconds()
        self.wall = when

    def advance(self, seconds: float) -> None:
        self.wall += timedelta(seconds=seconds)
        self.mono += seconds


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str, int]] = []

    def notify_overdue(self, slot_id: int, label: str, minutes_late: int) -> None:
        self.calls.append((slot_id, label, minutes_late))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 7, 0, 0))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def slots() -> list[Slot]:
    return [
        Slot(id=1, label="Morning", target_time="08:00"),
        Slot(id=2, label="Lunch", target_time="13:00"),
    ]


@pytest.fixture
def tracker(slots, clock, notifier) -> DoseTracker:
    return DoseTracker(slots, clock=clock, notifier=notifier)


@pytest.fixture
def take_dose(tracker, clock):
    def _take(slot_id: int, away_s: float = 2.0) -> dict:
        tracker.report_presence(slot_id, False)
        clock.advance(away_s)
        return tracker.report_presence(slot_id, True)

    return _take
