from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

HISTORY_CAPACITY = 500


@dataclass(frozen=True)
class ConfirmedEvent:
    slot_id: int
    taken_at: datetime
    returned_at: datetime
    duration_seconds: int
    label: str = ""

    @property
    def day(self) -> date:
        return self.taken_at.date()

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "label": self.label,
            "taken_at": self.taken_at.isoformat(),
            "returned_at": self.returned_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfirmedEvent":
        return cls(
            slot_id=int(data["slot_id"]),
            taken_at=datetime.fromisoformat(str(data["taken_at"])),
            returned_at=datetime.fromisoformat(str(data["returned_at"])),
            duration_seconds=int(data.get("duration_seconds", 0) or 0),
            label=str(data.get("label", "")),
        )


@dataclass
class DailyStat:
    count: int = 0
    times: list[datetime] = field(default_factory=list)

    def copy(self) -> "DailyStat":
        return DailyStat(count=self.count, times=list(self.times))

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "times": [t.isoformat() for t in self.times]}


DailyIndex = dict[date, dict[int, DailyStat]]


class EventLog:
    """
    Capped newest-first history of confirmed doses plus the date-keyed daily index.

    Deleting a single history entry does not decrement the matching DailyStat;
    only reset_all() clears both sides together.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY) -> None:
        self._capacity = max(1, int(capacity))
        self._history: deque[ConfirmedEvent] = deque(maxlen=self._capacity)
        self._daily: DailyIndex = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._history)

    def append(self, event: ConfirmedEvent) -> None:
        # deque(maxlen) drops from the right (oldest) on overflow
        self._history.appendleft(event)

    def daily_stat(self, day: date, slot_id: int) -> DailyStat:
        stat = self._daily.get(day, {}).get(slot_id)
        if stat is None:
            return DailyStat()
        return stat.copy()

    def record_dose(self, event: ConfirmedEvent) -> DailyStat:
        slots = self._daily.setdefault(event.day, {})
        stat = slots.setdefault(event.slot_id, DailyStat())
        stat.count += 1
        stat.times.append(event.taken_at)
        self.append(event)
        return stat.copy()

    def history(self, limit: int | None = None) -> list[ConfirmedEvent]:
        items = list(self._history)
        if limit is None:
            return items
        return items[: max(0, int(limit))]

    def dates(self) -> list[date]:
        return sorted(self._daily)

    def daily_index(self, start: date | None = None, end: date | None = None) -> DailyIndex:
        """Ordered copy of the daily index, optionally limited to [start, end]."""
        out: DailyIndex = {}
        for day in sorted(self._daily):
            if start is not None and day < start:
                continue
            if end is not None and day > end:
                continue
            out[day] = {
                slot_id: stat.copy() for slot_id, stat in sorted(self._daily[day].items())
            }
        return out

    def delete_at(self, index: int) -> ConfirmedEvent:
        if index < 0 or index >= len(self._history):
            raise IndexError(f"History index out of range: {index}")
        event = self._history[index]
        del self._history[index]
        return event

    def reset_all(self) -> None:
        self._history.clear()
        self._daily.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": [e.to_dict() for e in self._history],
            "daily_stats": {
                day.isoformat(): {str(slot_id): stat.to_dict() for slot_id, stat in sorted(slots.items())}
                for day, slots in sorted(self._daily.items())
            },
        }

    def load(self, data: dict[str, Any], *, slot_ids: Iterable[int] | None = None) -> None:
        """Replace contents from a to_dict() payload, skipping malformed rows."""
        known = set(slot_ids) if slot_ids is not None else None
        history: list[ConfirmedEvent] = []
        raw_history = data.get("history")
        if isinstance(raw_history, list):
            for item in raw_history[: self._capacity]:
                if not isinstance(item, dict):
                    continue
                try:
                    event = ConfirmedEvent.from_dict(item)
                except (KeyError, TypeError, ValueError):
                    continue
                if known is not None and event.slot_id not in known:
                    continue
                history.append(event)

        daily: DailyIndex = {}
        raw_daily = data.get("daily_stats")
        if isinstance(raw_daily, dict):
            for raw_day, raw_slots in raw_daily.items():
                try:
                    day = date.fromisoformat(str(raw_day))
                except ValueError:
                    continue
                if not isinstance(raw_slots, dict):
                    continue
                for raw_slot_id, raw_stat in raw_slots.items():
                    try:
                        slot_id = int(raw_slot_id)
                        count = int(raw_stat.get("count", 0) or 0)
                        times = [datetime.fromisoformat(str(t)) for t in raw_stat.get("times") or []]
                    except (AttributeError, TypeError, ValueError):
                        continue
                    if known is not None and slot_id not in known:
                        continue
                    daily.setdefault(day, {})[slot_id] = DailyStat(count=max(0, count), times=times)

        self._history = deque(history, maxlen=self._capacity)
        self._daily = daily
