from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from errors import InvalidSlotError

logger = logging.getLogger(__name__)

MAX_SLOTS = 4


def parse_time_hhmm(value: Any) -> tuple[int, int] | None:
    text = str(value or "").strip()
    m = re.fullmatch(r"(\d{1,2}):(\d{2})", text)
    if not m:
        return None
    hh = int(m.group(1))
    mm = int(m.group(2))
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        return None
    return (hh, mm)


def minute_of_day(value: Any) -> int | None:
    parsed = parse_time_hhmm(value)
    if parsed is None:
        return None
    return parsed[0] * 60 + parsed[1]


@dataclass
class Slot:
    id: int
    label: str
    target_time: str
    description: str = ""
    raw_present: bool = True
    dose_taken_today: bool = False
    alert_sent_today: bool = False
    last_taken_at: datetime | None = None

    @property
    def target_minute(self) -> int:
        return minute_of_day(self.target_time) or 0

    def target_on(self, moment: datetime) -> datetime:
        hh, mm = parse_time_hhmm(self.target_time) or (0, 0)
        return moment.replace(hour=hh, minute=mm, second=0, microsecond=0)

    def reset_daily_flags(self) -> None:
        self.dose_taken_today = False
        self.alert_sent_today = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "target_time": self.target_time,
            "raw_present": self.raw_present,
            # Legacy sensor encoding: 0 = container in place, 1 = removed.
            "value": 0 if self.raw_present else 1,
            "dose_taken_today": self.dose_taken_today,
            "alert_sent_today": self.alert_sent_today,
            "last_taken_at": self.last_taken_at.isoformat() if self.last_taken_at else None,
        }


DEFAULT_SLOTS: tuple[tuple[int, str, str, str], ...] = (
    (1, "Morning", "08:00", "Blood pressure (30 min after breakfast)"),
    (2, "Lunch", "13:00", "Vitamin D"),
    (3, "Evening", "18:00", "Joint supplement"),
    (4, "Bedtime", "22:00", "Sleep aid"),
)


def default_slots() -> list[Slot]:
    return [
        Slot(id=slot_id, label=label, target_time=target, description=desc)
        for slot_id, label, target, desc in DEFAULT_SLOTS
    ]


def normalize_slot_definition(raw: dict[str, Any]) -> Slot:
    if not isinstance(raw, dict):
        raise ValueError("Slot definition must be an object.")
    try:
        slot_id = int(raw.get("id"))
    except (TypeError, ValueError):
        raise ValueError("Slot id must be an integer.") from None
    if slot_id < 1:
        raise ValueError("Slot id must be a positive integer.")
    target = str(raw.get("target_time") or raw.get("targetTime") or "").strip()
    parsed = parse_time_hhmm(target)
    if parsed is None:
        raise ValueError(f"Slot {slot_id} target time must be HH:MM.")
    label = re.sub(r"\s+", " ", str(raw.get("label") or raw.get("name") or "").strip())
    return Slot(
        id=slot_id,
        label=label or f"Slot {slot_id}",
        target_time=f"{parsed[0]:02d}:{parsed[1]:02d}",
        description=str(raw.get("description", "")).strip(),
    )


def load_slots(path: str | Path | None) -> list[Slot]:
    """
    Slot definitions from a JSON list, e.g.
      [{"id": 1, "label": "Morning", "target_time": "08:00"}, ...]
    Missing or unreadable files give the default four slots.
    """
    if not path:
        return default_slots()
    in_file = Path(path)
    if not in_file.exists():
        logger.warning("Slots file %s not found; using default slots.", in_file)
        return default_slots()
    try:
        data = json.loads(in_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Slots file %s is not valid JSON; using default slots.", in_file)
        return default_slots()
    if not isinstance(data, list):
        return default_slots()
    slots: list[Slot] = []
    for item in data:
        try:
            slots.append(normalize_slot_definition(item))
        except ValueError as exc:
            logger.warning("Skipping slot definition: %s", exc)
            continue
        if len(slots) >= MAX_SLOTS:
            break
    return slots or default_slots()


class SlotRegistry:
    def __init__(self, slots: Iterable[Slot] | None = None) -> None:
        self._slots: dict[int, Slot] = {}
        for slot in slots if slots is not None else default_slots():
            if slot.id in self._slots:
                raise ValueError(f"Duplicate slot id: {slot.id}")
            self._slots[slot.id] = slot
        if not self._slots:
            raise ValueError("At least one slot is required.")

    def __iter__(self) -> Iterator[Slot]:
        return iter(self._slots[k] for k in sorted(self._slots))

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, slot_id: object) -> bool:
        return slot_id in self._slots

    def ids(self) -> list[int]:
        return sorted(self._slots)

    def get(self, slot_id: Any) -> Slot:
        if isinstance(slot_id, bool) or not isinstance(slot_id, int):
            raise InvalidSlotError(slot_id)
        slot = self._slots.get(slot_id)
        if slot is None:
            raise InvalidSlotError(slot_id)
        return slot

    def update_definition(
        self,
        slot_id: int,
        *,
        label: str | None = None,
        description: str | None = None,
        target_time: str | None = None,
    ) -> Slot:
        slot = self.get(slot_id)
        if target_time is not None:
            parsed = parse_time_hhmm(target_time)
            if parsed is None:
                raise ValueError("target_time must be HH:MM.")
            slot.target_time = f"{parsed[0]:02d}:{parsed[1]:02d}"
        if label:
            slot.label = re.sub(r"\s+", " ", str(label).strip()) or slot.label
        if description is not None:
            slot.description = str(description).strip()
        return slot
