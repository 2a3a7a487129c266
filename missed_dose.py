from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from adherence import round_half_up
from errors import DeliveryError
from slot_registry import Slot, minute_of_day

logger = logging.getLogger(__name__)


@dataclass
class NotificationSettings:
    enabled: bool = True
    night_start: str | None = None
    night_end: str | None = None
    grace_period_minutes: int = 30
    upcoming_window_minutes: int = 10

    def night_window(self) -> tuple[int, int] | None:
        start = minute_of_day(self.night_start)
        end = minute_of_day(self.night_end)
        if start is None or end is None:
            return None
        return (start, end)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "night_start": self.night_start,
            "night_end": self.night_end,
            "grace_period_minutes": self.grace_period_minutes,
            "upcoming_window_minutes": self.upcoming_window_minutes,
        }


def in_night_window(minute: int, start: int, end: int) -> bool:
    """[start, end) in minutes of day; start > end wraps past midnight."""
    if start <= end:
        return start <= minute < end
    return minute >= start or minute < end


def minutes_late(slot: Slot, now: datetime) -> int:
    # Same-day comparison against today's target; negative before the target.
    delta = now - slot.target_on(now)
    return int(delta.total_seconds() // 60)


@dataclass(frozen=True)
class OverdueCandidate:
    slot_id: int
    label: str
    minutes_late: int
    day: str


class MissedDoseEvaluator:
    """
    Decides which slots are overdue and hands them to the notifier.

    Selection reads slot state and must run under the tracker lock; dispatch talks
    to the notifier and must run outside it.
    """

    def __init__(self, settings: NotificationSettings | None = None, notifier: Any = None) -> None:
        self.settings = settings or NotificationSettings()
        self.notifier = notifier

    def is_suppressed(self, now: datetime) -> bool:
        if not self.settings.enabled:
            return True
        window = self.settings.night_window()
        if window is None:
            return False
        return in_night_window(now.hour * 60 + now.minute, *window)

    def select_candidates(self, slots: Iterable[Slot], now: datetime) -> list[OverdueCandidate]:
        if self.is_suppressed(now):
            return []
        grace = max(0, int(self.settings.grace_period_minutes))
        day = now.date().isoformat()
        out: list[OverdueCandidate] = []
        for slot in slots:
            if slot.dose_taken_today or slot.alert_sent_today:
                continue
            late = minutes_late(slot, now)
            if late > grace:
                out.append(OverdueCandidate(slot_id=slot.id, label=slot.label, minutes_late=late, day=day))
        return out

    def dispatch(self, candidates: Iterable[OverdueCandidate]) -> list[OverdueCandidate]:
        """Notify each candidate independently; returns the ones delivered."""
        delivered: list[OverdueCandidate] = []
        if self.notifier is None:
            return delivered
        for candidate in candidates:
            try:
                self.notifier.notify_overdue(candidate.slot_id, candidate.label, candidate.minutes_late)
            except DeliveryError as exc:
                logger.warning(
                    "Overdue alert for slot %s not delivered (%s); retrying next tick.",
                    candidate.slot_id,
                    exc,
                )
                continue
            except Exception:
                logger.exception("Notifier failed for slot %s; retrying next tick.", candidate.slot_id)
                continue
            logger.info(
                "Overdue alert delivered for slot %s (%s, %d min late).",
                candidate.slot_id,
                candidate.label,
                candidate.minutes_late,
            )
            delivered.append(candidate)
        return delivered

    def notices(self, slots: Iterable[Slot], now: datetime) -> list[dict[str, Any]]:
        """UI-facing late/upcoming notices. Never dispatches, never mutates flags."""
        upcoming_window = max(0, int(self.settings.upcoming_window_minutes))
        out: list[dict[str, Any]] = []
        for slot in slots:
            if slot.dose_taken_today:
                continue
            delta_s = (now - slot.target_on(now)).total_seconds()
            if delta_s > 0:
                late = round_half_up(delta_s / 60)
                if late <= 0:
                    continue
                out.append(
                    {
                        "slot_id": slot.id,
                        "type": "warning",
                        "priority": "high" if late > 60 else "medium",
                        "minutes_late": late,
                        "overdue": late > self.settings.grace_period_minutes,
                        "message": f"{slot.label} dose has not been taken yet ({late} min late).",
                    }
                )
            elif delta_s < 0 and -delta_s < upcoming_window * 60:
                until = round_half_up(-delta_s / 60)
                out.append(
                    {
                        "slot_id": slot.id,
                        "type": "info",
                        "priority": "low",
                        "minutes_until": until,
                        "message": f"{slot.label} dose is due soon.",
                    }
                )
        return out
