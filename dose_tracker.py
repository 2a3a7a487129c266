from __future__ import annotations

import logging
from datetime import date, datetime
from threading import Lock, RLock
from typing import Any, Iterable

import adherence
from clock import SystemClock
from day_boundary import DayBoundaryManager
from debounce import FLICKER_THRESHOLD_MS, DebounceEngine
from errors import InvalidSampleError
from event_log import HISTORY_CAPACITY, ConfirmedEvent, EventLog
from missed_dose import MissedDoseEvaluator, NotificationSettings
from notifier import LogNotifier, build_notifier
from scheduler import PeriodicTicker
from slot_registry import Slot, SlotRegistry, load_slots
from state_store import StateStore

logger = logging.getLogger(__name__)


class DoseTracker:
    """
    Central controller for the multi-slot dispenser.

    Owns the slot registry, debounce engine, event log and day/alert bookkeeping.
    Every mutation runs under one lock; the notifier and state file writes only
    ever run with the lock released.
    """

    def __init__(
        self,
        slots: Iterable[Slot] | None = None,
        *,
        clock: Any = None,
        notifier: Any = None,
        notification_settings: NotificationSettings | None = None,
        flicker_threshold_ms: int = FLICKER_THRESHOLD_MS,
        history_capacity: int = HISTORY_CAPACITY,
        store: StateStore | None = None,
    ) -> None:
        self._lock = RLock()
        self._clock = clock or SystemClock()
        self._registry = SlotRegistry(slots)
        self._debounce = DebounceEngine(self._registry.ids(), threshold_ms=flicker_threshold_ms)
        self._log = EventLog(capacity=history_capacity)
        self._boundary = DayBoundaryManager()
        self._evaluator = MissedDoseEvaluator(
            notification_settings or NotificationSettings(),
            notifier if notifier is not None else LogNotifier(),
        )
        self._store = store
        # File writes happen outside _lock, serialized by _io_lock.
        self._io_lock = Lock()
        self._dirty = False
        self._state_version = 0
        self._written_version = 0
        self._pending_doses: list[dict[str, Any]] = []
        self._pending_alerts: list[dict[str, Any]] = []
        self._tickers: list[PeriodicTicker] = []
        self._started_at = self._clock.now()

        self._restore_state()
        self.tick_day_boundary()

    @classmethod
    def from_settings(cls, settings: Any, *, clock: Any = None, notifier: Any = None) -> "DoseTracker":
        return cls(
            load_slots(settings.slots_file),
            clock=clock or SystemClock(settings.timezone),
            notifier=notifier if notifier is not None else build_notifier(settings),
            notification_settings=settings.notification_settings(),
            flicker_threshold_ms=settings.flicker_threshold_ms,
            history_capacity=settings.history_capacity,
            store=StateStore(settings.data_dir) if settings.persist_enabled else None,
        )

    # Sensor ingestion
    def report_presence(self, slot_id: int, present: bool, at: datetime | None = None) -> dict[str, Any]:
        """
        Feed one raw presence sample. Raises InvalidSlotError / InvalidSampleError
        without touching any state.
        """
        with self._lock:
            slot = self._registry.get(slot_id)
            if not isinstance(present, bool):
                raise InvalidSampleError(f"Presence must be a boolean, got {type(present).__name__}.")
            if at is not None and not isinstance(at, datetime):
                raise InvalidSampleError("Sample timestamp must be a datetime.")

            wall = at or self._clock.now()
            event = self._debounce.feed(slot.id, present, wall, self._clock.monotonic(), label=slot.label)
            slot.raw_present = present
            if event is not None:
                self._confirm_dose(slot, event)
            snapshot = self._slot_snapshot(slot)
        self._flush()
        return snapshot

    # Queries
    def get_slot(self, slot_id: int) -> dict[str, Any]:
        with self._lock:
            return self._slot_snapshot(self._registry.get(slot_id))

    def get_all_slots(self) -> list[dict[str, Any]]:
        with self._lock:
            return [self._slot_snapshot(slot) for slot in self._registry]

    def get_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [event.to_dict() for event in self._log.history(limit)]

    def get_daily_stats(self, start: date | None = None, end: date | None = None) -> dict[str, dict[int, dict[str, Any]]]:
        with self._lock:
            index = self._log.daily_index(start, end)
        return {
            day.isoformat(): {slot_id: stat.to_dict() for slot_id, stat in slots.items()}
            for day, slots in index.items()
        }

    def get_adherence_metrics(self) -> dict[str, Any]:
        index, slots = self._read_view()
        return adherence.adherence_metrics(index, {slot.id: slot.target_minute for slot in slots})

    def get_weekly_rollup(self) -> list[dict[str, Any]]:
        index, _ = self._read_view()
        return adherence.weekly_rollup(index, self._clock.now().date())

    def get_detailed_report(self, history_limit: int = 100) -> dict[str, Any]:
        index, slots = self._read_view()
        report = adherence.slot_report(index, slots)
        return {
            "slot_stats": report,
            "total_days": len(index),
            "history": self.get_history(history_limit),
            "streaks": {
                "max_streaks": {row["slot_id"]: row["max_streak"] for row in report},
                "current_streaks": {row["slot_id"]: row["current_streak"] for row in report},
            },
            "adherence_metrics": {
                "total_days": len(index),
                "overall_adherence": adherence.overall_adherence(index, [s.id for s in slots]),
                "slot_comparison": adherence.slot_comparison(report),
                **adherence.adherence_metrics(index, {s.id: s.target_minute for s in slots}),
            },
        }

    def get_dashboard(self) -> dict[str, Any]:
        now = self._clock.now()
        index, slots = self._read_view()
        with self._lock:
            latest = self._log.history(1)
        today_stats = index.get(now.date(), {})
        return {
            "slots": self.get_all_slots(),
            "today": {
                slot.id: (today_stats[slot.id].to_dict() if slot.id in today_stats else {"count": 0, "times": []})
                for slot in slots
            },
            "weekly": adherence.weekly_rollup(index, now.date()),
            "adherence_rate": adherence.overall_adherence(index, [s.id for s in slots]),
            "next_dose": adherence.next_dose(slots, now),
            "current_time": now.strftime("%H:%M"),
            "last_action": latest[0].to_dict() if latest else None,
        }

    def get_notices(self) -> list[dict[str, Any]]:
        with self._lock:
            now = self._clock.now()
            return self._evaluator.notices(self._registry, now)

    def status(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock.now()
            last_reset = self._boundary.last_reset_date
            return {
                "server": {
                    "status": "running",
                    "started_at": self._started_at.isoformat(),
                    "uptime_seconds": max(0, int((now - self._started_at).total_seconds())),
                    "timestamp": now.isoformat(),
                },
                "storage": {
                    "type": "json_file" if self._store is not None else "memory",
                    "path": str(self._store.state_file) if self._store is not None else None,
                },
                "slots": [self._slot_snapshot(slot) for slot in self._registry],
                "statistics": {
                    "total_records": len(self._log),
                    "history_capacity": self._log.capacity,
                    "days_with_data": len(self._log.dates()),
                },
                "last_reset_date": last_reset.isoformat() if last_reset else None,
                "flicker_threshold_ms": self._debounce.threshold_ms,
                "notifications": self._evaluator.settings.to_dict(),
                "background_ticks": {t.name: t.running for t in self._tickers},
            }

    # Slot definitions
    def update_slot(
        self,
        slot_id: int,
        *,
        label: str | None = None,
        description: str | None = None,
        target_time: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            slot = self._registry.update_definition(
                slot_id, label=label, description=description, target_time=target_time
            )
            self._persist()
            snapshot = self._slot_snapshot(slot)
        self._flush()
        return snapshot

    # Administrative
    def delete_history_entry(self, index: int) -> dict[str, Any]:
        """
        Remove one history row. The daily index is left untouched, so counts for
        that day keep including the deleted dose.
        """
        with self._lock:
            event = self._log.delete_at(index)
            self._persist()
            logger.info("History entry %d deleted (slot %s at %s).", index, event.slot_id, event.taken_at.isoformat())
        self._flush()
        return event.to_dict()

    def reset_all(self) -> None:
        with self._lock:
            for slot in self._registry:
                self._clear_slot(slot)
            self._debounce.reset()
            self._log.reset_all()
            self._persist()
            logger.info("All slot state, history and daily stats reset.")
        self._flush()

    def reset_slot(self, slot_id: int) -> dict[str, Any]:
        with self._lock:
            slot = self._registry.get(slot_id)
            self._clear_slot(slot)
            self._debounce.reset(slot.id)
            self._persist()
            logger.info("Slot %s reset.", slot.id)
            snapshot = self._slot_snapshot(slot)
        self._flush()
        return snapshot

    # Periodic ticks
    def tick_day_boundary(self) -> bool:
        with self._lock:
            changed = self._boundary.tick(self._clock.now().date(), self._registry)
            if changed:
                self._persist()
        self._flush()
        return changed

    def evaluate_missed_doses(self) -> list[int]:
        """
        One evaluator pass. Returns the slot ids whose overdue alert was delivered.
        """
        with self._lock:
            now = self._clock.now()
            self._advance_day(now.date())
            candidates = self._evaluator.select_candidates(self._registry, now)
        self._flush()
        if not candidates:
            return []

        delivered = self._evaluator.dispatch(candidates)
        if not delivered:
            return []

        with self._lock:
            current_day = self._boundary.last_reset_date
            flagged: list[int] = []
            for candidate in delivered:
                if current_day is None or candidate.day != current_day.isoformat():
                    continue
                slot = self._registry.get(candidate.slot_id)
                slot.alert_sent_today = True
                flagged.append(slot.id)
                self._log_alert(candidate.slot_id, candidate.label, candidate.minutes_late)
            self._persist()
        self._flush()
        return flagged

    def start_background(self, boundary_interval_s: float = 30.0, evaluator_interval_s: float = 60.0) -> None:
        with self._lock:
            if self._tickers:
                return
            self._tickers = [
                PeriodicTicker("day-boundary", boundary_interval_s, self.tick_day_boundary),
                PeriodicTicker("missed-dose", evaluator_interval_s, self.evaluate_missed_doses),
            ]
            for ticker in self._tickers:
                ticker.start()

    def stop_background(self) -> None:
        with self._lock:
            tickers = list(self._tickers)
            self._tickers = []
        for ticker in tickers:
            ticker.stop()

    # Internal helpers
    def _confirm_dose(self, slot: Slot, event: ConfirmedEvent) -> None:
        self._advance_day(event.returned_at.date())
        self._log.record_dose(event)
        current_day = self._boundary.last_reset_date
        if current_day is None or event.day >= current_day:
            slot.dose_taken_today = True
            slot.alert_sent_today = False
        slot.last_taken_at = event.taken_at
        logger.info(
            "Dose confirmed: slot %s (%s) taken at %s, away %ds.",
            slot.id,
            slot.label,
            event.taken_at.isoformat(),
            event.duration_seconds,
        )
        if self._store is not None:
            self._pending_doses.append(event.to_dict())
        self._persist()

    def _advance_day(self, today: date) -> bool:
        # Never roll back to an earlier date from a stale sample timestamp.
        last = self._boundary.last_reset_date
        if last is not None and today <= last:
            return False
        changed = self._boundary.tick(today, self._registry)
        if changed:
            self._persist()
        return changed

    def _clear_slot(self, slot: Slot) -> None:
        slot.reset_daily_flags()
        slot.raw_present = True
        slot.last_taken_at = None

    def _log_alert(self, slot_id: int, label: str, minutes_late: int) -> None:
        if self._store is None:
            return
        self._pending_alerts.append({"slot_id": slot_id, "label": label, "minutes_late": minutes_late})

    def _read_view(self) -> tuple[dict, list[Slot]]:
        # Metrics run on a copy so the lock is held only briefly.
        with self._lock:
            index = self._log.daily_index()
            slots = [
                Slot(
                    id=s.id,
                    label=s.label,
                    target_time=s.target_time,
                    description=s.description,
                    raw_present=s.raw_present,
                    dose_taken_today=s.dose_taken_today,
                    alert_sent_today=s.alert_sent_today,
                    last_taken_at=s.last_taken_at,
                )
                for s in self._registry
            ]
        return index, slots

    def _slot_snapshot(self, slot: Slot) -> dict[str, Any]:
        data = slot.snapshot()
        pending = self._debounce.pending(slot.id)
        data["phase"] = self._debounce.phase(slot.id).value
        data["pending_since"] = pending.started_at_wall.isoformat() if pending else None
        return data

    def _state_payload(self) -> dict[str, Any]:
        last_reset = self._boundary.last_reset_date
        return {
            "last_reset_date": last_reset.isoformat() if last_reset else None,
            "slots": [
                {
                    "id": slot.id,
                    "label": slot.label,
                    "description": slot.description,
                    "target_time": slot.target_time,
                    "dose_taken_today": slot.dose_taken_today,
                    "alert_sent_today": slot.alert_sent_today,
                    "last_taken_at": slot.last_taken_at.isoformat() if slot.last_taken_at else None,
                }
                for slot in self._registry
            ],
            **self._log.to_dict(),
        }

    def _persist(self) -> None:
        # Marks state for the next _flush(); callers hold _lock.
        if self._store is not None:
            self._dirty = True

    def _flush(self) -> None:
        """
        Write pending state and log lines. The payload is copied under _lock and
        written after releasing it; an older payload never overwrites a newer one.
        """
        if self._store is None:
            return
        with self._lock:
            if not (self._dirty or self._pending_doses or self._pending_alerts):
                return
            payload = self._state_payload() if self._dirty else None
            self._dirty = False
            self._state_version += 1
            version = self._state_version
            doses, self._pending_doses = self._pending_doses, []
            alerts, self._pending_alerts = self._pending_alerts, []

        with self._io_lock:
            for entry in doses:
                try:
                    self._store.append_dose_log(entry)
                except OSError as exc:
                    logger.warning("Dose log append failed: %s", exc)
            for entry in alerts:
                try:
                    self._store.append_alert_log(entry)
                except OSError as exc:
                    logger.warning("Alert log append failed: %s", exc)
            if payload is None or version <= self._written_version:
                return
            try:
                self._store.save_state(payload)
            except OSError as exc:
                logger.warning("State save failed: %s", exc)
                return
            self._written_version = version

    def _restore_state(self) -> None:
        if self._store is None:
            return
        state = self._store.load_state()
        if not state:
            return

        self._log.load(state, slot_ids=self._registry.ids())

        raw_last_reset = state.get("last_reset_date")
        if raw_last_reset:
            try:
                self._boundary.restore(date.fromisoformat(str(raw_last_reset)))
            except ValueError:
                logger.warning("Ignoring malformed last_reset_date %r.", raw_last_reset)

        raw_slots = state.get("slots")
        if not isinstance(raw_slots, list):
            return
        for item in raw_slots:
            if not isinstance(item, dict):
                continue
            try:
                slot_id = int(item.get("id"))
            except (TypeError, ValueError):
                continue
            if slot_id not in self._registry:
                continue
            slot = self._registry.get(slot_id)
            try:
                self._registry.update_definition(
                    slot_id,
                    label=item.get("label") or None,
                    description=item.get("description"),
                    target_time=item.get("target_time") or None,
                )
            except ValueError:
                logger.warning("Ignoring stored definition for slot %s: bad target time.", slot_id)
            slot.dose_taken_today = bool(item.get("dose_taken_today", False))
            slot.alert_sent_today = bool(item.get("alert_sent_today", False))
            raw_taken = item.get("last_taken_at")
            try:
                slot.last_taken_at = datetime.fromisoformat(str(raw_taken)) if raw_taken else None
            except ValueError:
                slot.last_taken_at = None
        logger.info(
            "Restored state: %d history rows, %d days, last reset %s.",
            len(self._log),
            len(self._log.dates()),
            raw_last_reset or "unset",
        )
