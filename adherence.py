"""
Adherence metrics over the daily index.

All functions are pure: they take an ordered `{date: {slot_id: DailyStat}}`
mapping and never mutate it. Every function returns 0 / empty on an empty index.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping

from event_log import DailyStat
from slot_registry import Slot

DailyIndexView = Mapping[date, Mapping[int, DailyStat]]

WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves upward: 2.5 -> 3, -2.5 -> -2."""
    if ndigits == 0:
        return int(math.floor(value + 0.5))
    scale = 10 ** ndigits
    return math.floor(value * scale + 0.5) / scale


def _day_taken(slots: Mapping[int, DailyStat]) -> bool:
    return any(stat.count > 0 for stat in slots.values())


def pdc(index: DailyIndexView) -> int:
    """Proportion of days covered, in percent."""
    if not index:
        return 0
    dates = sorted(index)
    span = max(1, (dates[-1] - dates[0]).days) + 1
    success_days = sum(1 for day in dates if _day_taken(index[day]))
    return round_half_up(100 * success_days / span)


def max_streak(index: DailyIndexView) -> int:
    best = 0
    running = 0
    prev: date | None = None
    for day in sorted(index):
        if _day_taken(index[day]):
            if prev is not None and (day - prev).days == 1:
                running += 1
            else:
                running = 1
        else:
            running = 0
        best = max(best, running)
        prev = day
    return best


def max_gap(index: DailyIndexView) -> int:
    dates = sorted(index)
    best = 0
    for earlier, later in zip(dates, dates[1:]):
        best = max(best, (later - earlier).days - 1)
    return best


def time_accuracy(index: DailyIndexView, targets: Mapping[int, int]) -> float:
    """Mean |actual - target| in minutes of day, no wraparound across midnight."""
    deviations: list[int] = []
    for slots in index.values():
        for slot_id, stat in slots.items():
            target = targets.get(slot_id)
            if target is None:
                continue
            for taken in stat.times:
                deviations.append(abs(taken.hour * 60 + taken.minute - target))
    if not deviations:
        return 0.0
    return round_half_up(sum(deviations) / len(deviations), 1)


def weekly_rollup(index: DailyIndexView, today: date) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for offset in range(6, -1, -1):
        day = today - timedelta(days=offset)
        slots = index.get(day, {})
        out.append(
            {
                "date": day.isoformat(),
                "day": WEEKDAY_LABELS[day.weekday()],
                "completed_count": sum(1 for stat in slots.values() if stat.count > 0),
            }
        )
    return out


def adherence_metrics(index: DailyIndexView, targets: Mapping[int, int]) -> dict[str, Any]:
    return {
        "pdc": pdc(index),
        "max_streak": max_streak(index),
        "max_gap": max_gap(index),
        "time_accuracy_minutes": time_accuracy(index, targets),
        "total_days": len(index),
        "total_count": sum(stat.count for slots in index.values() for stat in slots.values()),
    }


def overall_adherence(index: DailyIndexView, slot_ids: Iterable[int]) -> int:
    ids = list(slot_ids)
    expected = len(index) * len(ids)
    if expected <= 0:
        return 0
    taken = sum(
        1
        for slots in index.values()
        for slot_id in ids
        if slot_id in slots and slots[slot_id].count > 0
    )
    return round_half_up(100 * taken / expected)


def _slot_streaks(index: DailyIndexView, slot_id: int) -> tuple[int, int]:
    # Consecutive recorded dates on which this slot was taken.
    best = 0
    current = 0
    for day in sorted(index):
        stat = index[day].get(slot_id)
        if stat is not None and stat.count > 0:
            current += 1
            best = max(best, current)
        else:
            current = 0
    return best, current


def _average_time(times: list[datetime]) -> str | None:
    if not times:
        return None
    mean = round_half_up(sum(t.hour * 60 + t.minute for t in times) / len(times))
    return f"{mean // 60:02d}:{mean % 60:02d}"


def slot_report(index: DailyIndexView, slots: Iterable[Slot]) -> list[dict[str, Any]]:
    total_days = len(index)
    rows: list[dict[str, Any]] = []
    for slot in slots:
        weekly_pattern = [0] * 7
        hourly = [0] * 24
        total_count = 0
        days_taken = 0
        times: list[datetime] = []
        for day, day_slots in index.items():
            stat = day_slots.get(slot.id)
            if stat is None or stat.count <= 0:
                continue
            days_taken += 1
            total_count += stat.count
            weekly_pattern[day.weekday()] += 1
            for taken in stat.times:
                hourly[taken.hour] += 1
                times.append(taken)
        best, current = _slot_streaks(index, slot.id)
        rows.append(
            {
                "slot_id": slot.id,
                "label": slot.label,
                "target_time": slot.target_time,
                "total_count": total_count,
                "days_taken": days_taken,
                "success_rate": round_half_up(100 * days_taken / total_days) if total_days else 0,
                "weekly_pattern": weekly_pattern,
                "hourly_distribution": hourly,
                "max_streak": best,
                "current_streak": current,
                "average_time": _average_time(times),
            }
        )
    return rows


def slot_comparison(report: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    rows = [
        {
            "slot_id": row["slot_id"],
            "label": row["label"],
            "success_rate": row["success_rate"],
            "total_count": row["total_count"],
        }
        for row in report
    ]
    rows.sort(key=lambda r: (-int(r["success_rate"]), int(r["slot_id"])))
    return rows


def next_dose(slots: Iterable[Slot], now: datetime) -> dict[str, Any] | None:
    best: dict[str, Any] | None = None
    best_delta: float | None = None
    for slot in slots:
        if slot.dose_taken_today:
            continue
        delta = (slot.target_on(now) - now).total_seconds()
        if delta <= 0:
            continue
        if best_delta is None or delta < best_delta:
            best_delta = delta
            best = {
                "slot_id": slot.id,
                "label": slot.label,
                "target_time": slot.target_time,
                "minutes_remaining": round_half_up(delta / 60),
            }
    return best
