from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from event_log import ConfirmedEvent, DailyStat, EventLog


def _event(slot_id: int, taken_at: datetime, away_s: int = 3) -> ConfirmedEvent:
    return ConfirmedEvent(
        slot_id=slot_id,
        taken_at=taken_at,
        returned_at=taken_at + timedelta(seconds=away_s),
        duration_seconds=away_s,
    )


def test_record_dose_updates_daily_stat_and_history_together() -> None:
    log = EventLog()
    first = _event(1, datetime(2024, 1, 1, 8, 2))
    second = _event(1, datetime(2024, 1, 1, 20, 15))
    log.record_dose(first)
    log.record_dose(second)

    stat = log.daily_stat(date(2024, 1, 1), 1)
    assert stat.count == 2
    assert stat.times == [first.taken_at, second.taken_at]
    assert log.history() == [second, first]


def test_daily_stat_placeholder_is_never_none() -> None:
    log = EventLog()
    stat = log.daily_stat(date(2024, 1, 1), 3)
    assert stat == DailyStat(count=0, times=[])
    # Placeholders are not inserted into the index.
    assert log.dates() == []


def test_daily_stat_returns_copy() -> None:
    log = EventLog()
    log.record_dose(_event(1, datetime(2024, 1, 1, 8, 0)))
    stat = log.daily_stat(date(2024, 1, 1), 1)
    stat.count = 99
    assert log.daily_stat(date(2024, 1, 1), 1).count == 1


def test_history_is_capped_newest_first() -> None:
    log = EventLog(capacity=3)
    base = datetime(2024, 1, 1, 8, 0)
    events = [_event(1, base + timedelta(minutes=i)) for i in range(5)]
    for event in events:
        log.append(event)
    assert log.history() == [events[4], events[3], events[2]]
    assert log.history(limit=1) == [events[4]]
    assert len(log) == 3


def test_count_matches_history_per_day_and_slot() -> None:
    log = EventLog()
    base = datetime(2024, 1, 1, 8, 0)
    for offset_h, slot_id in [(0, 1), (1, 2), (24, 1), (25, 1), (26, 2)]:
        log.record_dose(_event(slot_id, base + timedelta(hours=offset_h)))

    for day, slots in log.daily_index().items():
        for slot_id, stat in slots.items():
            matching = [e for e in log.history() if e.day == day and e.slot_id == slot_id]
            assert stat.count == len(matching)


def test_delete_at_leaves_daily_stat_untouched() -> None:
    log = EventLog()
    log.record_dose(_event(1, datetime(2024, 1, 1, 8, 0)))
    log.record_dose(_event(2, datetime(2024, 1, 1, 13, 0)))

    removed = log.delete_at(0)
    assert removed.slot_id == 2
    assert [e.slot_id for e in log.history()] == [1]
    assert log.daily_stat(date(2024, 1, 1), 2).count == 1


def test_delete_at_out_of_range() -> None:
    log = EventLog()
    with pytest.raises(IndexError):
        log.delete_at(0)
    with pytest.raises(IndexError):
        log.delete_at(-1)


def test_reset_all_clears_history_and_index() -> None:
    log = EventLog()
    log.record_dose(_event(1, datetime(2024, 1, 1, 8, 0)))
    log.reset_all()
    assert log.history() == []
    assert log.daily_index() == {}


def test_daily_index_is_sorted_and_filterable() -> None:
    log = EventLog()
    for day in (3, 1, 2):
        log.record_dose(_event(1, datetime(2024, 1, day, 8, 0)))
    assert list(log.daily_index()) == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
    assert list(log.daily_index(start=date(2024, 1, 2))) == [date(2024, 1, 2), date(2024, 1, 3)]
    assert list(log.daily_index(end=date(2024, 1, 1))) == [date(2024, 1, 1)]


def test_to_dict_and_load_restore_contents() -> None:
    log = EventLog()
    log.record_dose(_event(1, datetime(2024, 1, 1, 8, 0)))
    log.record_dose(_event(2, datetime(2024, 1, 2, 13, 0)))
    payload = log.to_dict()
    payload["history"].append({"slot_id": "broken"})
    payload["daily_stats"]["not-a-date"] = {}

    restored = EventLog()
    restored.load(payload, slot_ids=[1, 2])
    assert restored.history() == log.history()
    assert restored.daily_index() == log.daily_index()


def test_load_drops_unknown_slots() -> None:
    log = EventLog()
    log.record_dose(_event(7, datetime(2024, 1, 1, 8, 0)))
    restored = EventLog()
    restored.load(log.to_dict(), slot_ids=[1, 2])
    assert restored.history() == []
    assert restored.daily_index() == {}
