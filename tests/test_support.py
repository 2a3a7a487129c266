from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

from config import load_settings
from errors import DeliveryError
from notifier import LogNotifier, WebhookNotifier, build_notifier
from scheduler import PeriodicTicker
from slot_registry import SlotRegistry, load_slots
from state_store import StateStore


def test_state_store_round_trip(tmp_path) -> None:
    store = StateStore(tmp_path)
    assert store.load_state() == {}

    store.save_state({"last_reset_date": "2024-01-01", "history": []})
    state = store.load_state()
    assert state["last_reset_date"] == "2024-01-01"
    assert "saved_at" in state
    assert not store.state_file.with_suffix(".json.tmp").exists()


def test_state_store_corrupt_file_starts_empty(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.state_file.write_text("{not json", encoding="utf-8")
    assert store.load_state() == {}


def test_state_store_jsonl_logs(tmp_path) -> None:
    store = StateStore(tmp_path)
    store.append_dose_log({"slot_id": 1})
    store.append_alert_log({"slot_id": 2, "minutes_late": 40})
    store.append_alert_log({"slot_id": 3, "minutes_late": 31})

    doses = [json.loads(line) for line in store.dose_log_file.read_text(encoding="utf-8").splitlines()]
    alerts = store.alert_log_file.read_text(encoding="utf-8").splitlines()
    assert doses[0]["slot_id"] == 1
    assert "logged_at" in doses[0]
    assert len(alerts) == 2


def test_load_settings_from_mapping() -> None:
    settings = load_settings(
        {
            "FLICKER_THRESHOLD_MS": "1500",
            "NOTIFICATIONS_ENABLED": "off",
            "NIGHT_MODE_START": "23:00",
            "NIGHT_MODE_END": "6:00",
            "GRACE_PERIOD_MINUTES": "oops",
            "EVALUATOR_TICK_S": "300",
            "SERIAL_ENABLED": "yes",
            "LOG_LEVEL": "debug",
        }
    )
    assert settings.flicker_threshold_ms == 1500
    assert settings.notifications_enabled is False
    assert settings.night_end == "06:00"
    assert settings.grace_period_minutes == 30
    assert settings.evaluator_tick_s == 60.0
    assert settings.serial_enabled is True
    assert settings.log_level == "DEBUG"

    notification = settings.notification_settings()
    assert notification.night_window() == (23 * 60, 6 * 60)


def test_load_settings_defaults() -> None:
    settings = load_settings({})
    assert settings.flicker_threshold_ms == 1000
    assert settings.history_capacity == 500
    assert settings.night_start is None
    assert settings.persist_enabled is True
    assert isinstance(build_notifier(settings), LogNotifier)


class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} Server Error")


class FakeSession:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.posts: list[dict] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return FakeResponse(self.outcome)


def test_webhook_notifier_posts_payload() -> None:
    session = FakeSession(200)
    notifier = WebhookNotifier("http://relay.local/hook", timeout_s=2.0, session=session)
    notifier.notify_overdue(1, "Morning", 31)
    sent = session.posts[0]
    assert sent["timeout"] == 2.0
    assert sent["json"]["slot_id"] == 1
    assert sent["json"]["minutes_late"] == 31


@pytest.mark.parametrize(
    "outcome",
    [requests.Timeout("slow"), requests.ConnectionError("refused"), 502],
)
def test_webhook_failures_become_delivery_errors(outcome) -> None:
    notifier = WebhookNotifier("http://relay.local/hook", session=FakeSession(outcome))
    with pytest.raises(DeliveryError):
        notifier.notify_overdue(2, "Lunch", 45)


def test_webhook_requires_url() -> None:
    with pytest.raises(ValueError):
        WebhookNotifier("  ")


def test_ticker_tick_once_survives_errors() -> None:
    calls: list[int] = []

    def boom() -> None:
        calls.append(1)
        raise RuntimeError("tick failed")

    ticker = PeriodicTicker("test", 1.0, boom)
    ticker.tick_once()
    ticker.tick_once()
    assert calls == [1, 1]
    assert ticker.running is False


def test_load_slots_from_file(tmp_path: Path) -> None:
    path = tmp_path / "slots.json"
    path.write_text(
        json.dumps(
            [
                {"id": 1, "name": "Wake up", "targetTime": "6:45"},
                {"id": 2, "label": "Noon", "target_time": "bad"},
                {"id": 3, "label": "Night", "target_time": "21:30"},
            ]
        ),
        encoding="utf-8",
    )
    slots = load_slots(path)
    assert [(s.id, s.label, s.target_time) for s in slots] == [(1, "Wake up", "06:45"), (3, "Night", "21:30")]


def test_load_slots_falls_back_to_defaults(tmp_path: Path) -> None:
    assert [s.label for s in load_slots(None)] == ["Morning", "Lunch", "Evening", "Bedtime"]
    assert len(load_slots(tmp_path / "missing.json")) == 4
    (tmp_path / "bad.json").write_text("{", encoding="utf-8")
    assert len(load_slots(tmp_path / "bad.json")) == 4


def test_registry_rejects_duplicates_and_bool_ids() -> None:
    slots = load_slots(None)
    with pytest.raises(ValueError):
        SlotRegistry(slots + [slots[0]])
    registry = SlotRegistry(slots)
    assert registry.ids() == [1, 2, 3, 4]
    with pytest.raises(ValueError):
        registry.get(True)
