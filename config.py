from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

from debounce import FLICKER_THRESHOLD_MS
from event_log import HISTORY_CAPACITY
from missed_dose import NotificationSettings
from slot_registry import parse_time_hhmm

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    try:
        value = int(str(env.get(name, default)).strip() or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, default: float, minimum: float) -> float:
    try:
        value = float(str(env.get(name, default)).strip() or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


def _env_hhmm(env: Mapping[str, str], name: str) -> str | None:
    parsed = parse_time_hhmm(env.get(name))
    if parsed is None:
        return None
    return f"{parsed[0]:02d}:{parsed[1]:02d}"


@dataclass
class Settings:
    timezone: str = ""
    data_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parent)
    slots_file: str = ""
    flicker_threshold_ms: int = FLICKER_THRESHOLD_MS
    history_capacity: int = HISTORY_CAPACITY
    notifications_enabled: bool = True
    night_start: str | None = None
    night_end: str | None = None
    grace_period_minutes: int = 30
    upcoming_window_minutes: int = 10
    notify_webhook_url: str = ""
    notify_timeout_s: float = 5.0
    boundary_tick_s: float = 30.0
    evaluator_tick_s: float = 60.0
    serial_enabled: bool = False
    serial_port: str = "/dev/ttyUSB0"
    serial_baud: int = 115200
    persist_enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    def notification_settings(self) -> NotificationSettings:
        return NotificationSettings(
            enabled=self.notifications_enabled,
            night_start=self.night_start,
            night_end=self.night_end,
            grace_period_minutes=self.grace_period_minutes,
            upcoming_window_minutes=self.upcoming_window_minutes,
        )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    if env is None:
        load_dotenv()
        env = os.environ
    defaults = Settings()
    data_dir = str(env.get("DISPENSER_DATA_DIR", "")).strip()
    return Settings(
        timezone=str(env.get("DISPENSER_TIMEZONE", "")).strip(),
        data_dir=Path(data_dir) if data_dir else defaults.data_dir,
        slots_file=str(env.get("SLOTS_FILE", "")).strip(),
        flicker_threshold_ms=_env_int(env, "FLICKER_THRESHOLD_MS", FLICKER_THRESHOLD_MS, 0),
        history_capacity=_env_int(env, "HISTORY_CAPACITY", HISTORY_CAPACITY, 1),
        notifications_enabled=_env_flag(env, "NOTIFICATIONS_ENABLED", True),
        night_start=_env_hhmm(env, "NIGHT_MODE_START"),
        night_end=_env_hhmm(env, "NIGHT_MODE_END"),
        grace_period_minutes=_env_int(env, "GRACE_PERIOD_MINUTES", 30, 0),
        upcoming_window_minutes=_env_int(env, "UPCOMING_WINDOW_MINUTES", 10, 0),
        notify_webhook_url=str(env.get("NOTIFY_WEBHOOK_URL", "")).strip(),
        notify_timeout_s=_env_float(env, "NOTIFY_TIMEOUT_S", 5.0, 0.5),
        # Both ticks are capped at one minute.
        boundary_tick_s=min(60.0, _env_float(env, "BOUNDARY_TICK_S", 30.0, 1.0)),
        evaluator_tick_s=min(60.0, _env_float(env, "EVALUATOR_TICK_S", 60.0, 1.0)),
        serial_enabled=_env_flag(env, "SERIAL_ENABLED", False),
        serial_port=str(env.get("SERIAL_PORT", "")).strip() or defaults.serial_port,
        serial_baud=_env_int(env, "SERIAL_BAUD", 115200, 1200),
        persist_enabled=_env_flag(env, "PERSIST_ENABLED", True),
        host=str(env.get("HOST", "")).strip() or defaults.host,
        port=_env_int(env, "PORT", 5000, 1),
        log_level=(str(env.get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"),
    )
