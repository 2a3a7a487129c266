from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateStore:
    """
    File-backed persistence for the dose tracker.

    Files:
      data/state.json               slots, history, daily index, last reset date
      data/logs/dose_log.jsonl      one line per confirmed dose
      data/logs/alert_log.jsonl     one line per delivered overdue alert
    """

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir or Path(__file__).resolve().parent)
        self.data_dir = self.base_dir / "data"
        self.logs_dir = self.data_dir / "logs"
        self.state_file = self.data_dir / "state.json"
        self.dose_log_file = self.logs_dir / "dose_log.jsonl"
        self.alert_log_file = self.logs_dir / "alert_log.jsonl"
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def load_state(self) -> dict[str, Any]:
        if not self.state_file.exists():
            return {}
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("State file %s is corrupt; starting empty.", self.state_file)
            return {}
        except OSError as exc:
            logger.warning("State file %s unreadable (%s); starting empty.", self.state_file, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def save_state(self, state: dict[str, Any]) -> None:
        payload = dict(state)
        payload["saved_at"] = self._now_iso()
        tmp_file = self.state_file.with_suffix(".json.tmp")
        tmp_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_file, self.state_file)

    def append_dose_log(self, entry: dict[str, Any]) -> None:
        self._append_jsonl(self.dose_log_file, entry)

    def append_alert_log(self, entry: dict[str, Any]) -> None:
        self._append_jsonl(self.alert_log_file, entry)

    def _append_jsonl(self, path: Path, entry: dict[str, Any]) -> None:
        record = {"logged_at": self._now_iso(), **entry}
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=True) + "\n")
