from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import requests

from errors import DeliveryError

logger = logging.getLogger(__name__)


class LogNotifier:
    """Fallback notifier used when no webhook is configured."""

    def notify_overdue(self, slot_id: int, label: str, minutes_late: int) -> None:
        logger.warning("[OVERDUE] slot %s (%s) is %d min late.", slot_id, label, minutes_late)


class WebhookNotifier:
    """
    Posts overdue alerts to an HTTP endpoint (mail relay, chat hook, ...).

    Any network error, timeout, or non-2xx response is a DeliveryError so the
    evaluator retries on its next tick.
    """

    def __init__(self, url: str, *, timeout_s: float = 5.0, session: requests.Session | None = None) -> None:
        self.url = str(url).strip()
        if not self.url:
            raise ValueError("Webhook URL is required.")
        self.timeout_s = max(0.1, float(timeout_s))
        self._session = session or requests.Session()

    def build_payload(self, slot_id: int, label: str, minutes_late: int) -> dict[str, Any]:
        return {
            "slot_id": int(slot_id),
            "label": str(label),
            "minutes_late": int(minutes_late),
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

    def notify_overdue(self, slot_id: int, label: str, minutes_late: int) -> None:
        payload = self.build_payload(slot_id, label, minutes_late)
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout_s)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise DeliveryError(f"Notifier timed out after {self.timeout_s:.1f}s") from exc
        except requests.RequestException as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc


def build_notifier(settings: Any) -> LogNotifier | WebhookNotifier:
    url = str(getattr(settings, "notify_webhook_url", "") or "").strip()
    if url:
        return WebhookNotifier(url, timeout_s=float(getattr(settings, "notify_timeout_s", 5.0)))
    return LogNotifier()
