from __future__ import annotations

import logging
import time
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class SystemClock:
    """
    Wall clock in the dispenser's local timezone plus the process monotonic clock.
    Debounce timing must only ever use `monotonic()`.
    """

    def __init__(self, tz_name: str = "") -> None:
        self._tz: tzinfo | None = None
        tz_name = str(tz_name or "").strip()
        if tz_name:
            try:
                self._tz = ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Unknown timezone %r; using host local time.", tz_name)
                self._tz = None

    def now(self) -> datetime:
        if self._tz is not None:
            return datetime.now(self._tz)
        return datetime.now().astimezone()

    def monotonic(self) -> float:
        return time.monotonic()
