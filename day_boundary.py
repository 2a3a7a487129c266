from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from slot_registry import Slot

logger = logging.getLogger(__name__)


class DayBoundaryManager:
    """
    Clears every slot's daily flags once per local calendar date.

    `last_reset_date` is persisted by the caller, so a restart on the same day is a
    no-op and a restart after midnight still performs the missed reset.
    """

    def __init__(self, last_reset_date: date | None = None) -> None:
        self._last_reset_date = last_reset_date

    @property
    def last_reset_date(self) -> date | None:
        return self._last_reset_date

    def restore(self, last_reset_date: date | None) -> None:
        self._last_reset_date = last_reset_date

    def tick(self, today: date, slots: Iterable[Slot]) -> bool:
        if self._last_reset_date == today:
            return False
        for slot in slots:
            slot.reset_daily_flags()
        previous = self._last_reset_date
        self._last_reset_date = today
        logger.info(
            "Day rollover %s -> %s: daily slot flags cleared.",
            previous.isoformat() if previous else "unset",
            today.isoformat(),
        )
        return True
