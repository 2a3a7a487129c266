from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable

from adherence import round_half_up
from errors import InvalidSlotError
from event_log import ConfirmedEvent

logger = logging.getLogger(__name__)

FLICKER_THRESHOLD_MS = 1000


class SlotPhase(str, Enum):
    PRESENT = "PRESENT"
    PENDING_REMOVAL = "PENDING_REMOVAL"


@dataclass(frozen=True)
class PendingRemoval:
    started_at_monotonic: float
    started_at_wall: datetime


class DebounceEngine:
    """
    Per-slot removal/return state machine.

    A dose is confirmed only on the return of the container after an absence of at
    least `threshold_ms` (monotonic time). Shorter absences are flicker and are
    dropped without a trace. A container that never returns is never confirmed.
    """

    def __init__(self, slot_ids: Iterable[int], threshold_ms: int = FLICKER_THRESHOLD_MS) -> None:
        self._threshold_s = max(0, int(threshold_ms)) / 1000.0
        self._pending: dict[int, PendingRemoval | None] = {int(s): None for s in slot_ids}

    @property
    def threshold_ms(self) -> int:
        return int(round(self._threshold_s * 1000))

    def phase(self, slot_id: int) -> SlotPhase:
        if self._lookup(slot_id) is None:
            return SlotPhase.PRESENT
        return SlotPhase.PENDING_REMOVAL

    def pending(self, slot_id: int) -> PendingRemoval | None:
        return self._lookup(slot_id)

    def feed(
        self,
        slot_id: int,
        present: bool,
        wall: datetime,
        monotonic: float,
        *,
        label: str = "",
    ) -> ConfirmedEvent | None:
        pending = self._lookup(slot_id)

        if not present:
            # Only the first absent sample after PRESENT starts the timer.
            if pending is None:
                self._pending[slot_id] = PendingRemoval(
                    started_at_monotonic=monotonic,
                    started_at_wall=wall,
                )
            return None

        if pending is None:
            return None

        self._pending[slot_id] = None
        elapsed = monotonic - pending.started_at_monotonic
        if elapsed < 0:
            logger.warning(
                "Clock anomaly on slot %s: monotonic elapsed %.3fs; treating as noise.",
                slot_id,
                elapsed,
            )
            elapsed = 0.0
        if elapsed < self._threshold_s:
            return None

        return ConfirmedEvent(
            slot_id=slot_id,
            taken_at=pending.started_at_wall,
            returned_at=wall,
            duration_seconds=round_half_up(elapsed),
            label=label,
        )

    def reset(self, slot_id: int | None = None) -> None:
        if slot_id is None:
            for key in self._pending:
                self._pending[key] = None
            return
        self._lookup(slot_id)
        self._pending[slot_id] = None

    def _lookup(self, slot_id: int) -> PendingRemoval | None:
        if isinstance(slot_id, bool) or slot_id not in self._pending:
            raise InvalidSlotError(slot_id)
        return self._pending[slot_id]
