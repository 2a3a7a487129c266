from __future__ import annotations


class DispenserError(Exception):
    """Base class for dose tracking errors."""


class InvalidSlotError(DispenserError, ValueError):
    def __init__(self, slot_id: object) -> None:
        super().__init__(f"Unknown slot id: {slot_id!r}")
        self.slot_id = slot_id


class InvalidSampleError(DispenserError, ValueError):
    pass


class DeliveryError(DispenserError, RuntimeError):
    """Notifier could not deliver an alert (unreachable, timeout, rejected)."""
