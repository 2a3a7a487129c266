from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any

import serial

from errors import DispenserError

logger = logging.getLogger(__name__)


def parse_presence_line(text: str) -> tuple[int, bool] | None:
    """
    Parse one line from the dispenser board.

    Accepted forms:
      {"sensorId": 2, "value": 1}     JSON (legacy "a" key for value; no sensorId = slot 1)
      2:1                             compact "<slot>:<value>"

    Raw value 0 means the container sits in its slot (present), 1 means removed.
    Returns None for anything else.
    """
    line = str(text or "").strip()
    if not line:
        return None

    if line.startswith("{") and line.endswith("}"):
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(obj, dict):
            return None
        raw_value = obj.get("value", obj.get("a"))
        raw_slot = obj.get("sensorId", obj.get("slot_id", 1))
        if isinstance(raw_value, float) and not raw_value.is_integer():
            return None
        if isinstance(raw_slot, float) and not raw_slot.is_integer():
            return None
    else:
        m = re.fullmatch(r"(\d+)\s*[:=,]\s*([01])", line)
        if not m:
            return None
        raw_slot, raw_value = m.group(1), m.group(2)

    try:
        slot_id = int(raw_slot)
        value = int(raw_value)
    except (TypeError, ValueError):
        return None
    if isinstance(raw_value, bool) or value not in (0, 1):
        return None
    return slot_id, value == 0


class SerialPresenceBridge:
    """
    Reads presence lines from the dispenser's USB UART and feeds the tracker.
    Malformed lines and rejected samples are logged and skipped.
    """

    def __init__(
        self,
        tracker: Any,
        port: str = "/dev/ttyUSB0",
        baud: int = 115200,
        *,
        timeout_s: float = 1.0,
    ) -> None:
        self.tracker = tracker
        self.port = port
        self.baud = int(baud)
        self.timeout_s = max(0.1, float(timeout_s))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def handle_line(self, raw: bytes | str) -> dict[str, Any] | None:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        text = text.strip()
        if not text:
            return None
        parsed = parse_presence_line(text)
        if parsed is None:
            logger.warning("Ignoring malformed sensor line: %r", text[:80])
            return None
        slot_id, present = parsed
        try:
            return self.tracker.report_presence(slot_id, present)
        except DispenserError as exc:
            logger.warning("Sensor sample rejected: %s", exc)
            return None

    def read_from(self, ser: Any, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            raw = ser.readline()
            if not raw:
                continue
            self.handle_line(raw)

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop_event = stop_event or self._stop
        while not stop_event.is_set():
            try:
                with serial.Serial(self.port, self.baud, timeout=self.timeout_s) as ser:
                    logger.info("Sensor bridge listening on %s @ %d baud.", self.port, self.baud)
                    try:
                        ser.reset_input_buffer()
                    except serial.SerialException as exc:
                        logger.debug("Input buffer reset failed: %s", exc)
                    self.read_from(ser, stop_event)
            except serial.SerialException as exc:
                logger.warning("Serial port %s unavailable (%s); retrying.", self.port, exc)
                stop_event.wait(2.0)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="serial-bridge", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
        self._thread = None
