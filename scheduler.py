from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTicker:
    """Calls `fn` every `interval_s` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval_s: float, fn: Callable[[], object]) -> None:
        self.name = name
        self.interval_s = max(0.05, float(interval_s))
        self._fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
        self._thread = None

    def tick_once(self) -> None:
        try:
            self._fn()
        except Exception:
            # A failed tick is retried on the next interval.
            logger.exception("Ticker %s failed; continuing.", self.name)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.tick_once()
            if self._stop.wait(self.interval_s):
                break
