"""Daemon threads that call a function on a fixed interval."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """Run ``tick`` every ``interval_seconds`` until :meth:`stop` is called.

    A failing tick is logged and the loop carries on with the next interval.
    """

    def __init__(self, name: str, interval_seconds: float, tick: Callable[[], object]) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.tick = tick
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
        logger.info(
            "Loop started", extra={"loop": self.name, "interval_seconds": self.interval_seconds}
        )

    def stop(self, *, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Loop stopped", extra={"loop": self.name})

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Loop tick failed", extra={"loop": self.name})
            self._stop.wait(self.interval_seconds)
