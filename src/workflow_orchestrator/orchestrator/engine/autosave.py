"""Background checkpointing of modified instances."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class AutoSaveRunner:
    """Calls ``sweep`` every ``interval_seconds`` on a daemon thread until stopped."""

    def __init__(self, sweep: Callable[[], int], *, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._sweep = sweep
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="workflow-autosave", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                saved = self._sweep()
            except Exception:
                logger.exception("Auto-save sweep failed")
                continue
            if saved:
                logger.debug("Auto-save sweep persisted instances", extra={"saved": saved})
