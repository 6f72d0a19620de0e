from __future__ import annotations

import logging
import threading
from typing import Callable

LOGGER = logging.getLogger(__name__)


class KeepAliveTask:
    """Daemon thread that runs ``tick`` every ``interval_seconds`` until stopped.

    The first tick fires ``initial_delay_seconds`` after ``start()`` (defaults to
    the interval). A failing tick is logged and the schedule continues. A tick
    that is still running when the next one is due causes that next one to be
    skipped, so ticks never overlap.
    """

    def __init__(
        self,
        tick: Callable[[], None],
        interval_seconds: float = 60.0,
        *,
        initial_delay_seconds: float | None = None,
        name: str = "gateway-keepalive",
    ):
        self._tick = tick
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.initial_delay_seconds = (
            self.interval_seconds if initial_delay_seconds is None else max(0.0, float(initial_delay_seconds))
        )
        self.name = name
        self._stop_event = threading.Event()
        self._busy = threading.Lock()
        self._thread: threading.Thread | None = None
        self.ticks_ok = 0
        self.ticks_failed = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        # A thread left over from a stop that timed out keeps its own event, so it still exits.
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop_event,), name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                LOGGER.warning(
                    "%s: thread still busy after %.1fs, it exits once the current tick returns", self.name, timeout
                )
        self._thread = None

    def run_tick(self) -> bool:
        if not self._busy.acquire(blocking=False):
            self.ticks_skipped += 1
            LOGGER.debug("%s: previous tick still running, skipping", self.name)
            return False
        try:
            self._tick()
            self.ticks_ok += 1
            return True
        except Exception as exc:  # noqa: BLE001
            self.ticks_failed += 1
            LOGGER.warning("%s: tick failed: %s", self.name, exc)
            return False
        finally:
            self._busy.release()

    def _run(self, stop_event: threading.Event) -> None:
        if stop_event.wait(self.initial_delay_seconds):
            return
        while not stop_event.is_set():
            self.run_tick()
            if stop_event.wait(self.interval_seconds):
                return
