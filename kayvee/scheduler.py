"""
Staleness timer for the kayvee shipper.

Forces a flush when nothing has been flushed for ``interval`` seconds, so
entries never sit in a quiet buffer indefinitely.
"""

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class FlushScheduler:
    """
    Background thread that calls ``callback`` once the buffer goes stale.

    Any flush, including one triggered by a full buffer, should call
    ``touch()`` so the timer restarts from that moment. ``touch()`` and
    the ``interval`` setter take no lock; the loop re-reads both every
    time it wakes up.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], None],
        name: str = "kayvee-flush-scheduler",
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self._interval = interval
        self._callback = callback
        self._clock = clock
        self._last_flush = clock()
        self._stopped = False
        self._wake = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float):
        if value <= 0:
            raise ValueError("interval must be positive")
        self._interval = value
        self._wake.set()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self):
        """Start the background thread."""
        self._last_flush = self._clock()
        self._thread.start()
        logger.debug(f"Flush scheduler started (interval={self._interval}s)")

    def touch(self):
        """Record that a flush just happened."""
        self._last_flush = self._clock()

    def stop(self, timeout: float | None = None):
        """Stop the loop and wait for the thread to exit."""
        self._stopped = True
        self._wake.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.debug("Flush scheduler stopped")

    def _run(self):
        while not self._stopped:
            remaining = self._last_flush + self._interval - self._clock()
            if remaining > 0:
                self._wake.wait(remaining)
                self._wake.clear()
                continue

            self._last_flush = self._clock()
            try:
                self._callback()
            except Exception as e:
                logger.exception(f"Scheduled flush failed: {e}")
