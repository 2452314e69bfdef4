"""
Download rate calculation.

RateMeter accumulates received byte counts and, on a fixed interval,
converts them into a bytes-per-second gauge. Reporting is decoupled from the
arrival pattern of individual chunks: a burst of chunks and a steady trickle
over the same window produce the same rate.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from icecast_monitor.metrics.registry import MetricsRegistry

logger = logging.getLogger(__name__)

# Rate window in seconds
RATE_INTERVAL_SEC = 2.0


class RateMeter:
    """
    Fixed-interval download rate calculator.

    The analysis bridge writer calls add() for every chunk (stream thread);
    the meter thread calls tick() every interval. The accumulator is shared
    between those two threads, so it is guarded by a lock.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        interval_sec: float = RATE_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
        shutdown_event: Optional[threading.Event] = None,
    ) -> None:
        self._registry = registry
        self._interval_sec = interval_sec
        self._clock = clock
        self._shutdown_event = shutdown_event or threading.Event()

        self._lock = threading.Lock()
        self._bytes_this_window = 0
        self._last_calc = clock()
        self._thread: Optional[threading.Thread] = None

    @property
    def pending_bytes(self) -> int:
        """Bytes accumulated since the last tick."""
        with self._lock:
            return self._bytes_this_window

    def add(self, nbytes: int) -> None:
        with self._lock:
            self._bytes_this_window += nbytes

    def tick(self) -> Optional[float]:
        """
        Compute the rate for the window that just ended and reset the accumulator.

        Returns:
            The computed rate in bytes/sec, or None if no time has elapsed.
        """
        now = self._clock()
        with self._lock:
            elapsed = now - self._last_calc
            if elapsed <= 0:
                return None
            rate = self._bytes_this_window / elapsed
            self._bytes_this_window = 0
            self._last_calc = now
        self._registry.set_download_rate(rate)
        return rate

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("RateMeter already started")
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name="RateMeter")
        self._thread.start()
        logger.debug(f"RateMeter started (interval={self._interval_sec}s)")

    def stop(self, timeout: float = 1.0) -> None:
        self._shutdown_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("RateMeter thread did not terminate within timeout")
        self._thread = None

    def _run(self) -> None:
        while not self._shutdown_event.wait(self._interval_sec):
            self.tick()
