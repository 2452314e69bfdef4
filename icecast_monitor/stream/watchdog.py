"""
Stall watchdog for stream sessions.

Detects a session where the connection stays open but bytes stopped flowing
(upstream frozen without closing the socket) and cancels it so the
supervisor can reconnect.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from icecast_monitor.stream.session import Session

logger = logging.getLogger(__name__)

# How often the watchdog compares the last-chunk time against the timeout
WATCHDOG_POLL_INTERVAL_SEC = 1.0


class StallWatchdog:
    """
    Per-session stall detector.

    Checks every poll interval whether the session has gone longer than the
    stall timeout without a chunk; if so, cancels the session once and exits.
    cancel() must run on every session exit path; use the watchdog as a
    context manager to guarantee it.
    """

    def __init__(
        self,
        session: Session,
        stall_timeout_ms: int,
        poll_interval_sec: float = WATCHDOG_POLL_INTERVAL_SEC,
    ) -> None:
        self._session = session
        self._stall_timeout_ms = stall_timeout_ms
        self._poll_interval_sec = poll_interval_sec
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.fired = False

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name="StallWatchdog")
        self._thread.start()

    def cancel(self) -> None:
        """Stop the watchdog. Idempotent and safe from any thread."""
        self._cancelled.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=self._poll_interval_sec + 1.0)
            if thread.is_alive():
                logger.warning("StallWatchdog thread did not terminate within timeout")

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> "StallWatchdog":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    def check(self) -> bool:
        """
        Compare the time since the last chunk against the stall timeout.

        Returns:
            True if the session was cancelled by this check.
        """
        if self._cancelled.is_set() or self._session.cancelled:
            return False
        elapsed_ms = self._session.seconds_since_last_chunk() * 1000.0
        if elapsed_ms <= self._stall_timeout_ms:
            return False
        logger.error(f"🔥 no data for {self._stall_timeout_ms}ms, aborting ({elapsed_ms:.0f}ms since last chunk)")
        self.fired = True
        self._session.cancel(f"stall: no data for {self._stall_timeout_ms}ms")
        return True

    def _run(self) -> None:
        while not self._cancelled.wait(self._poll_interval_sec):
            if self.check():
                break
