"""
Stream session state.

A Session is one attempt to hold the stream connection open. It carries the
per-session cancellation token: the watchdog cancels it, every layer below
(network read, writer loop, decoder stdin) watches it and releases its own
resource.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class Session:
    """One stream connection attempt. Never reused across reconnects."""

    def __init__(
        self,
        url: str,
        content_type: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.content_type = content_type
        self.started_at = time.time()
        self._clock = clock
        self.last_chunk_at = clock()
        self.bytes_received = 0

        self._cancelled = threading.Event()
        self._cancel_reason: Optional[str] = None
        self._abort_callbacks: List[Callable[[], None]] = []

    def touch(self, nbytes: int) -> None:
        """Record a received chunk."""
        self.last_chunk_at = self._clock()
        self.bytes_received += nbytes

    def seconds_since_last_chunk(self) -> float:
        return self._clock() - self.last_chunk_at

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    def on_abort(self, callback: Callable[[], None]) -> None:
        """Register a callback that releases a resource when the session is cancelled."""
        self._abort_callbacks.append(callback)

    def cancel(self, reason: str) -> None:
        """
        Cancel the session and run abort callbacks.

        Idempotent: only the first call records a reason and runs callbacks.
        Callback errors are logged, never raised, so one failing release
        cannot keep the others from running.
        """
        if self._cancelled.is_set():
            return
        self._cancel_reason = reason
        self._cancelled.set()
        for callback in self._abort_callbacks:
            try:
                callback()
            except Exception as e:
                logger.debug(f"Session abort callback failed: {e}")
