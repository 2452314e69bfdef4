"""
Shared metrics state for the monitor.

MetricsRegistry is the single owned state object passed to every component
constructor. Each field has exactly one writer:

- ConnectionSupervisor: connected flag, reconnect counter, session resets
- Peak-level parser (via the analysis bridge): peak gauges
- RateMeter: download rate
- ListenerPoller: listener snapshot

The exposition endpoint only reads. Reads are eventually consistent, which is
fine for a monitoring signal.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Dict, Optional


@dataclass(frozen=True)
class ListenerCounts:
    """Current and peak listener count for one mount."""
    current: int = 0
    peak: int = 0


@dataclass(frozen=True)
class ListenerSnapshot:
    """
    Listener counts keyed by sanitized mount name.

    Built in one piece by the ListenerPoller and swapped in atomically;
    never merged with a previous snapshot.
    """
    mounts: Dict[str, ListenerCounts] = field(default_factory=dict)
    polled_at: float = 0.0

    @property
    def combined_current(self) -> int:
        return sum(c.current for c in self.mounts.values())

    @property
    def combined_peak(self) -> int:
        return sum(c.peak for c in self.mounts.values())


@dataclass
class MetricsSnapshot:
    """
    Point-in-time copy of the monitor gauges.

    Peak values are None until the decoder has reported a level in the
    current session ("no signal observed yet", rendered as NaN).
    """
    connected: int = 0
    download_rate_bytes_per_sec: float = 0.0
    peak_left_dbfs: Optional[float] = None
    peak_right_dbfs: Optional[float] = None
    reconnect_attempts: int = 0
    process_start_time_seconds: float = 0.0
    listeners: Optional[ListenerSnapshot] = None


class MetricsRegistry:
    """Process-wide gauges and counters, written by their owners, read by exposition."""

    def __init__(self, start_time: Optional[float] = None) -> None:
        self._state = MetricsSnapshot(
            process_start_time_seconds=start_time if start_time is not None else time.time()
        )

    # Connection state (ConnectionSupervisor)

    @property
    def connected(self) -> bool:
        return self._state.connected == 1

    def mark_connected(self) -> None:
        self._state.connected = 1

    def mark_disconnected(self) -> int:
        """
        Reset session gauges after a session ended and count the reconnect.

        Connected flag, rate and peaks go back to their "unknown" values; the
        reconnect counter is the only field that survives.

        Returns:
            The new reconnect attempt count.
        """
        self._state.connected = 0
        self._state.download_rate_bytes_per_sec = 0.0
        self._state.peak_left_dbfs = None
        self._state.peak_right_dbfs = None
        self._state.reconnect_attempts += 1
        return self._state.reconnect_attempts

    @property
    def reconnect_attempts(self) -> int:
        return self._state.reconnect_attempts

    # Peak levels (peak-level parser)

    @property
    def peak_left_dbfs(self) -> Optional[float]:
        return self._state.peak_left_dbfs

    @property
    def peak_right_dbfs(self) -> Optional[float]:
        return self._state.peak_right_dbfs

    def set_peak_left(self, value: float) -> None:
        self._state.peak_left_dbfs = value

    def set_peak_right(self, value: float) -> None:
        self._state.peak_right_dbfs = value

    # Download rate (RateMeter)

    @property
    def download_rate_bytes_per_sec(self) -> float:
        return self._state.download_rate_bytes_per_sec

    def set_download_rate(self, bytes_per_sec: float) -> None:
        # A rate computed after the session ended must not resurrect the gauge
        if not self.connected:
            bytes_per_sec = 0.0
        self._state.download_rate_bytes_per_sec = bytes_per_sec

    # Listeners (ListenerPoller)

    @property
    def listeners(self) -> Optional[ListenerSnapshot]:
        return self._state.listeners

    def replace_listeners(self, snapshot: ListenerSnapshot) -> None:
        self._state.listeners = snapshot

    @property
    def process_start_time_seconds(self) -> float:
        return self._state.process_start_time_seconds

    def snapshot(self) -> MetricsSnapshot:
        """Return a copy of the current state for readers."""
        return replace(self._state)
