"""
Stream session subsystem.

This package provides per-connection session state:
- Session: One connection attempt with its cancellation token
- StallWatchdog: Cancels a session when bytes stop arriving
"""

from icecast_monitor.stream.session import Session
from icecast_monitor.stream.watchdog import StallWatchdog

__all__ = [
    "Session",
    "StallWatchdog",
]
