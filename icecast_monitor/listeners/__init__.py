"""
Listener count subsystem.

This package polls the Icecast status page for per-mount listener counts:
- ListenerPoller: Fixed-interval poll loop replacing the listener snapshot
"""

from icecast_monitor.listeners.poller import ListenerPoller, sanitize_mount

__all__ = [
    "ListenerPoller",
    "sanitize_mount",
]
