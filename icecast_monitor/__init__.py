"""
Icecast stream monitor.

Supervises a live audio stream and exposes its health (reachability,
download rate, per-channel peak levels, listener counts) as Prometheus
metrics.
"""

__version__ = "1.0.0"

USER_AGENT = "monitor-icecast/1.0"
