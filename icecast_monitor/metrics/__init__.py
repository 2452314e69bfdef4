"""
Monitor metrics subsystem.

This package provides the shared metrics state and its exposition:
- MetricsRegistry: Gauges/counters shared by all components
- RateMeter: Fixed-interval download rate calculation
- MetricsServer: Prometheus text endpoint at /metrics
"""

from icecast_monitor.metrics.registry import (
    ListenerCounts,
    ListenerSnapshot,
    MetricsRegistry,
    MetricsSnapshot,
)
from icecast_monitor.metrics.rate import RateMeter
from icecast_monitor.metrics.exposition import MetricsServer, render_metrics

__all__ = [
    "ListenerCounts",
    "ListenerSnapshot",
    "MetricsRegistry",
    "MetricsSnapshot",
    "RateMeter",
    "MetricsServer",
    "render_metrics",
]
