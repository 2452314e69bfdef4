"""
Prometheus exposition for the monitor.

Serves GET /metrics in the Prometheus text format; every other path is
redirected to /metrics. The registry is rendered through a custom collector
registered on a dedicated CollectorRegistry, so only icecast_* families are
exported.
"""

import logging
import math
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator, Optional
from urllib.parse import urlsplit

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from icecast_monitor.metrics.registry import MetricsRegistry

logger = logging.getLogger(__name__)

METRICS_PATH = "/metrics"


def _peak_value(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return math.nan
    return value


class IcecastCollector:
    """prometheus_client collector reading the MetricsRegistry on every scrape."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self._registry = registry

    def collect(self) -> Iterator[Metric]:
        state = self._registry.snapshot()

        yield GaugeMetricFamily(
            "icecast_up",
            "Connection status (0=down, 1=up)",
            value=state.connected,
        )
        yield GaugeMetricFamily(
            "icecast_download_rate_bytes_per_second",
            "Stream download rate",
            value=state.download_rate_bytes_per_sec,
        )
        yield GaugeMetricFamily(
            "icecast_audio_peak_left_dbfs",
            "Left channel audio peak level in dBFS",
            value=_peak_value(state.peak_left_dbfs),
        )
        yield GaugeMetricFamily(
            "icecast_audio_peak_right_dbfs",
            "Right channel audio peak level in dBFS",
            value=_peak_value(state.peak_right_dbfs),
        )
        # prometheus_client appends the _total suffix to counter samples
        yield CounterMetricFamily(
            "icecast_reconnect_attempts",
            "Total reconnection attempts",
            value=state.reconnect_attempts,
        )
        yield GaugeMetricFamily(
            "icecast_process_start_time_seconds",
            "Start time of the process since unix epoch",
            value=state.process_start_time_seconds,
        )

        listeners = state.listeners
        if listeners is None:
            return

        current = GaugeMetricFamily(
            "icecast_listeners_current",
            "Current listeners per stream",
            labels=["stream"],
        )
        peak = GaugeMetricFamily(
            "icecast_listeners_peak",
            "Peak listeners per stream",
            labels=["stream"],
        )
        for mount in sorted(listeners.mounts):
            counts = listeners.mounts[mount]
            current.add_metric([mount], counts.current)
            peak.add_metric([mount], counts.peak)
        yield current
        yield GaugeMetricFamily(
            "icecast_listeners_combined_current",
            "Current listeners across all streams",
            value=listeners.combined_current,
        )
        yield peak
        yield GaugeMetricFamily(
            "icecast_listeners_combined_peak",
            "Peak listeners across all streams",
            value=listeners.combined_peak,
        )


def build_collector_registry(registry: MetricsRegistry) -> CollectorRegistry:
    collector_registry = CollectorRegistry(auto_describe=False)
    collector_registry.register(IcecastCollector(registry))
    return collector_registry


def render_metrics(registry: MetricsRegistry) -> bytes:
    """Render the registry as Prometheus text exposition."""
    return generate_latest(build_collector_registry(registry))


def make_metrics_handler(collector_registry: CollectorRegistry):
    """Create a MetricsHandler class bound to a collector registry."""

    class MetricsHandler(BaseHTTPRequestHandler):
        """HTTP request handler for the metrics endpoint."""

        def do_GET(self):
            if urlsplit(self.path).path != METRICS_PATH:
                self._redirect()
                return
            try:
                body = generate_latest(collector_registry)
            except Exception as e:
                logger.error(f"Error rendering metrics: {e}", exc_info=True)
                self.send_error(500, "Internal Server Error")
                return
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPE_LATEST)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _redirect(self):
            body = b"see /metrics\n"
            self.send_response(302)
            self.send_header("Location", METRICS_PATH)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            # Scrapes every few seconds would flood the log at INFO
            logger.debug("%s - %s" % (self.address_string(), format % args))

    return MetricsHandler


class MetricsServer:
    """Threaded HTTP server exposing the registry at /metrics."""

    def __init__(self, registry: MetricsRegistry, host: str = "0.0.0.0", port: int = 9101) -> None:
        self.host = host
        self.port = port
        self._collector_registry = build_collector_registry(registry)
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def server_port(self) -> int:
        """Bound port (differs from the configured one when port=0)."""
        if self._httpd is None:
            return self.port
        return self._httpd.server_address[1]

    def start(self) -> None:
        handler = make_metrics_handler(self._collector_registry)
        self._httpd = ThreadingHTTPServer((self.host, self.port), handler)
        self._httpd.daemon_threads = True
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            daemon=True,
            name="MetricsHTTPServer",
        )
        self._thread.start()
        logger.info(f"metrics on :{self.server_port}{METRICS_PATH}")

    def stop(self, timeout: float = 1.0) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Metrics HTTP server thread did not terminate within timeout")
        self._httpd = None
        self._thread = None
