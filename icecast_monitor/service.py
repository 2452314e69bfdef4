# icecast_monitor/service.py

import logging
import threading
import time
from typing import Any, Dict, Optional

from icecast_monitor.analysis.bridge import AudioAnalysisBridge
from icecast_monitor.config import MonitorConfig
from icecast_monitor.listeners.poller import ListenerPoller
from icecast_monitor.metrics.exposition import MetricsServer
from icecast_monitor.metrics.rate import RateMeter
from icecast_monitor.metrics.registry import MetricsRegistry
from icecast_monitor.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


class MonitorService:
    def __init__(self, config: MonitorConfig):
        """
        Initialize MonitorService.

        Builds the shared MetricsRegistry and every component that reads or
        writes it. Nothing runs until start().

        Args:
            config: Validated MonitorConfig
        """
        self.config = config
        self._shutdown_event = threading.Event()

        self.registry = MetricsRegistry()

        self.rate_meter = RateMeter(self.registry, shutdown_event=self._shutdown_event)

        self.bridge = AudioAnalysisBridge(
            registry=self.registry,
            rate_meter=self.rate_meter,
            ffmpeg_bin=config.ffmpeg_bin,
        )

        self.supervisor = ConnectionSupervisor(
            stream_url=config.stream_url,
            registry=self.registry,
            bridge=self.bridge,
            reconnect_delay_ms=config.reconnect_delay_ms,
            stall_timeout_ms=config.stall_timeout_ms,
            shutdown_event=self._shutdown_event,
        )

        self.metrics_server = MetricsServer(
            self.registry,
            host=config.metrics_host,
            port=config.metrics_port,
        )

        # Listener poller only exists when a status page is configured
        self.listener_poller: Optional[ListenerPoller] = None
        if config.status_url:
            self.listener_poller = ListenerPoller(
                self.registry,
                config.status_url,
                interval_sec=config.listener_poll_interval_sec,
                shutdown_event=self._shutdown_event,
            )

        self.running = False

    def start(self):
        """Start metrics server, rate meter, listener poller and supervisor threads."""
        logger.info("=== Icecast monitor starting ===")

        # Metrics first, so the endpoint answers (icecast_up 0) before the first connect
        self.metrics_server.start()

        self.rate_meter.start()

        if self.listener_poller is not None:
            self.listener_poller.start()

        self.supervisor.start()
        logger.info(f"Monitoring {self.config.stream_url}")

        self.running = True

    def run_forever(self):
        """Block until stop() is called or Ctrl-C."""
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def get_state(self) -> Dict[str, Any]:
        """
        Get current monitor state for logging and diagnostics.

        Returns:
            dict: Connection status, rate, peaks and last failure kind
        """
        state = self.registry.snapshot()
        last_failure = self.supervisor.last_failure
        return {
            "connected": bool(state.connected),
            "download_rate_bytes_per_sec": state.download_rate_bytes_per_sec,
            "peak_left_dbfs": state.peak_left_dbfs,
            "peak_right_dbfs": state.peak_right_dbfs,
            "reconnect_attempts": state.reconnect_attempts,
            "last_failure": last_failure.kind if last_failure is not None else None,
            "listener_mounts": len(state.listeners.mounts) if state.listeners else 0,
        }

    def stop(self):
        """
        Stop the monitor.

        1. Signal shutdown to every loop (shared event)
        2. Stop the supervisor (cancels the live session, joins the decoder)
        3. Stop poller and rate meter
        4. Stop the metrics server last so it answers until the end
        """
        if not self.running:
            return
        logger.info("Shutting down Icecast monitor...")
        self.running = False
        self._shutdown_event.set()

        self.supervisor.stop()

        if self.listener_poller is not None:
            self.listener_poller.stop()

        self.rate_meter.stop()

        self.metrics_server.stop()

        active_threads = [t for t in threading.enumerate() if t != threading.current_thread() and not t.daemon]
        if active_threads:
            logger.warning(f"Non-daemon threads still running after shutdown: {[t.name for t in active_threads]}")

        logger.info("Icecast monitor stopped")
