"""
Connection supervisor for the monitored stream.

Owns the outer reconnect loop: open the stream, hand the session to the
AudioAnalysisBridge, and when the session ends for any reason reset the
session gauges, count the attempt, wait a fixed delay and try again. The loop
never gives up; errors are logged and never escape it.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Optional

import httpx

from icecast_monitor import USER_AGENT
from icecast_monitor.analysis.bridge import AudioAnalysisBridge
from icecast_monitor.exceptions import SessionError, StreamOpenError
from icecast_monitor.metrics.registry import MetricsRegistry
from icecast_monitor.stream.session import Session
from icecast_monitor.stream.watchdog import WATCHDOG_POLL_INTERVAL_SEC, StallWatchdog

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    # No inline ICY metadata: the body must be pure audio for the decoder
    "Icy-MetaData": "0",
    "User-Agent": USER_AGENT,
}

CONNECT_TIMEOUT_SEC = 10.0


def format_hint_for(content_type: str) -> Optional[str]:
    """
    Map a stream content-type to an ffmpeg input format hint.

    Returns:
        "ogg", "mp3", "aac", or None to let ffmpeg probe the input
    """
    ct = content_type.lower()
    if "ogg" in ct or "vorbis" in ct or "opus" in ct:
        return "ogg"
    if "mpeg" in ct or "mp3" in ct:
        return "mp3"
    if "aac" in ct:
        return "aac"
    return None


def _has_no_body(response: httpx.Response) -> bool:
    return response.status_code == 204 or response.headers.get("content-length") == "0"


def _interrupt_read(response: httpx.Response) -> None:
    """
    Wake a reader blocked on the response body from another thread.

    Closing the response does not interrupt a recv() already in progress;
    shutting the socket down does, and the read then ends with EOF or an error.
    """
    stream = response.extensions.get("network_stream")
    sock = stream.get_extra_info("socket") if stream is not None else None
    if sock is None:
        response.close()
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug(f"Stream socket shutdown failed (likely closed): {e}")


class ConnectionSupervisor:
    """
    Reconnect loop around stream sessions.

    Every session end (clean end of stream, watchdog abort, network error,
    decoder failure) is followed by the same recovery: registry reset,
    reconnect counter +1, fixed delay. The kind of the last failure is kept
    in last_failure for diagnostics.
    """

    def __init__(
        self,
        stream_url: str,
        registry: MetricsRegistry,
        bridge: AudioAnalysisBridge,
        reconnect_delay_ms: int = 3000,
        stall_timeout_ms: int = 10000,
        client: Optional[httpx.Client] = None,
        watchdog_poll_interval_sec: float = WATCHDOG_POLL_INTERVAL_SEC,
        shutdown_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            stream_url: Stream URL to monitor
            registry: MetricsRegistry (connected flag, reconnect counter)
            bridge: AudioAnalysisBridge running each session
            reconnect_delay_ms: Fixed delay between sessions
            stall_timeout_ms: Time without bytes before a session is aborted
            client: Optional httpx.Client (default: one owned by the supervisor)
            watchdog_poll_interval_sec: Stall check interval
            shutdown_event: Event to signal loop shutdown
        """
        self.stream_url = stream_url
        self._registry = registry
        self._bridge = bridge
        self._reconnect_delay_sec = reconnect_delay_ms / 1000.0
        self._stall_timeout_ms = stall_timeout_ms
        self._watchdog_poll_interval_sec = watchdog_poll_interval_sec
        self._shutdown_event = shutdown_event or threading.Event()

        self._owns_client = client is None
        if client is None:
            # The read timeout only backs up the watchdog; it must not beat it
            read_timeout = stall_timeout_ms / 1000.0 + 2 * watchdog_poll_interval_sec
            client = httpx.Client(
                timeout=httpx.Timeout(CONNECT_TIMEOUT_SEC, read=read_timeout),
                follow_redirects=True,
            )
        self._client = client

        self._thread: Optional[threading.Thread] = None
        self.session: Optional[Session] = None
        self.last_failure: Optional[SessionError] = None

        # Suppress httpx INFO level logging (one line per reconnect otherwise)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    def run_once(self) -> None:
        """
        Run a single stream session to completion.

        Returns normally when the stream ended cleanly.

        Raises:
            SessionError: Any failure that ended the session
        """
        logger.info(f"connecting to {self.stream_url}")
        try:
            request = self._client.build_request("GET", self.stream_url, headers=STREAM_HEADERS)
            response = self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise StreamOpenError(f"connect failed: {e}") from e

        try:
            if not response.is_success:
                raise StreamOpenError(f"HTTP {response.status_code} {response.reason_phrase}")
            if _has_no_body(response):
                raise StreamOpenError(f"HTTP {response.status_code} with empty body")

            content_type = response.headers.get("content-type", "")
            logger.info(f"connected, content-type: {content_type}")
            self._registry.mark_connected()

            session = Session(self.stream_url, content_type)
            session.on_abort(lambda: _interrupt_read(response))
            self.session = session

            with StallWatchdog(session, self._stall_timeout_ms, self._watchdog_poll_interval_sec) as watchdog:
                self._bridge.run(
                    response.iter_bytes(),
                    session,
                    format_hint=format_hint_for(content_type),
                    watchdog=watchdog,
                )
        finally:
            self.session = None
            response.close()

    def run_forever(self) -> None:
        """Reconnect loop; returns only when the shutdown event is set."""
        while not self._shutdown_event.is_set():
            try:
                self.run_once()
                self.last_failure = None
                logger.info("stream ended")
            except SessionError as e:
                self.last_failure = e
                logger.error(f"stream error ({e.kind}): {e}")
            except Exception as e:
                self.last_failure = SessionError(str(e))
                logger.error(f"Unexpected stream error: {e}", exc_info=True)

            attempts = self._registry.mark_disconnected()
            if self._shutdown_event.is_set():
                break
            logger.info(
                f"reconnecting in {int(self._reconnect_delay_sec * 1000)}ms (attempt #{attempts})..."
            )
            self._shutdown_event.wait(self._reconnect_delay_sec)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("ConnectionSupervisor already started")
            return
        self._thread = threading.Thread(target=self.run_forever, daemon=True, name="ConnectionSupervisor")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop the reconnect loop.

        The in-flight session is cancelled so the bridge unwinds and joins
        its decoder before the thread exits.
        """
        self._shutdown_event.set()
        session = self.session
        if session is not None:
            session.cancel("shutdown")
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("ConnectionSupervisor thread did not terminate within timeout")
        self._thread = None
        if self._owns_client:
            self._client.close()
