"""
Listener count poller.

Periodically fetches the Icecast JSON status document (status-json.xsl) and
replaces the listener snapshot in the MetricsRegistry. Runs independently of
the stream supervisor; a failing status page never affects stream metrics.
"""

import logging
import re
import threading
import time
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import httpx

from icecast_monitor import USER_AGENT
from icecast_monitor.metrics.registry import ListenerCounts, ListenerSnapshot, MetricsRegistry

logger = logging.getLogger(__name__)

_UNSAFE_LABEL_RE = re.compile(r"[^a-z0-9_]+")


def sanitize_mount(value: str) -> str:
    """
    Turn a listen URL or mount name into a label-safe token.

    URLs contribute their path ("http://host:8000/live.mp3" -> "live_mp3");
    anything else is sanitized as-is. Result is lowercase alnum/underscore.
    """
    raw = value.strip()
    parts = urlsplit(raw)
    if parts.scheme and parts.netloc:
        raw = parts.path
    token = _UNSAFE_LABEL_RE.sub("_", raw.lower()).strip("_")
    return token or "unknown"


def extract_sources(document: Any) -> List[Dict[str, Any]]:
    """
    Extract source entries from an Icecast status document.

    Icecast emits `source` as an object for a single mount, an array for
    several, and omits it when no source is connected.

    Raises:
        ValueError: If the document does not have the icestats shape
    """
    if not isinstance(document, dict) or not isinstance(document.get("icestats"), dict):
        raise ValueError("status document has no icestats object")
    sources = document["icestats"].get("source")
    if sources is None:
        return []
    if isinstance(sources, dict):
        return [sources]
    if isinstance(sources, list):
        return [s for s in sources if isinstance(s, dict)]
    raise ValueError(f"unexpected icestats.source type: {type(sources).__name__}")


def _count(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid listener count: {value!r}")


def build_snapshot(sources: Iterable[Dict[str, Any]], polled_at: Optional[float] = None) -> ListenerSnapshot:
    """Build a fresh ListenerSnapshot from source entries."""
    mounts: Dict[str, ListenerCounts] = {}
    for source in sources:
        name = source.get("listenurl") or source.get("server_name") or ""
        mount = sanitize_mount(str(name))
        counts = ListenerCounts(
            current=_count(source.get("listeners")),
            peak=_count(source.get("listener_peak")),
        )
        previous = mounts.get(mount)
        if previous is not None:
            counts = ListenerCounts(
                current=previous.current + counts.current,
                peak=previous.peak + counts.peak,
            )
        mounts[mount] = counts
    return ListenerSnapshot(mounts=mounts, polled_at=polled_at if polled_at is not None else time.time())


class ListenerPoller:
    """
    Polls the status endpoint on a fixed interval.

    Each successful poll replaces the listener snapshot wholesale; a failed
    poll is logged and leaves the previous snapshot in place.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        status_url: str,
        interval_sec: float = 15.0,
        client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
        shutdown_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the poller.

        Args:
            registry: MetricsRegistry receiving listener snapshots
            status_url: Icecast status-json.xsl URL
            interval_sec: Poll interval
            client: Optional httpx.Client (default: one owned by the poller)
            timeout: HTTP timeout per poll
            shutdown_event: Event to signal loop shutdown
        """
        self._registry = registry
        self.status_url = status_url
        self._interval_sec = interval_sec
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )
        self._shutdown_event = shutdown_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.poll_failures = 0

    def poll_once(self) -> bool:
        """
        Fetch the status document and replace the listener snapshot.

        Returns:
            True if the snapshot was replaced, False if the poll failed
        """
        try:
            response = self._client.get(self.status_url)
            response.raise_for_status()
            sources = extract_sources(response.json())
            snapshot = build_snapshot(sources)
        except httpx.HTTPError as e:
            self.poll_failures += 1
            logger.warning(f"Listener poll failed ({self.status_url}): {e}")
            return False
        except ValueError as e:
            # Includes JSON decode errors
            self.poll_failures += 1
            logger.warning(f"Listener poll returned an invalid status document ({self.status_url}): {e}")
            return False

        self._registry.replace_listeners(snapshot)
        logger.debug(
            f"Listener poll: {len(snapshot.mounts)} mounts, "
            f"{snapshot.combined_current} current / {snapshot.combined_peak} peak"
        )
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("ListenerPoller already started")
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name="ListenerPoller")
        self._thread.start()
        logger.info(f"Listener poller started ({self.status_url}, every {self._interval_sec}s)")

    def stop(self, timeout: float = 2.0) -> None:
        self._shutdown_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("ListenerPoller thread did not terminate within timeout")
        self._thread = None
        if self._owns_client:
            self._client.close()

    def _run(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Unexpected listener poll error: {e}", exc_info=True)
            self._shutdown_event.wait(self._interval_sec)
