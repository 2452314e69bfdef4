"""
Audio analysis bridge.

Turns a stream byte body into peak-level telemetry by piping it through an
ffmpeg process that measures the audio and throws it away. Nothing decoded
is kept or re-emitted.

Per session, three activities run concurrently and are all joined before
run() returns:

- writer (calling thread): network chunks -> session/rate bookkeeping -> ffmpeg stdin
- diagnostic drain thread: ffmpeg stderr -> LineSplitter -> parse_peak_line
- exit-wait thread: waits for the ffmpeg exit status

ffmpeg stdout carries nothing (`-f null -`) and is sent to DEVNULL.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections import deque
from typing import BinaryIO, Iterable, List, Optional

import httpx

from icecast_monitor.analysis.peak_parser import STATS_MARKER, LineSplitter, parse_peak_line
from icecast_monitor.exceptions import (
    DecoderExitError,
    DecoderSpawnError,
    SessionError,
    StallAbortError,
    StreamReadError,
)
from icecast_monitor.metrics.rate import RateMeter
from icecast_monitor.metrics.registry import MetricsRegistry
from icecast_monitor.stream.session import Session
from icecast_monitor.stream.watchdog import StallWatchdog

logger = logging.getLogger(__name__)

# Peak statistics per one-second window, printed as frame metadata on stderr
ASTATS_FILTER = "astats=metadata=1:reset=1,ametadata=mode=print"

STDERR_READ_SIZE = 4096

# How long ffmpeg gets to exit after stdin is closed before it is terminated
DEFAULT_EXIT_GRACE_SEC = 5.0

# Stderr lines kept for the failure message when ffmpeg exits non-zero
STDERR_TAIL_LINES = 20


def build_ffmpeg_cmd(ffmpeg_bin: str = "ffmpeg", format_hint: Optional[str] = None) -> List[str]:
    """
    Build the ffmpeg command line for peak analysis.

    Args:
        ffmpeg_bin: ffmpeg executable
        format_hint: Input container ("ogg", "mp3", "aac") or None to let ffmpeg probe

    Returns:
        Argument list reading stream bytes from stdin and writing null output
    """
    cmd = [ffmpeg_bin, "-hide_banner", "-nostats", "-loglevel", "info"]
    if format_hint:
        cmd += ["-f", format_hint]
    cmd += [
        "-i", "pipe:0",
        "-af", ASTATS_FILTER,
        "-f", "null", "-",
    ]
    return cmd


class AudioAnalysisBridge:
    """
    Owns the decoder subprocess for one session at a time.

    Writer errors (stall abort, network read failure) take precedence over the
    decoder exit status; a non-zero exit status alone is raised as
    DecoderExitError. Either way the subprocess and both helper threads are
    finished before run() returns or raises.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        rate_meter: Optional[RateMeter] = None,
        ffmpeg_bin: str = "ffmpeg",
        ffmpeg_cmd: Optional[List[str]] = None,
        exit_grace_sec: float = DEFAULT_EXIT_GRACE_SEC,
    ) -> None:
        """
        Initialize the bridge.

        Args:
            registry: MetricsRegistry receiving peak levels
            rate_meter: Optional RateMeter fed with received byte counts
            ffmpeg_bin: ffmpeg executable used by build_ffmpeg_cmd()
            ffmpeg_cmd: Optional full command overriding the built one
            exit_grace_sec: Time allowed for ffmpeg to exit once its input is closed
        """
        self._registry = registry
        self._rate_meter = rate_meter
        self._ffmpeg_bin = ffmpeg_bin
        self._ffmpeg_cmd = ffmpeg_cmd
        self._exit_grace_sec = exit_grace_sec
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self.stats_lines = 0

    @property
    def last_stderr(self) -> str:
        """Most recent non-statistics stderr lines of the last decoder process."""
        return "\n".join(self._stderr_tail)

    def command_for(self, format_hint: Optional[str]) -> List[str]:
        if self._ffmpeg_cmd is not None:
            return list(self._ffmpeg_cmd)
        return build_ffmpeg_cmd(self._ffmpeg_bin, format_hint)

    def run(
        self,
        chunks: Iterable[bytes],
        session: Session,
        format_hint: Optional[str] = None,
        watchdog: Optional[StallWatchdog] = None,
    ) -> None:
        """
        Run one analysis session; blocks until the body and the decoder are done.

        Args:
            chunks: Stream body as an iterable of byte chunks
            session: Session bookkeeping and cancellation token
            format_hint: Input container hint for ffmpeg
            watchdog: Stall watchdog to cancel once the writer has finished

        Raises:
            DecoderSpawnError: ffmpeg could not be started
            StallAbortError: Session cancelled by the watchdog or read timed out
            StreamReadError: Network failure while reading the body
            DecoderExitError: ffmpeg exited non-zero
        """
        cmd = self.command_for(format_hint)
        self._stderr_tail.clear()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            raise DecoderSpawnError(f"failed to start {cmd[0]}: {e}") from e

        logger.info(f"Started ffmpeg PID={process.pid}" + (f" (format hint: {format_hint})" if format_hint else ""))

        drain_thread = threading.Thread(
            target=self._diagnostic_drain,
            args=(process.stderr,),
            daemon=True,
            name="FFmpegStderrDrain",
        )
        exit_thread = threading.Thread(
            target=self._wait_exit,
            args=(process,),
            daemon=True,
            name="FFmpegExitWait",
        )
        drain_thread.start()
        exit_thread.start()

        # A writer blocked on a full stdin pipe only wakes once the decoder is gone
        session.on_abort(lambda: self._abort_decoder(process))

        try:
            self._forward(chunks, process.stdin, session)
        finally:
            self._close_stdin(process)
            if watchdog is not None:
                watchdog.cancel()
            self._finish(process, drain_thread, exit_thread)

        if process.returncode != 0:
            raise DecoderExitError(process.returncode, self.last_stderr)

    def _forward(self, chunks: Iterable[bytes], stdin: BinaryIO, session: Session) -> None:
        """Writer: pump network chunks into ffmpeg stdin until the body ends."""
        try:
            for chunk in chunks:
                if session.cancelled:
                    break
                if not chunk:
                    continue
                nbytes = len(chunk)
                session.touch(nbytes)
                if self._rate_meter is not None:
                    self._rate_meter.add(nbytes)
                try:
                    stdin.write(chunk)
                except (BrokenPipeError, OSError, ValueError) as e:
                    # Decoder already gone; its exit status tells the story
                    logger.debug(f"ffmpeg stdin write failed, stop forwarding: {e}")
                    break
        except SessionError:
            raise
        except httpx.TimeoutException as e:
            raise StallAbortError(f"stream read timed out: {e}") from e
        except Exception as e:
            if session.cancelled:
                raise StallAbortError(session.cancel_reason or "session cancelled") from e
            if isinstance(e, (httpx.HTTPError, httpx.StreamError, OSError)):
                raise StreamReadError(f"stream read failed: {e}") from e
            raise

        if session.cancelled:
            raise StallAbortError(session.cancel_reason or "session cancelled")

    def _diagnostic_drain(self, stderr: BinaryIO) -> None:
        """Drain ffmpeg stderr line by line into the peak parser until EOF."""
        splitter = LineSplitter()
        try:
            while True:
                data = stderr.read(STDERR_READ_SIZE)
                if not data:
                    break
                for line in splitter.feed(data):
                    self._handle_line(line)
        except (OSError, ValueError) as e:
            logger.debug(f"Stderr read error (likely closed): {e}")
        finally:
            for line in splitter.flush():
                self._handle_line(line)
        logger.debug("FFmpeg stderr drain thread exiting")

    def _handle_line(self, line: str) -> None:
        if parse_peak_line(line, self._registry):
            self.stats_lines += 1
            return
        if STATS_MARKER in line:
            return
        logger.debug(f"[FFMPEG] {line}")
        self._stderr_tail.append(line)

    def _wait_exit(self, process: subprocess.Popen) -> None:
        returncode = process.wait()
        logger.debug(f"ffmpeg PID={process.pid} exited with code {returncode}")

    def _abort_decoder(self, process: subprocess.Popen) -> None:
        """Terminate the decoder when the session is cancelled mid-write."""
        if process.returncode is not None:
            return
        logger.debug(f"Session cancelled, terminating ffmpeg PID={process.pid}")
        try:
            process.terminate()
        except OSError as e:
            logger.debug(f"ffmpeg terminate failed (likely exited): {e}")

    def _close_stdin(self, process: subprocess.Popen) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.close()
        except Exception:
            pass

    def _finish(
        self,
        process: subprocess.Popen,
        drain_thread: threading.Thread,
        exit_thread: threading.Thread,
    ) -> None:
        """Join drain and exit-wait; terminate ffmpeg if it does not exit on its own."""
        drain_thread.join(timeout=self._exit_grace_sec)
        exit_thread.join(timeout=self._exit_grace_sec)

        if exit_thread.is_alive():
            logger.warning(f"ffmpeg PID={process.pid} did not exit after stdin closed, terminating")
            try:
                process.terminate()
                process.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning(f"ffmpeg PID={process.pid} did not terminate, killing")
                process.kill()
                process.wait()
            exit_thread.join(timeout=1.0)

        # Process is gone, stderr is at EOF
        drain_thread.join(timeout=1.0)
        if drain_thread.is_alive():
            logger.warning("Stderr drain thread did not terminate within timeout")

        if process.stderr is not None:
            try:
                process.stderr.close()
            except Exception:
                pass
