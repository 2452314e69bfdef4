"""
Contract tests for ConnectionSupervisor.

Covers:
- Content-type to decoder format hint mapping
- Open failures (connect error, non-2xx, empty body) raise StreamOpenError
- A successful session marks the connection up and feeds the decoder
- The reconnect loop never gives up and resets gauges after every session
- stop() cancels the in-flight session
"""

import socket
import threading
import time
from unittest.mock import Mock

import httpx
import pytest

from icecast_monitor.exceptions import DecoderExitError, StallAbortError, StreamOpenError
from icecast_monitor.metrics.exposition import render_metrics
from icecast_monitor.supervisor import ConnectionSupervisor, format_hint_for

STREAM_URL = "http://radio.example:8000/live"
AUDIO = b"\xff\xfb\x90\x64" * 8192


def audio_handler(content_type="audio/mpeg", content=AUDIO, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, headers={"content-type": content_type}, content=content)
    return handler


def refused_handler(request):
    raise httpx.ConnectError("Connection refused", request=request)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def make_supervisor(registry, make_bridge, make_client):
    supervisors = []

    def _make(handler, bridge=None, **kwargs):
        kwargs.setdefault("reconnect_delay_ms", 20)
        kwargs.setdefault("watchdog_poll_interval_sec", 0.05)
        supervisor = ConnectionSupervisor(
            STREAM_URL,
            registry,
            bridge if bridge is not None else make_bridge(),
            client=make_client(handler),
            **kwargs,
        )
        supervisors.append(supervisor)
        return supervisor

    yield _make
    for supervisor in supervisors:
        supervisor.stop()


class TestFormatHint:

    @pytest.mark.parametrize("content_type,expected", [
        ("application/ogg", "ogg"),
        ("audio/ogg", "ogg"),
        ("audio/ogg; codecs=opus", "ogg"),
        ("audio/vorbis", "ogg"),
        ("audio/opus", "ogg"),
        ("audio/mpeg", "mp3"),
        ("audio/MPEG", "mp3"),
        ("audio/mp3", "mp3"),
        ("audio/aac", "aac"),
        ("audio/aacp", "aac"),
        ("audio/flac", None),
        ("", None),
    ])
    def test_mapping(self, content_type, expected):
        assert format_hint_for(content_type) == expected


@pytest.mark.timeout(20)
class TestRunOnce:

    def test_connect_error_is_open_error(self, make_supervisor, registry):
        supervisor = make_supervisor(refused_handler)

        with pytest.raises(StreamOpenError):
            supervisor.run_once()

        assert registry.connected is False

    @pytest.mark.parametrize("status", [404, 500, 503])
    def test_http_error_status_is_open_error(self, make_supervisor, registry, status):
        supervisor = make_supervisor(lambda request: httpx.Response(status))

        with pytest.raises(StreamOpenError) as exc_info:
            supervisor.run_once()

        assert str(status) in str(exc_info.value)
        assert registry.connected is False

    def test_no_content_is_open_error(self, make_supervisor, registry):
        supervisor = make_supervisor(lambda request: httpx.Response(204))

        with pytest.raises(StreamOpenError):
            supervisor.run_once()

        assert registry.connected is False

    def test_empty_body_is_open_error(self, make_supervisor, registry):
        supervisor = make_supervisor(lambda request: httpx.Response(
            200,
            headers={"content-type": "audio/mpeg", "content-length": "0"},
            content=b"",
        ))

        with pytest.raises(StreamOpenError):
            supervisor.run_once()

        assert registry.connected is False

    def test_request_headers(self, make_supervisor):
        seen = []
        bridge = Mock()
        supervisor = make_supervisor(audio_handler(seen=seen), bridge=bridge)

        supervisor.run_once()

        assert seen[0].headers["icy-metadata"] == "0"
        assert seen[0].headers["user-agent"] == "monitor-icecast/1.0"

    def test_format_hint_passed_to_bridge(self, make_supervisor):
        bridge = Mock()
        supervisor = make_supervisor(audio_handler("application/ogg"), bridge=bridge)

        supervisor.run_once()

        bridge.run.assert_called_once()
        assert bridge.run.call_args.kwargs["format_hint"] == "ogg"
        assert supervisor.session is None

    def test_successful_session(self, make_supervisor, registry, thread_leak_guard):
        supervisor = make_supervisor(audio_handler())

        supervisor.run_once()

        assert registry.connected is True
        assert registry.peak_left_dbfs == -3.0
        assert registry.peak_right_dbfs == -6.25

    def test_decoder_failure_propagates(self, make_supervisor, make_bridge, decoder_cmd, registry):
        supervisor = make_supervisor(audio_handler(), bridge=make_bridge(cmd=decoder_cmd(1)))

        with pytest.raises(DecoderExitError):
            supervisor.run_once()

        # Session was established before the decoder failed
        assert registry.connected is True


@pytest.mark.timeout(20)
class TestReconnectLoop:

    def test_unreachable_stream_keeps_retrying(self, make_supervisor, registry):
        supervisor = make_supervisor(refused_handler, reconnect_delay_ms=20)
        seen = []

        supervisor.start()
        assert wait_for(lambda: seen.append(registry.reconnect_attempts) or registry.reconnect_attempts >= 3)
        supervisor.stop()

        assert seen == sorted(seen)
        assert registry.connected is False
        assert supervisor.last_failure is not None
        assert supervisor.last_failure.kind == "open"
        assert "icecast_up 0.0" in render_metrics(registry).decode("utf-8").splitlines()

    def test_failure_resets_gauges_and_counts_once(self, make_supervisor, registry):
        registry.set_peak_left(-1.0)
        registry.set_peak_right(-2.0)
        supervisor = make_supervisor(refused_handler, reconnect_delay_ms=5000)

        supervisor.start()
        assert wait_for(lambda: registry.reconnect_attempts >= 1)

        lines = render_metrics(registry).decode("utf-8").splitlines()
        assert "icecast_up 0.0" in lines
        assert "icecast_audio_peak_left_dbfs NaN" in lines
        assert "icecast_audio_peak_right_dbfs NaN" in lines
        assert "icecast_reconnect_attempts_total 1.0" in lines

        supervisor.stop()
        assert registry.reconnect_attempts == 1

    def test_clean_end_of_stream_also_reconnects(self, make_supervisor, registry):
        supervisor = make_supervisor(audio_handler(), reconnect_delay_ms=5000)

        supervisor.start()
        assert wait_for(lambda: registry.reconnect_attempts >= 1, timeout=10.0)
        supervisor.stop()

        assert registry.connected is False
        assert registry.peak_left_dbfs is None
        assert registry.peak_right_dbfs is None
        assert supervisor.last_failure is None

    def test_unexpected_error_does_not_kill_loop(self, make_supervisor, registry):
        bridge = Mock()
        bridge.run.side_effect = RuntimeError("boom")
        supervisor = make_supervisor(audio_handler(), bridge=bridge, reconnect_delay_ms=10)

        supervisor.start()
        assert wait_for(lambda: registry.reconnect_attempts >= 2)
        supervisor.stop()

        assert bridge.run.call_count >= 2

    def test_stop_cancels_in_flight_session(self, make_supervisor, registry):
        started = threading.Event()

        def blocking_run(chunks, session, format_hint=None, watchdog=None):
            started.set()
            while not session.cancelled:
                time.sleep(0.01)
            raise StallAbortError(session.cancel_reason)

        bridge = Mock()
        bridge.run.side_effect = blocking_run
        supervisor = make_supervisor(audio_handler(), bridge=bridge, stall_timeout_ms=60000)

        supervisor.start()
        assert started.wait(5.0)
        supervisor.stop()

        assert supervisor.last_failure.kind == "stall"
        assert str(supervisor.last_failure) == "shutdown"
        assert registry.reconnect_attempts == 1
        assert registry.connected is False


@pytest.fixture
def silent_stream_server():
    """
    Local HTTP server that sends a response head and 4 KiB of audio, then
    keeps the connection open without sending anything else.
    """
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    done = threading.Event()

    def serve():
        conn, _ = listener.accept()
        with conn:
            request = b""
            while b"\r\n\r\n" not in request:
                data = conn.recv(4096)
                if not data:
                    return
                request += data
            conn.sendall(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: audio/mpeg\r\n"
                b"Connection: close\r\n"
                b"\r\n" + b"\xff\xfb" * 2048
            )
            done.wait(30.0)

    thread = threading.Thread(target=serve, daemon=True, name="SilentStreamServer")
    thread.start()
    yield f"http://127.0.0.1:{listener.getsockname()[1]}/live"
    done.set()
    thread.join(timeout=2.0)
    listener.close()


@pytest.mark.timeout(15)
def test_watchdog_interrupts_blocked_socket_read(silent_stream_server, registry, make_bridge):
    # Read timeout far beyond the stall timeout: only the watchdog can end the session
    client = httpx.Client(timeout=httpx.Timeout(5.0, read=20.0), trust_env=False)
    supervisor = ConnectionSupervisor(
        silent_stream_server,
        registry,
        make_bridge(),
        stall_timeout_ms=500,
        client=client,
        watchdog_poll_interval_sec=0.1,
    )

    started = time.monotonic()
    try:
        with pytest.raises(StallAbortError) as exc_info:
            supervisor.run_once()
    finally:
        client.close()

    assert time.monotonic() - started < 3.0
    assert "no data for 500ms" in str(exc_info.value)
