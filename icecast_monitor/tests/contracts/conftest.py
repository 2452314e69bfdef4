"""
Shared pytest fixtures for contract tests.
"""
import sys
import threading

import httpx
import pytest

from icecast_monitor.analysis.bridge import AudioAnalysisBridge
from icecast_monitor.metrics.rate import RateMeter
from icecast_monitor.metrics.registry import MetricsRegistry

# Stand-in for ffmpeg: consumes stdin to EOF, prints astats metadata lines
# (one of them split across two writes) and exits with argv[1].
# argv[2] selects "stereo" (channel 1/2 + overall) or "mono" (overall only).
FAKE_FFMPEG_SCRIPT = r'''
import sys
total = 0
while True:
    chunk = sys.stdin.buffer.read(4096)
    if not chunk:
        break
    total += len(chunk)
err = sys.stderr.buffer
err.write(b"Input #0, mp3, from 'pipe:0':\n")
if sys.argv[2] == "stereo":
    err.write(b"[Parsed_ametadata_1 @ 0x55d0c5a3e140] lavfi.astats.1.Peak_level=-4.50\n")
    err.write(b"[Parsed_ametadata_1 @ 0x55d0c5a3e140] lavfi.astats.2.Peak_l")
    err.flush()
    err.write(b"evel=-6.25\n")
err.write(b"[Parsed_ametadata_1 @ 0x55d0c5a3e140] lavfi.astats.Overall.Peak_level=-3.00\n")
err.write(("received %d bytes\n" % total).encode())
err.flush()
sys.exit(int(sys.argv[1]))
'''

# Exits immediately without reading stdin
EARLY_EXIT_SCRIPT = r'''
import sys
sys.stderr.write("pipe:0: Invalid data found when processing input\n")
sys.exit(1)
'''

# Stays alive without ever reading stdin, so the stdin pipe fills up
WEDGED_DECODER_SCRIPT = r'''
import sys, time
sys.stderr.write("Input #0, mp3, from 'pipe:0':\n")
sys.stderr.flush()
time.sleep(30)
'''

MONITOR_ENV_VARS = [
    "ICECAST_URL",
    "METRICS_HOST",
    "METRICS_PORT",
    "RECONNECT_DELAY_MS",
    "STALL_TIMEOUT_MS",
    "ICECAST_STATUS_URL",
    "LISTENER_POLL_INTERVAL_MS",
    "FFMPEG_BIN",
    "LOG_LEVEL",
]


def fake_ffmpeg_cmd(exit_code=0, channels="stereo"):
    return [sys.executable, "-c", FAKE_FFMPEG_SCRIPT, str(exit_code), channels]


def early_exit_cmd():
    return [sys.executable, "-c", EARLY_EXIT_SCRIPT]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep host environment and env files out of the tests."""
    monkeypatch.setenv("ICECAST_MONITOR_ENV_FILE", str(tmp_path / "missing.env"))
    for name in MONITOR_ENV_VARS:
        # setenv first so teardown restores the variable even if dotenv sets it
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def registry():
    return MetricsRegistry(start_time=1700000000.0)


@pytest.fixture
def rate_meter(registry):
    return RateMeter(registry)


@pytest.fixture
def make_bridge(registry, rate_meter):
    """Factory for bridges running a fake decoder instead of ffmpeg."""
    def _make(cmd=None, exit_grace_sec=5.0):
        return AudioAnalysisBridge(
            registry=registry,
            rate_meter=rate_meter,
            ffmpeg_cmd=cmd if cmd is not None else fake_ffmpeg_cmd(),
            exit_grace_sec=exit_grace_sec,
        )
    return _make


def mock_client(handler):
    """httpx.Client backed by a MockTransport handler."""
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def decoder_cmd():
    """Factory: fake decoder command (exit_code, "stereo"|"mono")."""
    return fake_ffmpeg_cmd


@pytest.fixture
def early_exit_decoder():
    return early_exit_cmd()


@pytest.fixture
def wedged_decoder():
    return [sys.executable, "-c", WEDGED_DECODER_SCRIPT]


@pytest.fixture
def make_client():
    """Factory: httpx.Client answering through a MockTransport handler."""
    clients = []

    def _make(handler):
        client = mock_client(handler)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture(autouse=False)  # Request explicitly in tests that spawn threads
def thread_leak_guard():
    """
    Detect threads left running by a test.

    Session threads (watchdog, stderr drain, exit wait) must all be joined
    when a session ends.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate())
    leaked = after - before
    if leaked:
        leaked_threads = [t for t in threading.enumerate() if t.ident in leaked and t.is_alive()]
        if leaked_threads:
            thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
            assert False, f"Thread leak detected: session cleanup incomplete.\nLeaked threads:\n{thread_info}"
