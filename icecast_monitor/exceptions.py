"""
Failure taxonomy for the stream supervision pipeline.

Every way a stream session can end badly has its own type. The
ConnectionSupervisor currently handles them all the same way (fixed
reconnect delay), but keeps the distinction so backoff can differ per
failure kind later.
"""


class ConfigError(ValueError):
    """Startup misconfiguration. The only fatal error in the monitor."""


class SessionError(Exception):
    """Base class for anything that ends a stream session."""

    kind = "session"


class StreamOpenError(SessionError):
    """Connection could not be opened (DNS, refused, non-2xx, empty body)."""

    kind = "open"


class StreamReadError(SessionError):
    """Network failure while reading the stream body."""

    kind = "read"


class StallAbortError(SessionError):
    """Watchdog aborted the session because no bytes arrived in time."""

    kind = "stall"


class DecoderSpawnError(SessionError):
    """The decoder subprocess could not be started."""

    kind = "decoder_spawn"


class DecoderExitError(SessionError):
    """The decoder subprocess exited with a non-zero status."""

    kind = "decoder_exit"

    def __init__(self, returncode: int, last_stderr: str = ""):
        self.returncode = returncode
        self.last_stderr = last_stderr
        message = f"ffmpeg exited {returncode}"
        if last_stderr:
            message += f": {last_stderr.strip().splitlines()[-1]}"
        super().__init__(message)
