#!/usr/bin/env python3
"""
Icecast monitor main entry point.

Allows the monitor to be run as a module: python3 -m icecast_monitor <url>
"""

import argparse
import logging
import os
import signal
import sys

from icecast_monitor.config import load_config
from icecast_monitor.exceptions import ConfigError
from icecast_monitor.service import MonitorService

ENV_HELP = (
    "env: ICECAST_URL, METRICS_PORT (default 9101), RECONNECT_DELAY_MS (default 3000), "
    "STALL_TIMEOUT_MS (default 10000), ICECAST_STATUS_URL, "
    "LISTENER_POLL_INTERVAL_MS (default 15000), FFMPEG_BIN, LOG_LEVEL"
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="icecast-monitor",
        description="Monitor an Icecast stream and expose Prometheus metrics.",
        epilog=ENV_HELP,
    )
    parser.add_argument("url", nargs="?", help="stream URL (or set ICECAST_URL)")
    return parser


def _handle_sigterm(signum, frame):
    raise KeyboardInterrupt


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set default log level from environment, or INFO if not set
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    try:
        config = load_config(args.url)
    except ConfigError as e:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {e}", file=sys.stderr)
        print(ENV_HELP, file=sys.stderr)
        return 1

    # LOG_LEVEL may have come from the env file
    logging.getLogger().setLevel(config.log_level.upper())

    signal.signal(signal.SIGTERM, _handle_sigterm)

    monitor = MonitorService(config)
    try:
        monitor.start()
        monitor.run_forever()
    except KeyboardInterrupt:
        logging.info("Monitor shutdown requested")
    except Exception as e:
        logging.error(f"Monitor failed: {e}", exc_info=True)
        monitor.stop()
        return 1
    monitor.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
