"""
Peak-level parsing of ffmpeg astats diagnostics.

With `-af astats=metadata=1:reset=1,ametadata=mode=print` ffmpeg prints one
block of statistics per one-second window on stderr, e.g.:

    [Parsed_ametadata_1 @ 0x55d0c5a3e140] lavfi.astats.1.Peak_level=-4.502
    [Parsed_ametadata_1 @ 0x55d0c5a3e140] lavfi.astats.2.Peak_level=-5.117
    [Parsed_ametadata_1 @ 0x55d0c5a3e140] lavfi.astats.Overall.Peak_level=-4.502

Only the peak levels are used. Everything else on stderr is ignored.
"""

from __future__ import annotations

import codecs
import math
import re
from typing import List, Optional

from icecast_monitor.metrics.registry import MetricsRegistry

STATS_MARKER = "lavfi.astats."

KEY_LEFT_PEAK = "1.Peak_level"
KEY_RIGHT_PEAK = "2.Peak_level"
KEY_OVERALL_PEAK = "Overall.Peak_level"

# Leading decimal number, same leniency as a "parse the prefix" float reader
_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_LINE_BREAK_RE = re.compile(r"[\r\n]")


def parse_number(text: str) -> Optional[float]:
    """
    Parse the leading real number of `text`.

    Returns None for anything that is not a finite number ("nan", "-inf",
    empty or garbage values), so callers can skip the line.
    """
    match = _NUMBER_RE.match(text.strip())
    if match is None:
        return None
    value = float(match.group(0))
    if not math.isfinite(value):
        return None
    return value


def parse_peak_line(line: str, registry: MetricsRegistry) -> bool:
    """
    Apply one decoder diagnostic line to the peak gauges.

    Channel 1 and Overall peaks update the left gauge, channel 2 updates the
    right gauge. An Overall peak is mirrored into the right gauge while the
    right gauge has never been set, so mono streams report equal L/R levels.

    Returns:
        True if the registry was updated.
    """
    idx = line.find(STATS_MARKER)
    if idx == -1:
        return False
    key, sep, raw_value = line[idx + len(STATS_MARKER):].partition("=")
    if not sep:
        return False
    value = parse_number(raw_value)
    if value is None:
        return False

    key = key.strip()
    updated = False
    if key in (KEY_LEFT_PEAK, KEY_OVERALL_PEAK):
        registry.set_peak_left(value)
        updated = True
    if key == KEY_RIGHT_PEAK:
        registry.set_peak_right(value)
        updated = True
    if key == KEY_OVERALL_PEAK and registry.peak_right_dbfs is None:
        registry.set_peak_right(value)
        updated = True
    return updated


class LineSplitter:
    """
    Incremental line splitter for a chunked byte stream.

    Chunk boundaries never line up with line boundaries, so the unterminated
    tail of each chunk is kept until the next feed(). Both `\\n` and `\\r`
    terminate a line (ffmpeg uses `\\r` for progress updates); empty lines
    are dropped, which also takes care of `\\r\\n` split across chunks.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._partial = ""

    def feed(self, data: bytes) -> List[str]:
        """Add a chunk and return the lines it completed (without terminators)."""
        parts = _LINE_BREAK_RE.split(self._partial + self._decoder.decode(data))
        self._partial = parts.pop()
        return [line for line in parts if line]

    def flush(self) -> List[str]:
        """Return whatever is buffered once the stream has ended."""
        tail = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return [line for line in _LINE_BREAK_RE.split(tail) if line]
