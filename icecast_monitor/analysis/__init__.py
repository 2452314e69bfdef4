"""
Audio analysis subsystem.

This package turns stream bytes into peak-level telemetry:
- AudioAnalysisBridge: Supervises the ffmpeg process for one session
- parse_peak_line: Applies ffmpeg astats diagnostics to the peak gauges
"""

from icecast_monitor.analysis.peak_parser import LineSplitter, parse_peak_line
from icecast_monitor.analysis.bridge import AudioAnalysisBridge, build_ffmpeg_cmd

__all__ = [
    "AudioAnalysisBridge",
    "LineSplitter",
    "build_ffmpeg_cmd",
    "parse_peak_line",
]
