"""Parsing of ffmpeg's `-progress` key=value output and stderr log lines."""

import re
from enum import Enum
from typing import Optional

# out_time_ms and out_time_us both carry microseconds despite the name
PROGRESS_REGEX = re.compile(r"^out_time(?:_ms|_us)?=(?P<time>[\d:.]+)\s*$")
_CLOCK_REGEX = re.compile(r"^(?:(?P<h>\d+):)?(?P<m>\d+):(?P<s>\d+(?:\.\d+)?)$")


class LineKind(str, Enum):
    PROGRESS = "PROGRESS"  # out_time=... key/value from -progress
    STATS = "STATS"        # "frame= ... speed=" status line
    BANNER = "BANNER"      # "--- ..." synthetic job banner
    OTHER = "OTHER"


def parse_time_value(value: str) -> Optional[float]:
    """Returns seconds for an integer microsecond count or a hh:mm:ss[.frac] string."""
    value = value.strip()
    if not value:
        return None
    if value.isdigit():
        return int(value) / 1_000_000.0
    match = _CLOCK_REGEX.match(value)
    if not match:
        return None
    hours = int(match.group("h") or 0)
    minutes = int(match.group("m"))
    seconds = float(match.group("s"))
    return hours * 3600 + minutes * 60 + seconds


def parse_progress_seconds(line: str) -> Optional[float]:
    """Elapsed output time in seconds, or None if the line is not a usable progress line."""
    match = PROGRESS_REGEX.match(line.strip())
    if not match:
        return None
    return parse_time_value(match.group("time"))


def compute_percent(elapsed_seconds: float, duration_seconds: float) -> Optional[float]:
    """Raw elapsed/duration percentage. Not clamped: ffmpeg may overshoot the probed duration."""
    if duration_seconds <= 0:
        return None
    return elapsed_seconds / duration_seconds * 100.0


def clamp_percent(percent: float) -> float:
    return max(0.0, min(100.0, percent))


def classify_line(line: str) -> LineKind:
    stripped = line.strip()
    if stripped.startswith("out_time"):
        return LineKind.PROGRESS
    if stripped.startswith("---"):
        return LineKind.BANNER
    if "frame=" in stripped and "speed=" in stripped:
        return LineKind.STATS
    return LineKind.OTHER
