"""Human-readable formatting of sizes, speeds and durations."""

from __future__ import annotations

import math

_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(num_bytes: float) -> str:
    """Format a byte count with a binary unit (e.g. "1.50 MB")."""
    if not num_bytes or num_bytes <= 0 or math.isnan(num_bytes):
        return "0 B"
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(_UNITS) - 1:
        value /= 1024
        exponent += 1
    return f"{value:.2f} {_UNITS[exponent]}"


def format_speed(bytes_per_second: float) -> str:
    """Format a transfer speed (e.g. "2.00 MB/s")."""
    return f"{format_bytes(bytes_per_second)}/s"


def format_duration(seconds: float | None) -> str:
    """Format a duration as "42s", "3m 5s" or "2h 10m".

    None means unknown and renders as "--".
    """
    if seconds is None:
        return "--"
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        return f"{int(minutes)}m {round(secs)}s"
    hours, rest = divmod(seconds, 3600)
    return f"{int(hours)}h {int(rest // 60)}m"


def file_name(path: str) -> str:
    """Return the last component of a local path or object key.

    Handles both Windows and POSIX separators.
    """
    if not path:
        return "unknown"
    normalized = path.replace("\\", "/").rstrip("/")
    return normalized.rsplit("/", 1)[-1] or path
