"""
Helper functions for formatting data into human-readable strings and back.
"""

import re
from datetime import datetime, timezone

DB_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)


def format_size(bytes_size: int) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def parse_duration(value: str | int | float) -> float:
    """
    Parses a duration such as ``90``, ``"90s"``, ``"30m"``, ``"2h"`` or ``"1d"``
    into seconds. A bare number is taken as seconds.
    """
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid duration: '{value}'. Use e.g. 90s, 30m, 2h or 1d.")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[(unit or "s").lower()]


def utcnow() -> datetime:
    """Returns the current UTC time, truncated to whole seconds and without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_db_timestamp(moment: datetime) -> str:
    """Renders a naive UTC datetime the way SQLite's CURRENT_TIMESTAMP does."""
    return moment.strftime(DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)
