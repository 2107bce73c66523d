"""Formatting utilities for CLI output."""

from datetime import datetime, timezone


def format_countdown(seconds: int | float | None) -> str:
    """Format seconds left as m:ss.

    Examples:
        >>> format_countdown(75)
        "1:15"
        >>> format_countdown(-3)
        "0:00"
    """
    if not seconds or seconds < 0:
        seconds = 0
    seconds = int(seconds)
    return f"{seconds // 60}:{seconds % 60:02d}"


_AGO_UNITS = (
    (86400, "day"),
    (3600, "hour"),
    (60, "minute"),
)


def format_time_ago(created_at: str | None) -> str:
    """Format a pass creation time (ISO 8601, 'Z' allowed) as '3 days ago'.

    Timestamps under a minute old, or in the future because of clock
    skew between devices, read as "Just now".
    """
    if not created_at:
        return "Never"

    created = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    seconds = (datetime.now(timezone.utc) - created).total_seconds()

    for size, unit in _AGO_UNITS:
        count = int(seconds // size)
        if count >= 1:
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "Just now"
