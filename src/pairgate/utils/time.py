"""Time utilities."""

from datetime import datetime, timezone
from typing import Protocol


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    """Source of the current time, injectable for tests."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utc_now()


def format_duration(seconds: float) -> str:
    """Render a duration as a short human string, e.g. '24 hours' or '90 seconds'."""
    seconds = max(0, int(round(seconds)))
    for unit, size in (("hour", 3600), ("minute", 60)):
        if seconds >= size and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}{'' if count == 1 else 's'}"
    if seconds >= 3600:
        hours = seconds / 3600
        return f"{hours:.1f} hours"
    if seconds >= 60:
        return f"{seconds // 60} minutes"
    return f"{seconds} second{'' if seconds == 1 else 's'}"
