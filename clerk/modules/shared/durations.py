"""
Duration parsing and human-readable time formatting.

Purpose
-------
Pure helpers shared by ranks, direct permissions, lockouts and last-seen
display:

- ``parse_duration("1d12h")`` -> ``timedelta``
- ``expiry_from(now, "1mo")`` -> calendar-aware expiry timestamp
- ``format_remaining(expires)`` -> "Expired" / "3d" / "4h" / "12m"
- ``format_ago(seconds)`` -> "2d 3h ago" / "5m ago" / "just now"
- ``humanize(timedelta)`` -> "5 minutes" / "1 hour"

Grammar
-------
One or more ``<integer><unit>`` segments with units
``s``, ``m``, ``h``, ``d``, ``w``, ``mo``, ``y``. ``mo`` and ``y`` are 30 and
365 days when converted to a plain ``timedelta``; ``expiry_from`` instead
adds calendar months and years.
"""

from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from clerk.modules.shared.timeutil import utc_now

DURATION_PATTERN = re.compile(r"(\d+)(mo|s|m|h|d|w|y)")
_FULL_PATTERN = re.compile(r"(?:\d+(?:mo|s|m|h|d|w|y))+")

_UNIT_DELTAS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "mo": timedelta(days=30),
    "y": timedelta(days=365),
}


def _segments(text: Optional[str]) -> Optional[List[Tuple[int, str]]]:
    if not text:
        return None
    cleaned = text.strip().lower()
    if not _FULL_PATTERN.fullmatch(cleaned):
        return None
    return [(int(amount), unit) for amount, unit in DURATION_PATTERN.findall(cleaned)]


def is_valid_duration(text: Optional[str]) -> bool:
    return _segments(text) is not None


def parse_duration(text: Optional[str]) -> Optional[timedelta]:
    """
    Parse a duration string into a ``timedelta``.

    Returns None for empty or malformed input, and for durations that
    add up to zero.
    """
    segments = _segments(text)
    if segments is None:
        return None
    total = sum((_UNIT_DELTAS[unit] * amount for amount, unit in segments), timedelta())
    return total if total > timedelta() else None


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def expiry_from(start: datetime, text: Optional[str]) -> Optional[datetime]:
    """
    Compute the expiry for a grant starting at ``start``.

    Months and years are calendar arithmetic (Jan 31 + 1mo = Feb 28/29).
    Returns None when the duration is malformed.
    """
    segments = _segments(text)
    if segments is None:
        return None

    result = start
    for amount, unit in segments:
        if unit == "mo":
            result = _add_months(result, amount)
        elif unit == "y":
            result = _add_months(result, amount * 12)
        else:
            result = result + _UNIT_DELTAS[unit] * amount
    return result if result > start else None


def format_remaining(expires: datetime, now: Optional[datetime] = None) -> str:
    """Largest whole unit left before ``expires``: "Expired", "Nd", "Nh" or "Nm"."""
    remaining = expires - (now or utc_now())
    if remaining < timedelta():
        return "Expired"

    seconds = int(remaining.total_seconds())
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60

    if days > 0:
        return f"{days}d"
    if hours > 0:
        return f"{hours}h"
    return f"{minutes}m"


def format_ago(seconds: Optional[float], *, use_ago: bool = True) -> str:
    """
    Render an elapsed number of seconds as "2d 3h ago", "4h 10m ago",
    "5m ago" or "just now". None renders as "Unknown".
    """
    if seconds is None:
        return "Unknown"
    if seconds < 0:
        return "just now"

    minutes = int(seconds) // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        formatted = f"{days}d {hours % 24}h"
    elif hours > 0:
        formatted = f"{hours}h {minutes % 60}m"
    elif minutes > 0:
        formatted = f"{minutes}m"
    else:
        return "just now"

    return f"{formatted} ago" if use_ago else formatted


def format_ago_short(seconds: float) -> str:
    """Single-unit variant used by login history: "3d ago", "2h ago", "7m ago"."""
    minutes = int(max(seconds, 0)) // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d ago"
    if hours > 0:
        return f"{hours}h ago"
    if minutes > 0:
        return f"{minutes}m ago"
    return "just now"


def humanize(delta: timedelta) -> str:
    """Lock-message wording: "5 minutes", "30 minutes", "1 hour", "2 days"."""
    seconds = int(delta.total_seconds())
    for size, name in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= size and seconds % size == 0:
            count = seconds // size
            return f"{count} {name}" + ("" if count == 1 else "s")
    return f"{seconds} second" + ("" if seconds == 1 else "s")
