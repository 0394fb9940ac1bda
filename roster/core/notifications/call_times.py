# roster/core/notifications/call_times.py
"""
Call-time helpers for call cards and pushes.

Times on call sheets are free text ("7:00 AM", "7am", "07:00", "7:00a").
They are normalised to ``h:mm AM``; anything unparsable is passed
through unchanged so a message still goes out with what the sheet says.
"""
from __future__ import annotations

import re
from datetime import datetime

_TIME = re.compile(
    r"^\s*(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>[ap])?\.?\s*m?\.?\s*$",
    re.IGNORECASE,
)


def parse_call_time(value: str | None) -> tuple[int, int] | None:
    """Return (hour 0-23, minute) or None."""
    if not value:
        return None
    match = _TIME.match(value)
    if not match:
        return None

    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    meridiem = (match.group("meridiem") or "").lower()

    if minute > 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "p" else 0)
    elif hour > 23 or match.group("minute") is None:
        # A bare "7" is ambiguous without AM/PM
        return None
    return hour, minute


def _format(hour: int, minute: int) -> str:
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display}:{minute:02d} {suffix}"


def format_call_time(call_time: str | None, general_crew_call: str | None = None) -> str:
    """
    The member's own call time, falling back to the general crew call.

    >>> format_call_time("", "7am")
    '7:00 AM'
    """
    raw = call_time or general_crew_call or ""
    parsed = parse_call_time(raw)
    if parsed is None:
        return raw
    return _format(*parsed)


def adjust_call_time(time: str, hours: int = 0, minutes: int = 0) -> str:
    """Shift a call time by a push, wrapping past midnight ("11:30 PM" + 1h → "12:30 AM")."""
    if not time or (not hours and not minutes):
        return time
    parsed = parse_call_time(time)
    if parsed is None:
        return time
    total = (parsed[0] * 60 + parsed[1] + hours * 60 + minutes) % (24 * 60)
    return _format(total // 60, total % 60)


def format_full_date(full_date: str | None) -> str:
    """ "03/03/26" → "Tue, Mar 3"; unchanged when it is not MM/dd/yy."""
    if not full_date:
        return ""
    try:
        parsed = datetime.strptime(full_date.strip(), "%m/%d/%y")
    except ValueError:
        return full_date
    return f"{parsed:%a}, {parsed:%b} {parsed.day}"


def describe_push(hours: int, minutes: int) -> str:
    """ "1 hour and 30 minutes", "2 hours", "45 minutes" """
    parts = []
    if hours > 0:
        parts.append(f"{hours} hour{'s' if hours > 1 else ''}")
    if minutes > 0:
        parts.append(f"{minutes} minute{'s' if minutes > 1 else ''}")
    return " and ".join(parts)


