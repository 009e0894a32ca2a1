"""Slot window matcher — pure time-window logic.

Decides whether a point in time falls inside a slot's daily window
("HH:MM–HH:MM", possibly spanning midnight), widened by a tolerance so
that joining a little early or lingering past the end still counts.
The same wraparound logic serves per-owner quiet hours.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, tzinfo

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
DEFAULT_TOLERANCE_MINUTES = 15
DEFAULT_SPAN_MINUTES = 30

_CLOCK = r"(\d{1,2}):(\d{2})"
_RANGE_RE = re.compile(rf"^\s*{_CLOCK}\s*(?:[–—-]\s*{_CLOCK}\s*)?$")


class MalformedSlotWindow(ValueError):
    """Raised when slot or preference time text cannot be parsed."""


def _to_minutes(hour: str, minute: str, raw: str) -> int:
    h, m = int(hour), int(minute)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise MalformedSlotWindow(f"Hour/minute out of range in {raw!r}")
    return h * 60 + m


def parse_clock(text: str) -> int:
    """Parse "HH:MM" into a minute-of-day offset.

    Raises MalformedSlotWindow on malformed input.
    """
    match = re.fullmatch(rf"\s*{_CLOCK}\s*", text or "")
    if match is None:
        raise MalformedSlotWindow(f"Not a HH:MM clock time: {text!r}")
    return _to_minutes(match.group(1), match.group(2), text)


def parse_time_range(text: str) -> tuple[int, int]:
    """Parse a slot time range into (start, end) minute-of-day offsets.

    A single "HH:MM" becomes a 30-minute span. The end may be smaller than
    the start; that means the window runs past midnight.

    Raises MalformedSlotWindow on malformed input.
    """
    match = _RANGE_RE.match(text or "")
    if match is None:
        raise MalformedSlotWindow(f"Unparsable slot window: {text!r}")

    start = _to_minutes(match.group(1), match.group(2), text)
    if match.group(3) is None:
        return start, (start + DEFAULT_SPAN_MINUTES) % MINUTES_PER_DAY
    end = _to_minutes(match.group(3), match.group(4), text)
    return start, end


def format_time_range(text: str) -> str:
    """Normalize a slot time range to "HH:MM–HH:MM"; unparsable text is returned as-is."""
    try:
        start, end = parse_time_range(text)
    except MalformedSlotWindow:
        return text
    return f"{minutes_to_clock(start)}–{minutes_to_clock(end)}"


def minutes_to_clock(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _day_offset(
    minute_of_day: int, start: int, end: int, tolerance_minutes: int,
) -> int | None:
    """Return the day offset of the slot occurrence containing minute_of_day.

    0 means the occurrence that starts on the same calendar day, -1 the one
    that started the previous day (overnight windows, or tolerance reaching
    back across midnight), +1 the one starting the next day. None if no
    occurrence contains the minute.
    """
    if end < start:
        end += MINUTES_PER_DAY
    low = start - tolerance_minutes
    high = end + tolerance_minutes

    for offset in (0, -1, 1):
        # Shift the point into the frame of the occurrence starting `offset` days away
        shifted = minute_of_day - offset * MINUTES_PER_DAY
        if low <= shifted <= high:
            return offset
    return None


def occurrence_date(
    point_in_time: datetime,
    slot_time_range: str,
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
) -> date | None:
    """Return the calendar date of the slot occurrence point_in_time falls in.

    A join at 00:20 for a "23:30–00:30" slot belongs to the previous day's
    occurrence. Returns None when the point is outside every occurrence.

    Raises MalformedSlotWindow on malformed slot text.
    """
    start, end = parse_time_range(slot_time_range)
    minute_of_day = point_in_time.hour * 60 + point_in_time.minute
    offset = _day_offset(minute_of_day, start, end, tolerance_minutes)
    if offset is None:
        return None
    return point_in_time.date() + timedelta(days=offset)


def occurrence_end(
    on_date: date,
    slot_time_range: str,
    tz: tzinfo,
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
) -> datetime:
    """Return the last moment the on_date occurrence accepts a join.

    For "23:30–00:30" on March 1 that is 00:45 on March 2 with the default
    tolerance.

    Raises MalformedSlotWindow on malformed slot text.
    """
    start, end = parse_time_range(slot_time_range)
    if end < start:
        end += MINUTES_PER_DAY
    midnight = datetime.combine(on_date, time(0, 0), tzinfo=tz)
    return midnight + timedelta(minutes=end + tolerance_minutes)


def is_within_window(
    point_in_time: datetime | time,
    slot_time_range: str,
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
) -> bool:
    """Check whether a point in time falls inside the slot window.

    Malformed slot text never raises: it is logged and treated as no match.
    """
    try:
        start, end = parse_time_range(slot_time_range)
    except MalformedSlotWindow as exc:
        logger.warning("Skipping malformed slot window: %s", exc)
        return False

    minute_of_day = point_in_time.hour * 60 + point_in_time.minute
    return _day_offset(minute_of_day, start, end, tolerance_minutes) is not None


def is_in_quiet_hours(now: datetime | time, start: str, end: str) -> bool:
    """Check whether now falls inside the half-open quiet window [start, end).

    Windows with end < start wrap past midnight (e.g. 22:00–06:00).
    Malformed preference text is treated as "not quiet".
    """
    try:
        start_min = parse_clock(start)
        end_min = parse_clock(end)
    except MalformedSlotWindow as exc:
        logger.warning("Ignoring malformed quiet hours: %s", exc)
        return False

    current = now.hour * 60 + now.minute
    if start_min == end_min:
        return False
    if start_min < end_min:
        return start_min <= current < end_min
    return current >= start_min or current < end_min
