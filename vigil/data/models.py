"""
Vigil — Data Models.

Slots and attendance rows persist in the store across restarts. Meeting
sessions and participant events are provider-sourced and ephemeral: only
a `processed` marker per session is kept.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

# Slot status values
ACTIVE = "active"
SKIPPED = "skipped"
RELEASED = "released"

# Attendance outcomes
ATTENDED = "attended"
MISSED = "missed"


@dataclass
class PrayerSlot:
    """A recurring, owner-assigned daily time window."""

    id: int
    owner_id: str | None
    time_range: str                        # e.g. "14:00–14:30" or "06:30"
    status: str = ACTIVE
    missed_count: int = 0
    owner_email: str | None = None         # identity used to match meeting participants
    last_attended_at: datetime | None = None
    skip_start: date | None = None
    skip_end: date | None = None
    reminder_minutes: int | None = 30      # None → slot-start reminders disabled

    def is_skipping(self, on_date: date) -> bool:
        """True when on_date lies inside the owner's skip window."""
        if self.skip_start is None or self.skip_end is None:
            return False
        return self.skip_start <= on_date <= self.skip_end


@dataclass
class AttendanceRecord:
    """One attendance outcome per (owner, calendar date)."""

    owner_id: str
    date: date
    outcome: str                           # ATTENDED | MISSED
    slot_id: int | None = None
    join_time: datetime | None = None
    leave_time: datetime | None = None
    source_meeting_id: str | None = None   # "manual_<ts>" for operator rows


@dataclass
class ParticipantEvent:
    """A normalized sighting of a participant in a meeting session."""

    identity: str                          # lower-cased e-mail
    join_time: datetime
    display_name: str = ""
    leave_time: datetime | None = None
    session_id: str | None = None
    observed_at: datetime | None = None    # set for live-session observations

    def presence_points(self) -> list[datetime]:
        """Moments at which the participant was known to be present."""
        points = [self.join_time]
        if self.observed_at is not None:
            points.append(self.observed_at)
        if self.leave_time is not None:
            points.append(self.leave_time)
        return points


@dataclass
class MeetingSession:
    """A concluded (or live) instance of the recurring prayer meeting."""

    session_id: str
    meeting_id: str
    start_time: datetime
    topic: str = ""
    end_time: datetime | None = None
    participants: list[ParticipantEvent] = field(default_factory=list)


@dataclass
class QuietHours:
    """Per-owner reminder suppression window."""

    enabled: bool = False
    start: str = "22:00"
    end: str = "06:00"


@dataclass
class Owner:
    """A volunteer who can hold a slot."""

    owner_id: str
    email: str
    display_name: str = ""
    chat_handle: str | None = None         # recipient for the chat transport


@dataclass
class AttendanceSummary:
    """Attendance totals over a date range, for weekly reports."""

    total: int = 0
    attended: int = 0
    missed: int = 0
    streak: int = 0

    @property
    def rate(self) -> int:
        """Attendance rate as a rounded percentage."""
        if self.total == 0:
            return 0
        return round(self.attended * 100 / self.total)
