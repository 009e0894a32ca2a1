"""
Vigil — Meeting Poller.

Two read-only views of the meeting provider, normalized into
ParticipantEvent / MeetingSession:

- fetch_live_participants(): who is in the meeting right now. An empty
  list is the normal answer when no session is live.
- fetch_recent_sessions(): concluded session instances within a trailing
  window, to catch sessions the live check missed during downtime.

This module is provider-agnostic: it depends on MeetingProviderPort, not
on a specific implementation.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Callable
from zoneinfo import ZoneInfo

from vigil.data.models import MeetingSession, ParticipantEvent
from vigil.ports.meeting_port import ProviderRateLimited

if TYPE_CHECKING:
    from vigil.ports.meeting_port import MeetingProviderPort

logger = logging.getLogger(__name__)


def parse_provider_time(raw: str | None, tz: tzinfo) -> datetime | None:
    """Parse an ISO timestamp from the provider into an aware local datetime.

    Naive timestamps are taken as UTC. Returns None on missing or malformed input.
    """
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        logger.debug("Unparsable provider timestamp %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(tz)


def normalize_participant(
    raw: dict,
    tz: tzinfo,
    session_id: str | None = None,
    observed_at: datetime | None = None,
) -> ParticipantEvent | None:
    """Turn a provider participant dict into a ParticipantEvent.

    Participants without an e-mail identity or a join time are dropped.
    """
    identity = (raw.get("identity") or "").strip().lower()
    if not identity:
        logger.debug("Dropping participant without identity: %r", raw.get("name"))
        return None

    join_time = parse_provider_time(raw.get("join_time"), tz)
    if join_time is None:
        join_time = observed_at
    if join_time is None:
        return None

    return ParticipantEvent(
        identity=identity,
        display_name=raw.get("name") or "",
        join_time=join_time,
        leave_time=parse_provider_time(raw.get("leave_time"), tz),
        session_id=session_id,
        observed_at=observed_at,
    )


class MeetingPoller:
    """Polls the meeting provider and normalizes what it reports."""

    def __init__(
        self,
        provider: MeetingProviderPort,
        meeting_id: str | None = None,
        tz: tzinfo | None = None,
        min_live_spacing: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        from vigil.config import settings

        self._provider = provider
        self._meeting_id = meeting_id or settings.ZOOM_MEETING_ID
        self._tz = tz or ZoneInfo(settings.TIMEZONE)
        self._min_live_spacing = (
            settings.LIVE_POLL_MIN_SPACING_SECONDS
            if min_live_spacing is None else min_live_spacing
        )
        self._clock = clock
        self._last_live_poll: float | None = None

    def _now(self) -> datetime:
        return datetime.now(self._tz)

    async def fetch_live_participants(self) -> list[ParticipantEvent]:
        """Return participants of the currently live session, in provider order.

        Raises ProviderRateLimited when called again sooner than the minimum
        spacing; the caller should treat that as a skipped cycle.
        """
        now_mono = self._clock()
        if (
            self._last_live_poll is not None
            and now_mono - self._last_live_poll < self._min_live_spacing
        ):
            raise ProviderRateLimited(
                f"Live poll {now_mono - self._last_live_poll:.1f}s after the previous one"
            )
        self._last_live_poll = now_mono

        raw = await self._provider.get_live_participants(self._meeting_id)
        if not raw:
            logger.debug("No live session for meeting %s", self._meeting_id)
            return []

        observed_at = self._now()
        events = [
            event
            for p in raw
            if (event := normalize_participant(p, self._tz, observed_at=observed_at))
        ]
        logger.info("Live session: %d participant(s), %d identified", len(raw), len(events))
        return events

    async def fetch_recent_sessions(
        self,
        lookback_days: int | None = None,
        is_processed: Callable[[str], bool] | None = None,
    ) -> list[MeetingSession]:
        """Return concluded sessions from the trailing window with their participants.

        Sessions for which is_processed(session_id) is true are left out
        without fetching their participants.
        """
        if lookback_days is None:
            from vigil.config import settings
            lookback_days = settings.SESSION_LOOKBACK_DAYS

        today: date = self._now().date()
        instances = await self._provider.get_past_session_instances(
            self._meeting_id, today - timedelta(days=lookback_days), today,
        )

        sessions: list[MeetingSession] = []
        for inst in instances:
            session_id = inst.get("session_id")
            start_time = parse_provider_time(inst.get("start_time"), self._tz)
            if not session_id or start_time is None:
                logger.debug("Skipping malformed session instance: %r", inst)
                continue
            if is_processed is not None and is_processed(session_id):
                continue

            raw = await self._provider.get_session_participants(session_id)
            participants = [
                event
                for p in raw
                if (event := normalize_participant(p, self._tz, session_id=session_id))
            ]
            sessions.append(MeetingSession(
                session_id=session_id,
                meeting_id=self._meeting_id,
                start_time=start_time,
                topic=inst.get("topic") or "",
                end_time=parse_provider_time(inst.get("end_time"), self._tz),
                participants=participants,
            ))

        logger.info(
            "Fetched %d unprocessed session(s) from the last %d day(s)",
            len(sessions), lookback_days,
        )
        return sessions
