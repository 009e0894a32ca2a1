"""Meeting provider port — abstract interface for the online meeting service.

Core modules depend on this protocol, never on a specific provider.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol


class ProviderError(Exception):
    """Raised when any meeting provider operation fails."""


class ProviderAuthError(ProviderError):
    """Token exchange or refresh failed twice in a row."""


class ProviderRateLimited(ProviderError):
    """The provider throttled us, or a poll came too soon after the last one."""


class ProviderTimeout(ProviderError):
    """A provider call exceeded its timeout."""


class MeetingProviderPort(Protocol):
    """Abstract meeting provider interface used by the poller.

    Participant dicts carry `identity`, `name`, `join_time` and, for
    concluded sessions, `leave_time`. Session dicts carry `session_id`,
    `start_time` and optionally `end_time` and `topic`.
    """

    async def get_live_participants(self, meeting_id: str) -> list[dict]: ...

    async def get_past_session_instances(
        self, meeting_id: str, from_date: date, to_date: date
    ) -> list[dict]: ...

    async def get_session_participants(self, session_id: str) -> list[dict]: ...
