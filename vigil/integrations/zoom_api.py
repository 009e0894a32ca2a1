"""Zoom API adapter — implements MeetingProviderPort.

Reads live participants (Dashboard metrics API) and past meeting
instances with their participants. Every call carries a bounded timeout,
follows next_page_token paging, and maps Zoom's field names onto the
port's plain dict shape.

Error mapping:
- 401 → refresh the token once and retry; a second 401 → ProviderAuthError
- 429 → ProviderRateLimited
- 404 → no data (meeting not live, instance gone)
- timeout → ProviderTimeout; any other failure → ProviderError
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from urllib.parse import quote

import httpx

from vigil.integrations.zoom_auth import ZoomTokenHolder
from vigil.ports.meeting_port import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimited,
    ProviderTimeout,
)

logger = logging.getLogger(__name__)

_PAGE_SIZE = 300
_MAX_PAGES = 20


def _encode_uuid(uuid: str) -> str:
    """Zoom requires double URL-encoding for UUIDs starting with '/' or containing '//'."""
    if uuid.startswith("/") or "//" in uuid:
        return quote(quote(uuid, safe=""), safe="")
    return quote(uuid, safe="")


def _parse_start_date(raw: str) -> date | None:
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except (AttributeError, ValueError):
        return None


class ZoomMeetingProvider:
    """Zoom implementation of MeetingProviderPort."""

    def __init__(
        self,
        tokens: ZoomTokenHolder,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        from vigil.config import settings

        self._tokens = tokens
        self._base_url = (base_url or settings.ZOOM_API_BASE_URL).rstrip("/")
        self._timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _send(self, path: str, params: dict, token: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.get(
                    f"{self._base_url}{path}",
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Zoom GET {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Zoom GET {path} failed: {exc}") from exc

    async def _get(self, path: str, params: dict) -> dict:
        token = await self._tokens.get_token()
        resp = await self._send(path, params, token)

        if resp.status_code == 401:
            logger.info("Zoom rejected the cached token; refreshing")
            token = await self._tokens.refresh(stale=token)
            resp = await self._send(path, params, token)
            if resp.status_code == 401:
                raise ProviderAuthError(f"Zoom rejected a refreshed token for {path}")

        if resp.status_code == 429:
            raise ProviderRateLimited(f"Zoom throttled GET {path}")
        if resp.status_code == 404:
            logger.debug("Zoom GET %s → 404, treating as empty", path)
            return {}
        if resp.status_code >= 400:
            raise ProviderError(f"Zoom GET {path} failed: HTTP {resp.status_code}")
        return resp.json()

    async def _paged(self, path: str, key: str, params: dict | None = None) -> list[dict]:
        """Collect every page of a Zoom list endpoint."""
        query = dict(params or {})
        query.setdefault("page_size", _PAGE_SIZE)
        items: list[dict] = []
        for _ in range(_MAX_PAGES):
            data = await self._get(path, query)
            items.extend(data.get(key) or [])
            next_token = data.get("next_page_token")
            if not next_token:
                break
            query["next_page_token"] = next_token
        else:
            logger.warning("Zoom GET %s: stopped after %d pages", path, _MAX_PAGES)
        return items

    # ------------------------------------------------------------------
    # MeetingProviderPort
    # ------------------------------------------------------------------

    async def get_live_participants(self, meeting_id: str) -> list[dict]:
        raw = await self._paged(
            f"/metrics/meetings/{quote(str(meeting_id), safe='')}/participants",
            "participants",
            {"type": "live"},
        )
        return [
            {
                "identity": p.get("email") or p.get("user_email") or "",
                "name": p.get("user_name") or p.get("name") or "",
                "join_time": p.get("join_time"),
                "leave_time": p.get("leave_time"),
            }
            for p in raw
        ]

    async def get_past_session_instances(
        self, meeting_id: str, from_date: date, to_date: date
    ) -> list[dict]:
        data = await self._get(
            f"/past_meetings/{quote(str(meeting_id), safe='')}/instances", {},
        )
        sessions = []
        for inst in data.get("meetings") or []:
            started = _parse_start_date(inst.get("start_time", ""))
            if started is None or not (from_date <= started <= to_date):
                continue
            sessions.append({
                "session_id": inst["uuid"],
                "start_time": inst["start_time"],
                "topic": inst.get("topic", ""),
                "end_time": inst.get("end_time"),
            })
        sessions.sort(key=lambda s: s["start_time"])
        return sessions

    async def get_session_participants(self, session_id: str) -> list[dict]:
        raw = await self._paged(
            f"/past_meetings/{_encode_uuid(session_id)}/participants",
            "participants",
        )
        return [
            {
                "identity": p.get("user_email") or p.get("email") or "",
                "name": p.get("name") or p.get("user_name") or "",
                "join_time": p.get("join_time"),
                "leave_time": p.get("leave_time"),
            }
            for p in raw
        ]
