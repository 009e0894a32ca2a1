"""Zoom Server-to-Server OAuth token holder.

Exchanges the account credentials for a short-lived bearer token and
caches it. The token is owned here and only handed out through
get_token() / refresh(); ZoomMeetingProvider asks for a refresh when the
API answers 401.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from vigil.ports.meeting_port import ProviderAuthError, ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

# Refresh this many seconds before the provider-reported expiry
_EXPIRY_MARGIN_SECONDS = 60


class ZoomTokenHolder:
    """Caches a client-credentials access token for the Zoom API."""

    def __init__(
        self,
        account_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        oauth_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        from vigil.config import settings

        self._account_id = account_id or settings.ZOOM_ACCOUNT_ID
        self._client_id = client_id or settings.ZOOM_CLIENT_ID
        self._client_secret = client_secret or settings.ZOOM_CLIENT_SECRET
        self._oauth_url = oauth_url or settings.ZOOM_OAUTH_URL
        self._timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        """Return the cached token, exchanging credentials if it is missing or expired."""
        if self._token is not None and time.monotonic() < self._expires_at:
            return self._token
        return await self.refresh()

    async def refresh(self, stale: str | None = None) -> str:
        """Exchange credentials for a new token.

        Concurrent callers collapse into one exchange: if `stale` is given and
        another caller already replaced that token, or no token was given and
        a valid one arrived while we waited for the lock, that token is
        returned.
        """
        async with self._lock:
            if self._token is not None:
                if stale is None and time.monotonic() < self._expires_at:
                    return self._token
                if stale is not None and self._token != stale:
                    return self._token
            self._token = None
            token, expires_in = await self._exchange()
            self._token = token
            self._expires_at = time.monotonic() + max(expires_in - _EXPIRY_MARGIN_SECONDS, 0)
            logger.info("Zoom access token obtained (expires in %ds)", expires_in)
            return token

    async def _exchange(self) -> tuple[str, int]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    self._oauth_url,
                    params={
                        "grant_type": "account_credentials",
                        "account_id": self._account_id,
                    },
                    auth=(self._client_id, self._client_secret),
                )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Zoom token exchange timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Zoom token endpoint unreachable: {exc}") from exc

        # 400/401 mean the credentials were rejected; anything else is an outage
        if resp.status_code in (400, 401):
            raise ProviderAuthError(
                f"Zoom rejected the client credentials: HTTP {resp.status_code}"
            )
        if resp.status_code >= 400:
            raise ProviderError(f"Zoom token exchange failed: HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f"Zoom token response was not JSON: {exc}") from exc

        token = data.get("access_token")
        if not token:
            raise ProviderAuthError("Zoom token response carried no access_token")
        return token, int(data.get("expires_in", 3600))
