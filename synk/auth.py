import time
import logging
from typing import Dict, Optional, Tuple

import httpx

from synk.errors import AuthenticationExpired

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this many seconds before Google says the token expires
EXPIRY_MARGIN_SECONDS = 60

SERVICES = ("notion", "google")

logger = logging.getLogger("IdentityClient")


class IdentityClient:
    """
    Hands out valid access tokens for the two services.

    Notion integration tokens do not expire, so the configured token is
    returned as-is. Google access tokens are exchanged from the refresh token
    and cached until shortly before expiry.
    """

    def __init__(
        self,
        notion_token: Optional[str] = None,
        google_client_id: Optional[str] = None,
        google_client_secret: Optional[str] = None,
        google_refresh_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.notion_token = notion_token
        self.google_client_id = google_client_id
        self.google_client_secret = google_client_secret
        self.google_refresh_token = google_refresh_token
        self._transport = transport
        self._cache: Dict[str, Tuple[str, float]] = {}

    @classmethod
    def from_settings(cls, settings) -> "IdentityClient":
        return cls(
            notion_token=settings.notion_token,
            google_client_id=settings.google_client_id,
            google_client_secret=settings.google_client_secret,
            google_refresh_token=settings.google_refresh_token,
        )

    async def get_valid_access_token(self, service: str) -> str:
        if service not in SERVICES:
            raise ValueError(f"Unknown service: {service}")

        if service == "notion":
            if not self.notion_token:
                raise AuthenticationExpired("notion", "Missing Notion API token")
            return self.notion_token

        cached = self._cache.get(service)
        if cached and cached[1] > time.time():
            return cached[0]

        token, expires_in = await self._refresh_google_token()
        self._cache[service] = (token, time.time() + max(expires_in - EXPIRY_MARGIN_SECONDS, 0))
        return token

    def invalidate(self, service: str):
        """Forget a cached token, e.g. after the API rejected it."""
        self._cache.pop(service, None)

    async def _refresh_google_token(self) -> Tuple[str, int]:
        """Exchange the refresh token for a new access token."""
        if not all([self.google_client_id, self.google_client_secret, self.google_refresh_token]):
            raise AuthenticationExpired("google", "Missing Google OAuth credentials")

        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            response = await client.post(GOOGLE_TOKEN_URL, data={
                "client_id": self.google_client_id,
                "client_secret": self.google_client_secret,
                "refresh_token": self.google_refresh_token,
                "grant_type": "refresh_token",
            })

        if response.status_code in (400, 401):
            # invalid_grant: refresh token revoked or expired
            logger.error(f"Google token refresh rejected: {response.text[:200]}")
            raise AuthenticationExpired("google")

        response.raise_for_status()
        data = response.json()
        return data["access_token"], int(data.get("expires_in", 3600))
