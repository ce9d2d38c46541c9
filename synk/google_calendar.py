import logging
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
from urllib.parse import quote

import httpx

from synk.errors import AuthenticationExpired
from synk.utils import retry_on_error

GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

logger = logging.getLogger("GoogleCalendarClient")


def format_rfc3339(dt: datetime) -> str:
    """Normalize datetime to RFC3339 `YYYY-MM-DDTHH:MM:SSZ` format."""

    if dt.tzinfo is None:
        # Assume naive datetimes are already UTC
        dt_utc = dt.replace(microsecond=0)
    else:
        dt_utc = dt.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)

    return dt_utc.isoformat(timespec="seconds") + "Z"


class GoogleCalendarClient:
    def __init__(self, identity, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 60.0):
        self.identity = identity
        self._transport = transport
        self._timeout = timeout

    @retry_on_error()
    async def _request(self, method: str, path: str, params: Optional[Dict] = None, json: Optional[Dict] = None) -> Dict[str, Any]:
        url = f"{GOOGLE_CALENDAR_API_BASE}{path}"
        token = await self.identity.get_valid_access_token("google")

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(
                method, url, headers={"Authorization": f"Bearer {token}"}, params=params, json=json
            )

            if response.status_code == 401:
                # Token expired, refresh once and retry
                self.identity.invalidate("google")
                token = await self.identity.get_valid_access_token("google")
                response = await client.request(
                    method, url, headers={"Authorization": f"Bearer {token}"}, params=params, json=json
                )
                if response.status_code == 401:
                    raise AuthenticationExpired("google")

        response.raise_for_status()
        return response.json()

    async def list_events(self,
                          calendar_id: str,
                          time_min: Optional[datetime] = None,
                          time_max: Optional[datetime] = None,
                          max_results: int = 2500) -> List[Dict[str, Any]]:
        """List single (expanded) events in the window, following pagination."""
        params: Dict[str, Any] = {
            "maxResults": max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if time_min:
            params["timeMin"] = format_rfc3339(time_min)
        if time_max:
            params["timeMax"] = format_rfc3339(time_max)

        events = []
        while True:
            data = await self._request("GET", f"/calendars/{quote(calendar_id, safe='')}/events", params=params)
            events.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug(f"Fetched {len(events)} events from {calendar_id}")
        return events

    async def get_event(self, calendar_id: str, event_id: str) -> Optional[Dict[str, Any]]:
        """Single event by id, or None when it no longer exists. Deleted events come back as cancelled."""
        try:
            return await self._request(
                "GET", f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (404, 410):
                return None
            raise

    async def create_event(self, calendar_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/calendars/{quote(calendar_id, safe='')}/events", json=event)

    async def update_event(self, calendar_id: str, event_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        """Patch only the fields present in `event`."""
        return await self._request(
            "PATCH", f"/calendars/{quote(calendar_id, safe='')}/events/{event_id}", json=event
        )

    async def list_calendars(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/users/me/calendarList")
        return [
            {
                "id": cal.get("id"),
                "name": cal.get("summary"),
                "primary": cal.get("primary", False),
                "accessRole": cal.get("accessRole"),
                "timeZone": cal.get("timeZone"),
            }
            for cal in data.get("items", [])
        ]
