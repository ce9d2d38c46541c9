import json
from datetime import datetime, timedelta, timezone
from typing import Callable, List
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, patch

import httpx

from synk.auth import GOOGLE_TOKEN_URL, IdentityClient
from synk.errors import AuthenticationExpired
from synk.google_calendar import GoogleCalendarClient, format_rfc3339
from synk.notion_client import NotionClient
from synk.utils import format_database_id


class FakeIdentity:
    def __init__(self):
        self.invalidated: List[str] = []
        self.issued = 0

    async def get_valid_access_token(self, service: str) -> str:
        self.issued += 1
        return f"{service}-token-{self.issued}"

    def invalidate(self, service: str) -> None:
        self.invalidated.append(service)


def recording_transport(handler: Callable[[httpx.Request], httpx.Response], requests: List[httpx.Request]):
    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(record)


class NotionClientTests(IsolatedAsyncioTestCase):
    async def test_list_pages_follows_cursor(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if "start_cursor" not in body:
                return httpx.Response(200, json={"results": [{"id": "p1"}], "has_more": True, "next_cursor": "c2"})
            return httpx.Response(200, json={"results": [{"id": "p2"}], "has_more": False})

        client = NotionClient(FakeIdentity(), transport=recording_transport(handler, requests))

        pages = await client.list_pages("0123456789abcdef0123456789abcdef")

        self.assertEqual([p["id"] for p in pages], ["p1", "p2"])
        self.assertEqual(json.loads(requests[1].content)["start_cursor"], "c2")
        self.assertEqual(requests[0].url.path, "/v1/databases/01234567-89ab-cdef-0123-456789abcdef/query")
        self.assertEqual(requests[0].headers["Notion-Version"], "2022-06-28")
        self.assertEqual(requests[0].headers["Authorization"], "Bearer notion-token-1")

    async def test_unauthorized_raises_authentication_expired(self) -> None:
        client = NotionClient(FakeIdentity(), transport=httpx.MockTransport(lambda r: httpx.Response(401)))

        with self.assertRaises(AuthenticationExpired) as ctx:
            await client.get_schema("db1")

        self.assertEqual(ctx.exception.service, "notion")

    async def test_server_error_is_retried(self) -> None:
        requests: List[httpx.Request] = []
        responses = [httpx.Response(502), httpx.Response(200, json={"properties": {"When": {"type": "date"}}})]
        client = NotionClient(FakeIdentity(), transport=recording_transport(lambda r: responses.pop(0), requests))

        with patch("synk.utils.asyncio.sleep", new=AsyncMock()) as sleep:
            schema = await client.get_schema("db1")

        self.assertEqual(schema, {"When": {"type": "date"}})
        self.assertEqual(len(requests), 2)
        sleep.assert_awaited_once_with(1.0)

    async def test_rate_limit_honours_retry_after(self) -> None:
        responses = [
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(200, json={"id": "p1"}),
        ]
        client = NotionClient(FakeIdentity(), transport=httpx.MockTransport(lambda r: responses.pop(0)))

        with patch("synk.utils.asyncio.sleep", new=AsyncMock()) as sleep:
            page = await client.update_page("p1", {})

        self.assertEqual(page, {"id": "p1"})
        sleep.assert_awaited_once_with(3.0)

    async def test_client_error_is_not_retried(self) -> None:
        requests: List[httpx.Request] = []
        client = NotionClient(
            FakeIdentity(), transport=recording_transport(lambda r: httpx.Response(400, json={}), requests)
        )

        with patch("synk.utils.asyncio.sleep", new=AsyncMock()):
            with self.assertRaises(httpx.HTTPStatusError):
                await client.update_page("p1", {})

        self.assertEqual(len(requests), 1)

    async def test_list_databases_returns_titles(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "results": [{
                    "id": "db1",
                    "title": [{"plain_text": "Tasks"}],
                    "url": "https://www.notion.so/db1",
                    "properties": {"Name": {}, "Due": {}},
                }],
                "has_more": False,
            })

        client = NotionClient(FakeIdentity(), transport=httpx.MockTransport(handler))

        databases = await client.list_databases()

        self.assertEqual(databases[0]["title"], "Tasks")
        self.assertEqual(databases[0]["properties"], ["Name", "Due"])


class GoogleCalendarClientTests(IsolatedAsyncioTestCase):
    async def test_list_events_follows_page_token(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={"items": [{"id": "e1"}], "nextPageToken": "t2"})
            return httpx.Response(200, json={"items": [{"id": "e2"}]})

        client = GoogleCalendarClient(FakeIdentity(), transport=recording_transport(handler, requests))
        start = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)

        events = await client.list_events("team@group.calendar.google.com", start, start + timedelta(days=60))

        self.assertEqual([e["id"] for e in events], ["e1", "e2"])
        self.assertIn("team%40group.calendar.google.com", str(requests[0].url))
        self.assertEqual(requests[0].url.params["singleEvents"], "true")
        self.assertEqual(requests[0].url.params["timeMin"], "2024-05-02T12:00:00Z")
        self.assertEqual(requests[1].url.params["pageToken"], "t2")

    async def test_expired_token_is_refreshed_once(self) -> None:
        identity = FakeIdentity()
        requests: List[httpx.Request] = []
        responses = [httpx.Response(401), httpx.Response(200, json={"id": "e1"})]
        client = GoogleCalendarClient(identity, transport=recording_transport(lambda r: responses.pop(0), requests))

        event = await client.update_event("primary", "e1", {"summary": "Standup"})

        self.assertEqual(event, {"id": "e1"})
        self.assertEqual(identity.invalidated, ["google"])
        self.assertEqual(requests[1].headers["Authorization"], "Bearer google-token-2")

    async def test_second_unauthorized_raises(self) -> None:
        client = GoogleCalendarClient(FakeIdentity(), transport=httpx.MockTransport(lambda r: httpx.Response(401)))

        with self.assertRaises(AuthenticationExpired) as ctx:
            await client.create_event("primary", {"summary": "Standup"})

        self.assertEqual(ctx.exception.service, "google")

    async def test_get_event_missing_is_none(self) -> None:
        requests: List[httpx.Request] = []
        responses = [httpx.Response(200, json={"id": "e1", "status": "cancelled"}), httpx.Response(404)]
        client = GoogleCalendarClient(FakeIdentity(), transport=recording_transport(lambda r: responses.pop(0), requests))

        deleted = await client.get_event("primary", "e1")
        missing = await client.get_event("primary", "e2")

        self.assertEqual(deleted["status"], "cancelled")
        self.assertIsNone(missing)
        self.assertEqual(requests[1].url.path, "/calendar/v3/calendars/primary/events/e2")

    async def test_list_calendars(self) -> None:
        payload = {"items": [{"id": "primary", "summary": "Me", "primary": True, "accessRole": "owner"}]}
        client = GoogleCalendarClient(FakeIdentity(), transport=httpx.MockTransport(lambda r: httpx.Response(200, json=payload)))

        calendars = await client.list_calendars()

        self.assertEqual(calendars[0]["name"], "Me")
        self.assertTrue(calendars[0]["primary"])


class IdentityClientTests(IsolatedAsyncioTestCase):
    def make_client(self, handler: Callable[[httpx.Request], httpx.Response], requests: List[httpx.Request]) -> IdentityClient:
        return IdentityClient(
            notion_token="secret_notion",
            google_client_id="client-id",
            google_client_secret="client-secret",
            google_refresh_token="refresh-token",
            transport=recording_transport(handler, requests),
        )

    async def test_google_token_is_refreshed_and_cached(self) -> None:
        requests: List[httpx.Request] = []
        identity = self.make_client(
            lambda r: httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600}), requests
        )

        first = await identity.get_valid_access_token("google")
        second = await identity.get_valid_access_token("google")

        self.assertEqual((first, second), ("ya29.token", "ya29.token"))
        self.assertEqual(len(requests), 1)
        self.assertEqual(str(requests[0].url), GOOGLE_TOKEN_URL)
        self.assertIn(b"grant_type=refresh_token", requests[0].content)

    async def test_invalidate_forces_refresh(self) -> None:
        requests: List[httpx.Request] = []
        identity = self.make_client(
            lambda r: httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600}), requests
        )

        await identity.get_valid_access_token("google")
        identity.invalidate("google")
        await identity.get_valid_access_token("google")

        self.assertEqual(len(requests), 2)

    async def test_revoked_refresh_token_raises(self) -> None:
        identity = self.make_client(lambda r: httpx.Response(400, json={"error": "invalid_grant"}), [])

        with self.assertRaises(AuthenticationExpired) as ctx:
            await identity.get_valid_access_token("google")

        self.assertEqual(ctx.exception.service, "google")

    async def test_missing_credentials_raise(self) -> None:
        identity = IdentityClient()

        with self.assertRaises(AuthenticationExpired):
            await identity.get_valid_access_token("notion")
        with self.assertRaises(AuthenticationExpired):
            await identity.get_valid_access_token("google")

    async def test_notion_token_is_returned(self) -> None:
        identity = self.make_client(lambda r: httpx.Response(500), [])

        self.assertEqual(await identity.get_valid_access_token("notion"), "secret_notion")
        with self.assertRaises(ValueError):
            await identity.get_valid_access_token("outlook")


class FormattingTests(TestCase):
    def test_format_database_id(self) -> None:
        self.assertEqual(format_database_id("0123456789abcdef0123456789abcdef"), "01234567-89ab-cdef-0123-456789abcdef")
        self.assertEqual(format_database_id("already-formatted"), "already-formatted")

    def test_format_rfc3339(self) -> None:
        berlin_noon = datetime(2024, 6, 1, 12, 0, 30, 5, tzinfo=timezone(timedelta(hours=2)))

        self.assertEqual(format_rfc3339(berlin_noon), "2024-06-01T10:00:30Z")


if __name__ == "__main__":
    import unittest

    unittest.main()
