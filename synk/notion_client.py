import logging
from typing import Dict, Any, Optional, List

import httpx

from synk.errors import AuthenticationExpired
from synk.utils import retry_on_error, format_database_id

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

logger = logging.getLogger("NotionClient")


class NotionClient:
    """
    Async Notion API client.

    Tokens come from the identity client on every request; a 401 means the
    integration was revoked and surfaces as `AuthenticationExpired`.

    Usage:
        notion = NotionClient(identity)
        pages = await notion.list_pages(database_id)
        schema = await notion.get_schema(database_id)
        await notion.create_page(database_id, properties)
        await notion.update_page(page_id, properties)
    """

    def __init__(self, identity, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self.identity = identity
        self._transport = transport
        self._timeout = timeout

    async def _headers(self) -> Dict[str, str]:
        token = await self.identity.get_valid_access_token("notion")
        return {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    @retry_on_error()
    async def _request(self, method: str, path: str, json: Optional[Dict] = None) -> Dict[str, Any]:
        headers = await self._headers()
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(method, f"{NOTION_API_BASE}{path}", headers=headers, json=json)

        if response.status_code == 401:
            raise AuthenticationExpired("notion")
        response.raise_for_status()
        return response.json()

    async def list_pages(self, database_id: str, filter: Optional[Dict[str, Any]] = None, page_size: int = 100) -> List[Dict[str, Any]]:
        """Query all pages from a database with automatic pagination."""
        database_id = format_database_id(database_id)
        results = []
        start_cursor = None

        while True:
            body: Dict[str, Any] = {"page_size": page_size}
            if filter:
                body["filter"] = filter
            if start_cursor:
                body["start_cursor"] = start_cursor

            data = await self._request("POST", f"/databases/{database_id}/query", json=body)
            results.extend(data.get("results", []))

            if not data.get("has_more"):
                break
            start_cursor = data.get("next_cursor")

        logger.debug(f"Fetched {len(results)} pages from {database_id}")
        return results

    async def get_schema(self, database_id: str) -> Dict[str, Any]:
        """Return the database property bag: {property name: {"type": ..., ...}}."""
        data = await self._request("GET", f"/databases/{format_database_id(database_id)}")
        return data.get("properties", {})

    async def create_page(self, database_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "parent": {"database_id": format_database_id(database_id)},
            "properties": properties,
        }
        return await self._request("POST", "/pages", json=body)

    async def update_page(self, page_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/pages/{page_id}", json={"properties": properties})

    async def list_databases(self) -> List[Dict[str, Any]]:
        """Databases shared with the integration, for the pair picker."""
        results = []
        start_cursor = None
        while True:
            body: Dict[str, Any] = {
                "filter": {"value": "database", "property": "object"},
                "page_size": 100,
            }
            if start_cursor:
                body["start_cursor"] = start_cursor
            data = await self._request("POST", "/search", json=body)
            results.extend(data.get("results", []))
            if not data.get("has_more"):
                break
            start_cursor = data.get("next_cursor")

        return [
            {
                "id": db.get("id"),
                "title": "".join(t.get("plain_text", "") for t in db.get("title", [])) or "Untitled Database",
                "url": db.get("url"),
                "last_edited_time": db.get("last_edited_time"),
                "properties": list((db.get("properties") or {}).keys()),
            }
            for db in results
        ]
