"""
===================================================================================
RECONCILER - One bidirectional pass for a Notion database <-> Google Calendar pair
===================================================================================

Phases:
1. Fetch the Notion schema, the Notion pages and the Calendar events in the
   validity window concurrently, then any linked events the window listing
   missed. Any fetch failure aborts the pass.
2. Notion -> Google: create/update events for new or newer pages.
3. Google -> Notion: create/update pages for new or newer events.

Per-item failures are logged and counted but never abort the batch.
After a create, the new record's id is written back onto its source, so both
sides link to each other and the next pass is a no-op.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from synk.config import DEFAULT_WINDOW_DAYS
from synk.errors import AuthenticationExpired, SchemaError, SynkError, TransientNetworkError
from syncs import field_mapper
from syncs.change_detector import Action, Change, detect_changes
from syncs.models import SyncCounts, SyncPair, SyncResult

logger = logging.getLogger("Reconciler")

NOTION_TO_GOOGLE = "notion_to_google"
GOOGLE_TO_NOTION = "google_to_notion"


class Reconciler:
    """
    Usage:
        reconciler = Reconciler(notion, calendar, SyncStatsRecorder(store))
        result = await reconciler.sync_pair(SyncPair(database_id, calendar_id))
    """

    def __init__(
        self,
        notion,
        calendar,
        stats,
        window_days: int = DEFAULT_WINDOW_DAYS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.notion = notion
        self.calendar = calendar
        self.stats = stats
        self.window_days = window_days
        self._now = now

    async def sync_pair(self, pair: SyncPair) -> SyncResult:
        """Run one full pass; raises on fetch failure, records stats either way."""
        start_time = time.time()
        try:
            result = await self._sync(pair)
        except Exception:
            self.stats.record_failure(pair.pair_key)
            raise

        result.elapsed_seconds = time.time() - start_time
        self.stats.record_success(pair.pair_key, at=self._now())
        logger.info(
            f"Pair {pair.pair_key} synced in {result.elapsed_seconds:.1f}s: "
            f"notion->google {result.notion_to_google.to_dict()}, "
            f"google->notion {result.google_to_notion.to_dict()}"
        )
        return result

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _fetch(self, pair: SyncPair, time_min: datetime, time_max: datetime):
        results = await asyncio.gather(
            self.notion.get_schema(pair.notion_database_id),
            self.notion.list_pages(pair.notion_database_id),
            self.calendar.list_events(pair.google_calendar_id, time_min, time_max),
            return_exceptions=True,
        )
        _raise_fetch_errors(pair, results)
        return results

    async def _lookup_linked_events(self, pair: SyncPair, event_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch linked events the window listing did not return (moved out of the window or deleted)."""
        if not event_ids:
            return []
        results = await asyncio.gather(
            *(self.calendar.get_event(pair.google_calendar_id, event_id) for event_id in event_ids),
            return_exceptions=True,
        )
        _raise_fetch_errors(pair, results)
        return [event for event in results if event is not None]

    async def _sync(self, pair: SyncPair) -> SyncResult:
        now = self._now()
        time_min = now - timedelta(days=self.window_days)
        time_max = now + timedelta(days=self.window_days)
        window_min_ms = int(time_min.timestamp() * 1000)
        window_max_ms = int(time_max.timestamp() * 1000)

        schema, pages, events = await self._fetch(pair, time_min, time_max)

        date_field = field_mapper.find_date_property(schema)
        if date_field is None:
            raise SchemaError(
                pair.notion_database_id,
                f"Notion database {pair.notion_database_id} has no date property",
            )
        context = _PairContext(
            pair=pair,
            schema=schema,
            date_field=date_field,
            title_property=field_mapper.find_title_property(schema),
            description_property=field_mapper.find_description_property(schema),
            link_supported=field_mapper.has_link_property(schema),
        )

        all_pages = [
            field_mapper.normalize_notion_page(page, date_field, context.description_property)
            for page in pages
        ]
        all_events = [field_mapper.normalize_calendar_event(event) for event in events]
        notion_items = [item for item in all_pages if item.overlaps(window_min_ms, window_max_ms)]
        calendar_items = [item for item in all_events if item.overlaps(window_min_ms, window_max_ms)]

        # Out-of-window records are never synced themselves but still match as counterparts
        listed = {item.external_id for item in all_events}
        missing = sorted({
            item.link_id for item in notion_items
            if item.link_id and not item.deleted and item.link_id not in listed
        })
        all_events.extend(
            field_mapper.normalize_calendar_event(event)
            for event in await self._lookup_linked_events(pair, missing)
        )

        result = SyncResult(
            pair_key=pair.pair_key,
            notion_count=len(notion_items),
            calendar_count=len(calendar_items),
        )

        for change in detect_changes(notion_items, all_events):
            await self._apply(context, change, NOTION_TO_GOOGLE, result.notion_to_google, result)

        for change in detect_changes(calendar_items, all_pages):
            await self._apply(context, change, GOOGLE_TO_NOTION, result.google_to_notion, result)

        return result

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _apply(self, context: "_PairContext", change: Change, direction: str, counts: SyncCounts, result: SyncResult):
        if change.action is Action.SKIP:
            counts.skipped += 1
            return

        try:
            if change.action is Action.UPDATE_ON_B:
                check_link = direction == NOTION_TO_GOOGLE or context.link_supported
                if field_mapper.content_matches(
                    change.item,
                    change.counterpart,
                    check_link=check_link,
                    compare_description=context.description_property is not None,
                ):
                    counts.skipped += 1
                    return

            if direction == NOTION_TO_GOOGLE:
                await self._write_event(context, change)
            else:
                await self._write_page(context, change)

            if change.action is Action.CREATE_ON_B:
                counts.created += 1
            else:
                counts.updated += 1

        except AuthenticationExpired:
            raise
        except Exception as e:
            counts.errors += 1
            result.item_errors.append({
                'item_id': change.item.external_id,
                'direction': direction,
                'action': change.action.value,
                'error': str(e),
            })
            logger.error(
                f"Failed to {change.action.value} {direction} item {change.item.external_id} "
                f"(pair {context.pair.pair_key}): {e}"
            )

    async def _write_event(self, context: "_PairContext", change: Change):
        page = change.item.raw
        calendar_id = context.pair.google_calendar_id
        existing = change.counterpart.description if change.counterpart is not None else ""
        body = field_mapper.to_calendar_event(
            page, context.date_field, context.description_property, existing_description=existing
        )

        if change.action is Action.UPDATE_ON_B:
            await self.calendar.update_event(calendar_id, change.counterpart.external_id, body)
            return

        created = await self.calendar.create_event(calendar_id, body)
        if context.link_supported:
            await self.notion.update_page(page['id'], field_mapper.link_back_properties(created['id']))

    async def _write_page(self, context: "_PairContext", change: Change):
        event = change.item.raw
        properties = context.restrict(field_mapper.to_notion_properties(
            event, context.date_field, context.title_property, context.description_property
        ))

        if change.action is Action.UPDATE_ON_B:
            await self.notion.update_page(change.counterpart.external_id, properties)
            return

        page = await self.notion.create_page(context.pair.notion_database_id, properties)
        await self.calendar.update_event(
            context.pair.google_calendar_id, event['id'], field_mapper.link_back_event(event, page)
        )


def _raise_fetch_errors(pair: SyncPair, results: List[Any]):
    errors = [r for r in results if isinstance(r, BaseException)]
    for error in errors:
        if isinstance(error, AuthenticationExpired):
            raise error
    if errors:
        error = errors[0]
        if isinstance(error, SynkError):
            raise error
        raise TransientNetworkError(f"Fetch failed for pair {pair.pair_key}: {error}") from error


class _PairContext:
    """Schema-derived settings for one pass."""

    def __init__(self, pair: SyncPair, schema: Dict[str, Any], date_field: str, title_property: str,
                 description_property: Optional[str], link_supported: bool):
        self.pair = pair
        self.schema = schema
        self.date_field = date_field
        self.title_property = title_property
        self.description_property = description_property
        self.link_supported = link_supported
        self._warned: List[str] = []

    def restrict(self, properties: Dict[str, Any]) -> Dict[str, Any]:
        """Drop properties the database does not define."""
        kept = {}
        for name, value in properties.items():
            if name in self.schema:
                kept[name] = value
            elif name not in self._warned:
                self._warned.append(name)
                logger.warning(
                    f"Notion database {self.pair.notion_database_id} has no {name!r} property; not writing it"
                )
        return kept
