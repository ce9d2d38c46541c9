"""
Field mapping between Notion pages and Google Calendar events.

Pure functions, no I/O. Notion pages and Calendar events are the raw API
dicts; `normalize_*` turn them into `SyncItem`s for comparison, while
`to_calendar_event` / `to_notion_properties` build request payloads.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from synk.errors import MappingError
from syncs.link_markers import (
    GOOGLE_EVENT_ID_PROPERTY,
    append_notion_marker,
    extract_notion_page_id,
    strip_notion_marker,
)
from syncs.models import GOOGLE, NOTION, SyncItem

UNTITLED = "Untitled"
DEFAULT_TITLE_PROPERTY = "Name"
DEFAULT_DESCRIPTION_PROPERTY = "Description"
DESCRIPTION_CANDIDATES = ("Description", "Notes", "Details")
DEFAULT_EVENT_DURATION = timedelta(hours=1)

# Notion limit per rich text object
RICH_TEXT_CHUNK = 2000

logger = logging.getLogger("FieldMapper")


# ============================================================================
# TIMESTAMPS
# ============================================================================

def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    ts = value.strip()
    if ts.endswith('Z'):
        ts = ts[:-1] + '+00:00'
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """ISO-8601 string to epoch milliseconds, None when missing or unparsable."""
    dt = parse_datetime(value)
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def _parse_date(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value[:10])
    except (TypeError, ValueError):
        return None


def _date_ms(d: date) -> int:
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp() * 1000)


def _has_time(value: Optional[str]) -> bool:
    return bool(value) and 'T' in value


def _localize(value: str, time_zone: Optional[str]) -> Optional[datetime]:
    """Parse a Notion datetime; naive values use the property's time_zone when set."""
    ts = value.strip()
    if ts.endswith('Z'):
        ts = ts[:-1] + '+00:00'
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        tz = timezone.utc
        if time_zone:
            try:
                tz = ZoneInfo(time_zone)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning(f"Unknown time zone {time_zone!r}, assuming UTC")
        dt = dt.replace(tzinfo=tz)
    return dt


# ============================================================================
# NOTION PROPERTY HELPERS
# ============================================================================

class NotionPropertyExtractor:
    """Helper class to extract values from Notion property objects."""

    @staticmethod
    def plain_text(segments: List[Dict]) -> str:
        return "".join(s.get('plain_text') or s.get('text', {}).get('content', '') for s in segments or [])

    @staticmethod
    def title(props: Dict, prop_name: str) -> str:
        return NotionPropertyExtractor.plain_text(props.get(prop_name, {}).get('title', []))

    @staticmethod
    def rich_text(props: Dict, prop_name: str) -> Optional[str]:
        prop = props.get(prop_name)
        if not prop or 'rich_text' not in prop:
            return None
        return NotionPropertyExtractor.plain_text(prop.get('rich_text', []))

    @staticmethod
    def date(props: Dict, prop_name: str) -> Optional[Dict[str, Any]]:
        date_prop = props.get(prop_name, {}).get('date')
        if not date_prop or not date_prop.get('start'):
            return None
        return date_prop


class NotionPropertyBuilder:
    """Helper class to build Notion property objects for creating/updating pages."""

    @staticmethod
    def _chunks(value: str) -> List[Dict]:
        return [
            {"text": {"content": value[i:i + RICH_TEXT_CHUNK]}}
            for i in range(0, len(value), RICH_TEXT_CHUNK)
        ]

    @staticmethod
    def title(value: str) -> Dict:
        return {"title": NotionPropertyBuilder._chunks(value or "")}

    @staticmethod
    def rich_text(value: Optional[str]) -> Dict:
        if not value:
            return {"rich_text": []}
        return {"rich_text": NotionPropertyBuilder._chunks(value)}

    @staticmethod
    def date(start: str, end: Optional[str] = None) -> Dict:
        return {"date": {"start": start, "end": end}}


# ============================================================================
# SCHEMA INSPECTION
# ============================================================================

def find_date_property(schema: Dict[str, Any]) -> Optional[str]:
    """Name of the first date-typed property in the database schema, or None."""
    for name, prop in (schema or {}).items():
        if isinstance(prop, dict) and prop.get('type') == 'date':
            return name
    return None


def find_title_property(schema: Dict[str, Any]) -> str:
    for name, prop in (schema or {}).items():
        if isinstance(prop, dict) and prop.get('type') == 'title':
            return name
    return DEFAULT_TITLE_PROPERTY


def find_description_property(schema: Dict[str, Any]) -> Optional[str]:
    """First rich-text property named like a description, or None."""
    for name in DESCRIPTION_CANDIDATES:
        prop = (schema or {}).get(name)
        if isinstance(prop, dict) and prop.get('type') == 'rich_text':
            return name
    return None


def has_link_property(schema: Dict[str, Any]) -> bool:
    prop = (schema or {}).get(GOOGLE_EVENT_ID_PROPERTY)
    return isinstance(prop, dict) and prop.get('type') == 'rich_text'


# ============================================================================
# NOTION PAGE -> CALENDAR EVENT
# ============================================================================

def extract_title(page: Dict[str, Any]) -> str:
    """Title text of a Notion page; raises MappingError when there is none."""
    for prop in (page.get('properties') or {}).values():
        if isinstance(prop, dict) and prop.get('type') == 'title':
            text = NotionPropertyExtractor.plain_text(prop.get('title', [])).strip()
            if text:
                return text
            break
    raise MappingError(f"Notion page {page.get('id')} has no title")


def _title_or_untitled(page: Dict[str, Any]) -> str:
    try:
        return extract_title(page)
    except MappingError as e:
        logger.debug(f"{e}, using {UNTITLED!r}")
        return UNTITLED


def _notion_description(page: Dict[str, Any], description_property: Optional[str], fallback: str = "") -> str:
    if not description_property:
        return fallback
    return NotionPropertyExtractor.rich_text(page.get('properties') or {}, description_property) or ""


def _notion_event_times(date_prop: Dict[str, Any]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Google start/end objects for a Notion date value."""
    start = date_prop['start']
    end = date_prop.get('end')
    time_zone = date_prop.get('time_zone')

    if not _has_time(start):
        start_date = _parse_date(start)
        if start_date is None:
            raise MappingError(f"Unparsable date {start!r}")
        end_date = _parse_date(end) if end else None
        if end_date is None or end_date < start_date:
            end_date = start_date
        # Google all-day end dates are exclusive
        return {"date": start_date.isoformat()}, {"date": (end_date + timedelta(days=1)).isoformat()}

    start_dt = _localize(start, time_zone)
    if start_dt is None:
        raise MappingError(f"Unparsable date {start!r}")
    end_dt = _localize(end, time_zone) if _has_time(end) else None
    if end_dt is None or end_dt < start_dt:
        end_dt = start_dt + DEFAULT_EVENT_DURATION

    start_obj = {"dateTime": start_dt.isoformat()}
    end_obj = {"dateTime": end_dt.isoformat()}
    if time_zone:
        start_obj["timeZone"] = time_zone
        end_obj["timeZone"] = time_zone
    return start_obj, end_obj


def to_calendar_event(
    page: Dict[str, Any],
    date_field: str,
    description_property: Optional[str] = DEFAULT_DESCRIPTION_PROPERTY,
    existing_description: str = "",
) -> Dict[str, Any]:
    """
    Build a Google Calendar event body from a Notion page.

    The description is the page's description followed by a marker line with
    the page id and URL, which is how the event is linked back to the page.
    Without a description property, `existing_description` (the event's own
    text, marker stripped) is kept instead.
    Raises MappingError only when the page has no usable date.
    """
    date_prop = NotionPropertyExtractor.date(page.get('properties') or {}, date_field)
    if date_prop is None:
        raise MappingError(f"Notion page {page.get('id')} has no value for {date_field!r}")

    start, end = _notion_event_times(date_prop)
    description = append_notion_marker(
        _notion_description(page, description_property, existing_description), page['id'], page.get('url')
    )
    return {
        "summary": _title_or_untitled(page),
        "description": description,
        "start": start,
        "end": end,
    }


# ============================================================================
# CALENDAR EVENT -> NOTION PROPERTIES
# ============================================================================

def _calendar_notion_date(event: Dict[str, Any]) -> Dict[str, Optional[str]]:
    start = event.get('start') or {}
    end = event.get('end') or {}

    if start.get('date'):
        start_date = _parse_date(start['date'])
        end_date = _parse_date(end['date']) if end.get('date') else None
        if start_date is None:
            raise MappingError(f"Calendar event {event.get('id')} has an unparsable date")
        # Exclusive Google end -> inclusive Notion end
        last_day = end_date - timedelta(days=1) if end_date else start_date
        if last_day <= start_date:
            return {"start": start_date.isoformat(), "end": None}
        return {"start": start_date.isoformat(), "end": last_day.isoformat()}

    if not start.get('dateTime'):
        raise MappingError(f"Calendar event {event.get('id')} has no start time")
    start_time = start['dateTime']
    end_time = end.get('dateTime')
    if not end_time or parse_timestamp(end_time) == parse_timestamp(start_time):
        return {"start": start_time, "end": None}
    return {"start": start_time, "end": end_time}


def to_notion_properties(
    event: Dict[str, Any],
    date_field: str,
    title_property: str = DEFAULT_TITLE_PROPERTY,
    description_property: Optional[str] = DEFAULT_DESCRIPTION_PROPERTY,
) -> Dict[str, Any]:
    """
    Build Notion page properties from a Google Calendar event.

    The event id goes into the "Google Event ID" property; a Notion marker in
    the event description is not copied into the page.
    """
    date_value = _calendar_notion_date(event)
    properties = {
        title_property: NotionPropertyBuilder.title((event.get('summary') or "").strip() or UNTITLED),
        date_field: NotionPropertyBuilder.date(date_value['start'], date_value['end']),
        GOOGLE_EVENT_ID_PROPERTY: NotionPropertyBuilder.rich_text(event['id']),
    }
    if description_property:
        properties[description_property] = NotionPropertyBuilder.rich_text(
            strip_notion_marker(event.get('description'))
        )
    return properties


def link_back_properties(event_id: str) -> Dict[str, Any]:
    """Properties that record a freshly created event on its source page."""
    return {GOOGLE_EVENT_ID_PROPERTY: NotionPropertyBuilder.rich_text(event_id)}


def link_back_event(event: Dict[str, Any], page: Dict[str, Any]) -> Dict[str, Any]:
    """Event patch that records a freshly created page on its source event."""
    return {"description": append_notion_marker(event.get('description'), page['id'], page.get('url'))}


# ============================================================================
# NORMALIZATION
# ============================================================================

def _set_span(item: SyncItem, start: Dict[str, str], end: Dict[str, str]) -> None:
    if 'date' in start:
        start_date = _parse_date(start['date'])
        end_date = _parse_date(end.get('date', '')) if end.get('date') else None
        if start_date is None:
            return
        end_date = end_date or start_date + timedelta(days=1)
        item.all_day = True
        item.start_key, item.end_key = start_date.isoformat(), end_date.isoformat()
        item.start_ms, item.end_ms = _date_ms(start_date), _date_ms(end_date)
        return

    start_ms = parse_timestamp(start.get('dateTime'))
    if start_ms is None:
        return
    end_ms = parse_timestamp(end.get('dateTime'))
    if end_ms is None:
        end_ms = start_ms + int(DEFAULT_EVENT_DURATION.total_seconds() * 1000)
    item.start_key, item.end_key = start_ms, end_ms
    item.start_ms, item.end_ms = start_ms, end_ms


def normalize_notion_page(
    page: Dict[str, Any],
    date_field: str,
    description_property: Optional[str] = DEFAULT_DESCRIPTION_PROPERTY,
) -> SyncItem:
    props = page.get('properties') or {}
    link_id = (NotionPropertyExtractor.rich_text(props, GOOGLE_EVENT_ID_PROPERTY) or "").strip() or None
    item = SyncItem(
        source=NOTION,
        external_id=page['id'],
        title=_title_or_untitled(page),
        description=_notion_description(page, description_property).strip(),
        last_modified=page.get('last_edited_time'),
        last_modified_ms=parse_timestamp(page.get('last_edited_time')),
        link_id=link_id,
        url=page.get('url'),
        deleted=bool(page.get('archived') or page.get('in_trash')),
        raw=page,
    )
    date_prop = NotionPropertyExtractor.date(props, date_field)
    if date_prop is not None:
        try:
            start, end = _notion_event_times(date_prop)
        except MappingError as e:
            logger.debug(f"Ignoring date of page {page.get('id')}: {e}")
        else:
            _set_span(item, start, end)
    return item


def normalize_calendar_event(event: Dict[str, Any]) -> SyncItem:
    item = SyncItem(
        source=GOOGLE,
        external_id=event['id'],
        title=(event.get('summary') or "").strip() or UNTITLED,
        description=strip_notion_marker(event.get('description')),
        last_modified=event.get('updated'),
        last_modified_ms=parse_timestamp(event.get('updated')),
        link_id=extract_notion_page_id(event.get('description')),
        url=event.get('htmlLink'),
        deleted=event.get('status') == 'cancelled',
        raw=event,
    )
    _set_span(item, event.get('start') or {}, event.get('end') or {})
    return item


def content_matches(
    source: SyncItem,
    target: SyncItem,
    check_link: bool = True,
    compare_description: bool = True,
) -> bool:
    """
    True when writing `source` onto `target` would change nothing.

    With `check_link`, the target must also already point back at the source.
    Pass `compare_description=False` when the database has no description
    property, since the page side then never carries one.
    """
    if check_link and target.link_id != source.external_id:
        return False
    return (
        source.title == target.title
        and (not compare_description or source.description == target.description)
        and source.all_day == target.all_day
        and source.start_key == target.start_key
        and source.end_key == target.end_key
    )
