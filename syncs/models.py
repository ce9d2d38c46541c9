"""Shared data classes for the sync engine."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

FULL_POLL_JOB = "full-poll"

NOTION = "notion"
GOOGLE = "google"


@dataclass(frozen=True)
class SyncPair:
    """One linked Notion database and Google Calendar."""
    notion_database_id: str
    google_calendar_id: str

    @property
    def pair_key(self) -> str:
        return f"{self.notion_database_id}:{self.google_calendar_id}"

    @classmethod
    def from_key(cls, pair_key: str) -> "SyncPair":
        # Calendar ids are email-like and never contain ':'; Notion ids never do either
        notion_database_id, sep, google_calendar_id = pair_key.partition(":")
        if not sep or not notion_database_id or not google_calendar_id:
            raise ValueError(f"Invalid pair key: {pair_key!r}")
        return cls(notion_database_id, google_calendar_id)

    def to_dict(self) -> Dict[str, str]:
        return {
            "notion_database_id": self.notion_database_id,
            "google_calendar_id": self.google_calendar_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "SyncPair":
        return cls(data["notion_database_id"], data["google_calendar_id"])


@dataclass
class SyncItem:
    """
    A Notion page or Calendar event normalized for comparison.

    `start_key`/`end_key` are comparable values: ISO dates for all-day items
    (end exclusive), epoch milliseconds for timed items. `start_ms`/`end_ms`
    are always epoch milliseconds (all-day dates at UTC midnight) and are used
    for window checks only.
    """
    source: str
    external_id: str
    title: str
    description: str = ""
    all_day: bool = False
    start_key: Any = None
    end_key: Any = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    last_modified: Optional[str] = None
    last_modified_ms: Optional[int] = None
    link_id: Optional[str] = None
    url: Optional[str] = None
    deleted: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def overlaps(self, window_min_ms: int, window_max_ms: int) -> bool:
        if self.start_ms is None:
            return False
        end_ms = self.end_ms if self.end_ms is not None else self.start_ms
        return self.start_ms <= window_max_ms and end_ms >= window_min_ms


@dataclass
class SyncCounts:
    """Per-direction outcome counts of one reconciliation pass."""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.skipped

    def to_dict(self) -> Dict:
        return {
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'errors': self.errors,
            'total_processed': self.total_processed
        }


@dataclass
class SyncResult:
    """Result of one bidirectional pass over a pair."""
    pair_key: str
    notion_to_google: SyncCounts = field(default_factory=SyncCounts)
    google_to_notion: SyncCounts = field(default_factory=SyncCounts)
    notion_count: int = 0
    calendar_count: int = 0
    elapsed_seconds: float = 0.0
    item_errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.item_errors

    def to_dict(self) -> Dict:
        return {
            'pair_key': self.pair_key,
            'success': self.success,
            'notion_to_google': self.notion_to_google.to_dict(),
            'google_to_notion': self.google_to_notion.to_dict(),
            'notion_count': self.notion_count,
            'calendar_count': self.calendar_count,
            'elapsed_seconds': round(self.elapsed_seconds, 2),
            'item_errors': list(self.item_errors),
        }
