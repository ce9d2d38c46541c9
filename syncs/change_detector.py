"""
Change detection for one direction of a pair.

Given every live record on side A and side B, decide per A record whether
B needs a create, an update, or nothing. Records are correlated through link
markers only; conflicts are last-write-wins on the whole-record modification
time. Nothing is ever deleted.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from syncs.models import SyncItem

logger = logging.getLogger("ChangeDetector")


class Action(Enum):
    CREATE_ON_B = "create"
    UPDATE_ON_B = "update"
    SKIP = "skip"


@dataclass
class Change:
    action: Action
    item: SyncItem
    counterpart: Optional[SyncItem] = None


def live(items: Iterable[SyncItem]) -> List[SyncItem]:
    """Drop cancelled events and archived pages; they are treated as non-existent."""
    return [item for item in items if not item.deleted]


def index_by_link(items: Iterable[SyncItem]) -> Dict[str, SyncItem]:
    """Map counterpart id -> record for every record carrying a link."""
    index: Dict[str, SyncItem] = {}
    for item in items:
        if not item.link_id:
            continue
        if item.link_id in index:
            logger.warning(
                f"{item.source} records {index[item.link_id].external_id} and {item.external_id} "
                f"both link to {item.link_id}; using the first"
            )
            continue
        index[item.link_id] = item
    return index


def is_newer(a: SyncItem, b: SyncItem) -> bool:
    """
    Strictly newer by modification time.

    A record without a parsable timestamp never wins; against such a record
    any parsable timestamp does.
    """
    if a.last_modified_ms is None:
        return False
    if b.last_modified_ms is None:
        return True
    return a.last_modified_ms > b.last_modified_ms


def find_counterpart(
    item: SyncItem,
    linked_from_b: Dict[str, SyncItem],
    b_by_id: Dict[str, SyncItem],
) -> Optional[SyncItem]:
    """B record linking to `item`, else the B record `item` links to."""
    match = linked_from_b.get(item.external_id)
    if match is None and item.link_id:
        match = b_by_id.get(item.link_id)
    return match


def detect_changes(side_a: Iterable[SyncItem], side_b: Iterable[SyncItem]) -> List[Change]:
    """Classify every live A record as CREATE_ON_B, UPDATE_ON_B or SKIP."""
    b_items = live(side_b)
    linked_from_b = index_by_link(b_items)
    b_by_id = {item.external_id: item for item in b_items}

    changes = []
    for item in live(side_a):
        counterpart = find_counterpart(item, linked_from_b, b_by_id)
        if counterpart is None:
            changes.append(Change(Action.CREATE_ON_B, item))
        elif is_newer(item, counterpart):
            changes.append(Change(Action.UPDATE_ON_B, item, counterpart))
        else:
            changes.append(Change(Action.SKIP, item, counterpart))
    return changes
