from typing import Optional
from unittest import TestCase

from syncs.change_detector import Action, detect_changes, is_newer
from syncs.field_mapper import parse_timestamp
from syncs.models import GOOGLE, NOTION, SyncItem


def make_item(
    source: str,
    external_id: str,
    modified: Optional[str] = "2024-06-01T10:00:00Z",
    link_id: Optional[str] = None,
    deleted: bool = False,
) -> SyncItem:
    return SyncItem(
        source=source,
        external_id=external_id,
        title=external_id,
        last_modified=modified,
        last_modified_ms=parse_timestamp(modified),
        link_id=link_id,
        deleted=deleted,
    )


class DetectChangesTests(TestCase):
    def test_unlinked_record_is_created(self) -> None:
        changes = detect_changes([make_item(NOTION, "p1")], [])

        self.assertEqual([c.action for c in changes], [Action.CREATE_ON_B])
        self.assertIsNone(changes[0].counterpart)

    def test_newer_record_updates_counterpart(self) -> None:
        page = make_item(NOTION, "p1", "2024-06-01T12:00:00Z")
        event = make_item(GOOGLE, "e1", "2024-06-01T10:00:00Z", link_id="p1")

        changes = detect_changes([page], [event])

        self.assertEqual(changes[0].action, Action.UPDATE_ON_B)
        self.assertIs(changes[0].counterpart, event)

    def test_older_record_is_skipped(self) -> None:
        page = make_item(NOTION, "p1", "2024-06-01T09:00:00Z")
        event = make_item(GOOGLE, "e1", "2024-06-01T10:00:00Z", link_id="p1")

        self.assertEqual(detect_changes([page], [event])[0].action, Action.SKIP)

    def test_equal_timestamps_are_skipped(self) -> None:
        page = make_item(NOTION, "p1")
        event = make_item(GOOGLE, "e1", link_id="p1")

        self.assertEqual(detect_changes([page], [event])[0].action, Action.SKIP)

    def test_match_through_link_on_either_side(self) -> None:
        event = make_item(GOOGLE, "e1", "2024-06-01T12:00:00Z", link_id=None)
        page = make_item(NOTION, "p1", "2024-06-01T10:00:00Z", link_id="e1")

        changes = detect_changes([event], [page])

        self.assertEqual(changes[0].action, Action.UPDATE_ON_B)
        self.assertIs(changes[0].counterpart, page)

    def test_unparsable_timestamp_never_wins(self) -> None:
        page = make_item(NOTION, "p1", "not a date")
        event = make_item(GOOGLE, "e1", "2024-06-01T10:00:00Z", link_id="p1")

        self.assertEqual(detect_changes([page], [event])[0].action, Action.SKIP)
        self.assertEqual(detect_changes([event], [page])[0].action, Action.UPDATE_ON_B)

    def test_deleted_records_are_ignored(self) -> None:
        cancelled = make_item(GOOGLE, "e1", link_id="p1", deleted=True)
        archived = make_item(NOTION, "p2", deleted=True)

        self.assertEqual(detect_changes([cancelled], []), [])
        self.assertEqual(detect_changes([archived], []), [])

    def test_deleted_counterpart_counts_as_missing(self) -> None:
        page = make_item(NOTION, "p1")
        cancelled = make_item(GOOGLE, "e1", link_id="p1", deleted=True)

        self.assertEqual(detect_changes([page], [cancelled])[0].action, Action.CREATE_ON_B)

    def test_duplicate_links_use_first_record(self) -> None:
        page = make_item(NOTION, "p1", "2024-06-01T12:00:00Z")
        first = make_item(GOOGLE, "e1", link_id="p1")
        second = make_item(GOOGLE, "e2", link_id="p1")

        with self.assertLogs("ChangeDetector", level="WARNING"):
            changes = detect_changes([page], [first, second])

        self.assertIs(changes[0].counterpart, first)


class IsNewerTests(TestCase):
    def test_missing_timestamps(self) -> None:
        dated = make_item(NOTION, "p1")
        undated = make_item(GOOGLE, "e1", None)

        self.assertTrue(is_newer(dated, undated))
        self.assertFalse(is_newer(undated, dated))
        self.assertFalse(is_newer(undated, undated))


if __name__ == "__main__":
    import unittest

    unittest.main()
