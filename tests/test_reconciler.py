import unittest
from datetime import datetime, timezone

from focuscal.errors import MergeValidationError
from focuscal.models import CONFLICT_BOTH_MODIFIED, CalendarEvent, SyncConflict
from focuscal.reconciler import apply_change, merged_event


def _event(**kwargs) -> CalendarEvent:
    defaults = {
        "user_id": "u",
        "calendar_id": "c",
        "id": "evt-1",
        "remote_id": "r-1",
        "subject": "Old",
        "location": "Office",
        "start": datetime(2026, 2, 27, 9, 0, tzinfo=timezone.utc),
        "end": datetime(2026, 2, 27, 10, 0, tzinfo=timezone.utc),
    }
    defaults.update(kwargs)
    return CalendarEvent(**defaults)


class ReconcilerTests(unittest.TestCase):
    def test_apply_change_success(self) -> None:
        event = _event()
        outcome = apply_change(
            current_event=event,
            change={"subject": "New", "start": "2026-02-27T11:00:00Z", "end": "2026-02-27T12:00:00Z"},
        )
        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.reason, "applied")
        self.assertEqual(outcome.event.subject, "New")
        self.assertEqual(outcome.event.start.hour, 11)
        self.assertEqual(event.subject, "Old")

    def test_apply_change_respects_editable_fields(self) -> None:
        outcome = apply_change(
            current_event=_event(subject="Keep"),
            change={"subject": "Blocked", "start": "2026-02-27T11:00:00Z", "end": "2026-02-27T12:00:00Z"},
            editable_fields=["start", "end"],
        )
        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.event.subject, "Keep")
        self.assertEqual(outcome.event.start.hour, 11)
        self.assertEqual(outcome.blocked_fields, ["subject"])

    def test_invalid_datetime_is_rejected(self) -> None:
        outcome = apply_change(current_event=_event(), change={"start": "not-a-date"})
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, "invalid_datetime")

    def test_end_before_start_is_rejected(self) -> None:
        outcome = apply_change(current_event=_event(), change={"end": "2026-02-27T08:00:00Z"})
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, "invalid_range")

    def test_same_values_are_no_changes(self) -> None:
        outcome = apply_change(current_event=_event(), change={"subject": "Old", "categories": []})
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, "no_changes")


class MergedEventTests(unittest.TestCase):
    def setUp(self) -> None:
        self.local = _event(subject="Daily Standup", location="Room 1")
        remote = _event(subject="Team Standup", location="Room 2")
        self.conflict = SyncConflict(
            event_id="evt-1",
            user_id="u",
            calendar_id="c",
            type=CONFLICT_BOTH_MODIFIED,
            fields=["subject", "location"],
            local_version=self.local.content(),
            remote_version=remote.content(),
            id="conf-1",
        )

    def test_merge_uses_payload_over_local_snapshot(self) -> None:
        merged = merged_event(self.conflict, self.local, {"subject": "Standup", "location": "Room 2"})
        self.assertEqual(merged.subject, "Standup")
        self.assertEqual(merged.location, "Room 2")
        self.assertEqual(merged.id, "evt-1")
        self.assertEqual(merged.remote_id, "r-1")

    def test_merge_must_name_every_conflicting_field(self) -> None:
        with self.assertRaises(MergeValidationError):
            merged_event(self.conflict, self.local, {"subject": "Standup"})

    def test_merge_rejects_unknown_and_empty_payloads(self) -> None:
        with self.assertRaises(MergeValidationError):
            merged_event(self.conflict, self.local, {})
        with self.assertRaises(MergeValidationError):
            merged_event(self.conflict, self.local, {"subject": "x", "location": "y", "color": "red"})

    def test_merge_rejects_invalid_values(self) -> None:
        with self.assertRaises(MergeValidationError):
            merged_event(
                self.conflict,
                self.local,
                {"subject": "x", "location": "y", "end": "2026-02-27T07:00:00Z"},
            )


if __name__ == "__main__":
    unittest.main()
