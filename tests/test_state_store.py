import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from focuscal.errors import SyncLeaseLostError
from focuscal.models import (
    CONFLICT_TITLE,
    MODE_FULL,
    RESOLUTION_USE_REMOTE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    CalendarEvent,
    SyncConflict,
    SyncResult,
)
from focuscal.state_store import StateStore


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "nested" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _insert(self, remote_id: str = "r-1", **kwargs) -> CalendarEvent:
        return self.store.insert_event(
            CalendarEvent(
                user_id="u",
                calendar_id="c",
                remote_id=remote_id,
                subject="Standup",
                start=START,
                end=START + timedelta(minutes=15),
                **kwargs,
            )
        )

    def test_event_round_trip_and_lookup(self) -> None:
        stored = self._insert(categories=["work"], etag="etag-1")
        self.assertTrue(stored.id)

        by_id = self.store.find_event(stored.id)
        by_remote = self.store.find_by_remote_id("u", "c", "r-1")
        self.assertEqual(by_id.content(), stored.content())
        self.assertEqual(by_remote.id, stored.id)
        self.assertEqual(by_remote.etag, "etag-1")
        self.assertIsNone(self.store.find_by_remote_id("u", "other", "r-1"))

        by_id.subject = "Renamed"
        by_id.locally_modified = True
        self.store.save_event(by_id)
        reloaded = self.store.find_event(stored.id)
        self.assertEqual(reloaded.subject, "Renamed")
        self.assertTrue(reloaded.locally_modified)

        self.assertTrue(self.store.delete_event(stored.id))
        self.assertIsNone(self.store.find_event(stored.id))
        with self.assertRaises(KeyError):
            self.store.save_event(reloaded)

    def test_begin_sync_pass_is_exclusive_until_lease_expires(self) -> None:
        self.assertTrue(self.store.begin_sync_pass("u", "c", lease_seconds=900))
        self.assertFalse(self.store.begin_sync_pass("u", "c", lease_seconds=900))
        self.assertEqual(self.store.get_sync_state("u", "c").status, STATUS_IN_PROGRESS)

        self.store.finish_sync_pass("u", "c", status=STATUS_FAILED, result=None, error="boom")
        self.assertTrue(self.store.begin_sync_pass("u", "c", lease_seconds=900))

    def _expire_lease(self, user_id: str, calendar_id: str) -> None:
        stale = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
        with self.store._connect() as conn:
            conn.execute(
                "UPDATE sync_states SET started_at = ? WHERE user_id = ? AND calendar_id = ?",
                (stale, user_id, calendar_id),
            )

    def test_stale_owner_cannot_finish_over_new_owner(self) -> None:
        result = SyncResult(status=STATUS_COMPLETED, mode=MODE_FULL, user_id="u", calendar_id="c")
        stale_lease = self.store.begin_sync_pass("u", "c", lease_seconds=900)
        self._expire_lease("u", "c")
        fresh_lease = self.store.begin_sync_pass("u", "c", lease_seconds=900)
        self.assertIsNotNone(fresh_lease)
        self.assertNotEqual(stale_lease, fresh_lease)

        self.assertFalse(self.store.renew_sync_lease("u", "c", stale_lease))
        self.assertTrue(self.store.renew_sync_lease("u", "c", fresh_lease))
        with self.assertRaises(SyncLeaseLostError):
            self.store.finish_sync_pass(
                "u", "c", status=STATUS_COMPLETED, result=result, delta_token="stale", lease_id=stale_lease
            )
        state = self.store.get_sync_state("u", "c")
        self.assertEqual(state.status, STATUS_IN_PROGRESS)
        self.assertIsNone(state.delta_token)

        state = self.store.finish_sync_pass(
            "u", "c", status=STATUS_COMPLETED, result=result, delta_token="fresh", lease_id=fresh_lease
        )
        self.assertEqual(state.status, STATUS_COMPLETED)
        self.assertEqual(state.delta_token, "fresh")
        with self.assertRaises(SyncLeaseLostError):
            self.store.finish_sync_pass("u", "c", status=STATUS_FAILED, result=None, error="late", lease_id=stale_lease)
        self.assertEqual(self.store.get_sync_state("u", "c").status, STATUS_COMPLETED)

    def test_cancel_revokes_the_running_lease(self) -> None:
        self.assertFalse(self.store.cancel_sync_pass("u", "c"))
        lease = self.store.begin_sync_pass("u", "c", lease_seconds=900)

        self.assertTrue(self.store.cancel_sync_pass("u", "c"))
        state = self.store.get_sync_state("u", "c")
        self.assertEqual(state.status, STATUS_FAILED)
        self.assertEqual(state.last_error, "Cancelled by user")
        self.assertIsNone(state.started_at)
        self.assertFalse(self.store.renew_sync_lease("u", "c", lease))
        with self.assertRaises(SyncLeaseLostError):
            self.store.finish_sync_pass("u", "c", status=STATUS_COMPLETED, result=None, delta_token="t", lease_id=lease)
        self.assertIsNone(self.store.get_sync_state("u", "c").delta_token)
        self.assertFalse(self.store.cancel_sync_pass("u", "c"))

    def test_finish_only_moves_token_on_completion(self) -> None:
        self._insert()
        result = SyncResult(status=STATUS_COMPLETED, mode=MODE_FULL, user_id="u", calendar_id="c", created=1)

        self.store.begin_sync_pass("u", "c", lease_seconds=900)
        state = self.store.finish_sync_pass(
            "u", "c", status=STATUS_COMPLETED, result=result, delta_token="t1", full_sync=True
        )
        self.assertEqual(state.delta_token, "t1")
        self.assertEqual(state.total_events, 1)
        self.assertEqual(state.synced_events, 1)
        self.assertIsNotNone(state.last_full_sync)
        self.assertIsNone(state.last_delta_sync)

        self.store.begin_sync_pass("u", "c", lease_seconds=900)
        state = self.store.finish_sync_pass(
            "u", "c", status=STATUS_FAILED, result=result, delta_token="t2", error="boom"
        )
        self.assertEqual(state.delta_token, "t1")
        self.assertEqual(state.status, STATUS_FAILED)
        self.assertEqual(state.last_error, "boom")
        self.assertIsNone(state.started_at)

        self.assertTrue(self.store.delete_sync_state("u", "c"))
        self.assertIsNone(self.store.get_sync_state("u", "c"))

    def test_conflicts_are_archived_when_resolved(self) -> None:
        event = self._insert()
        conflict = self.store.save_conflict(
            SyncConflict(
                event_id=event.id,
                user_id="u",
                calendar_id="c",
                type=CONFLICT_TITLE,
                fields=["subject"],
                local_version=event.content(),
                remote_version=dict(event.content(), subject="Team Standup"),
                remote_etag="etag-2",
            )
        )
        self.assertTrue(conflict.id)
        self.assertEqual(self.store.find_open_conflict(event.id).id, conflict.id)
        self.assertEqual(len(self.store.list_open_conflicts("u")), 1)
        self.assertEqual(self.store.conflict_stats("u")["by_type"], {CONFLICT_TITLE: 1})

        conflict.resolution = RESOLUTION_USE_REMOTE
        conflict.resolved_at = datetime.now(timezone.utc)
        self.store.save_conflict(conflict)

        self.assertIsNone(self.store.find_open_conflict(event.id))
        self.assertEqual(self.store.list_open_conflicts("u", "c"), [])
        archived = self.store.get_conflict(conflict.id)
        self.assertFalse(archived.is_open)
        self.assertEqual(archived.remote_version["subject"], "Team Standup")
        stats = self.store.conflict_stats("u")
        self.assertEqual(stats["open"], 0)
        self.assertEqual(stats["by_resolution"], {RESOLUTION_USE_REMOTE: 1})

    def test_runs_audit_and_tokens(self) -> None:
        run_id = self.store.record_sync_run(
            SyncResult(status=STATUS_COMPLETED, mode=MODE_FULL, user_id="u", calendar_id="c", created=2)
        )
        runs = self.store.recent_sync_runs(limit=5, user_id="u")
        self.assertEqual(runs[0]["id"], run_id)
        self.assertEqual(runs[0]["created"], 2)

        self.store.record_audit_event(
            user_id="u", calendar_id="c", subject_id="conf-1", action="conflict_detected", details={"type": "TITLE"}
        )
        events = self.store.recent_audit_events(user_id="u")
        self.assertEqual(events[0]["details"], {"type": "TITLE"})

        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        self.store.set_provider_token("u", "access-1", expires)
        token = self.store.get_provider_token("u")
        self.assertEqual(token["access_token"], "access-1")
        self.assertEqual(token["expires_at"], expires)
        self.assertTrue(self.store.delete_provider_token("u"))
        self.assertIsNone(self.store.get_provider_token("u"))


if __name__ == "__main__":
    unittest.main()
