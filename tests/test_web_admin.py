import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from focuscal.errors import AuthError, SyncInProgressError
from focuscal.models import STATUS_COMPLETED, CalendarEvent, SyncResult
from focuscal.web_admin import create_app


START = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["FOCUSCAL_CONFIG_PATH"] = self.config_path
        os.environ["FOCUSCAL_STATE_PATH"] = self.state_path
        self.app = create_app()
        self.context = self.app.state.context
        self.client = TestClient(self.app)

        seed_payload = {
            "provider": {"kind": "microsoft", "app_token": "app-secret"},
            "sync": {"window_days": 7, "interval_seconds": 300},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _create_event(self, subject: str = "Focus block") -> dict:
        resp = self.client.post(
            "/api/events",
            json={
                "user_id": "alice",
                "event": {
                    "subject": subject,
                    "start": START.isoformat(),
                    "end": (START + timedelta(hours=1)).isoformat(),
                },
            },
        )
        self.assertEqual(resp.status_code, 200)
        return resp.json()["event"]

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_masks_app_token(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["provider"]["app_token"], "***")

    def test_put_config_masked_secret_does_not_override(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"provider": {"app_token": "***", "page_size": 10}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["provider"]["page_size"], 10)
        self.assertEqual(self.context.config_manager.load().provider.app_token, "app-secret")

    def test_put_config_non_secret_fields_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": 600}}})
        self.assertEqual(resp.status_code, 200)
        sync = resp.json()["config"]["sync"]
        self.assertEqual(sync["interval_seconds"], 600)
        self.assertEqual(sync["window_days"], 7)

    def test_tokens_can_be_registered_and_removed(self) -> None:
        resp = self.client.put("/api/tokens/alice", json={"access_token": "tok", "expires_at": "2030-01-01T00:00:00Z"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.context.state_store.get_provider_token("alice")["access_token"], "tok")
        bad = self.client.put("/api/tokens/alice", json={"access_token": "tok", "expires_at": "soon"})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(self.client.delete("/api/tokens/alice").status_code, 200)
        self.assertEqual(self.client.delete("/api/tokens/alice").status_code, 404)

    def test_sync_run_returns_result(self) -> None:
        result = SyncResult(status=STATUS_COMPLETED, mode="full", user_id="alice", calendar_id="default", created=2)
        with mock.patch.object(self.context.sync_engine, "trigger_sync", return_value=result) as trigger:
            resp = self.client.post("/api/sync/run", json={"user_id": "alice", "mode": "full"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["created"], 2)
        trigger.assert_called_once_with("alice", "default", "full", "pull", trigger="api", timeout_seconds=None)

    def test_sync_run_maps_errors(self) -> None:
        cases = [
            (AuthError("expired", status_code=401), 401),
            (SyncInProgressError("busy"), 409),
            (ValueError("Unsupported sync mode: sideways"), 400),
        ]
        for exc, status in cases:
            with mock.patch.object(self.context.sync_engine, "trigger_sync", side_effect=exc):
                resp = self.client.post("/api/sync/run", json={"user_id": "alice"})
            self.assertEqual(resp.status_code, status)

    def test_sync_without_token_is_unauthorized(self) -> None:
        resp = self.client.post("/api/sync/run", json={"user_id": "nobody", "mode": "full"})
        self.assertEqual(resp.status_code, 401)
        status = self.client.get("/api/sync/status", params={"user_id": "nobody"})
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json()["state"]["status"], "FAILED")
        self.assertFalse(status.json()["state"]["has_delta_token"])

    def test_cancel_sync_reports_whether_a_pass_was_running(self) -> None:
        idle = self.client.delete("/api/sync/run", params={"user_id": "alice"})
        self.assertEqual(idle.status_code, 404)
        with mock.patch.object(self.context.sync_engine, "cancel_sync", return_value=True) as cancel:
            resp = self.client.delete("/api/sync/run", params={"user_id": "alice", "calendar_id": "work"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"message": "sync cancelled"})
        cancel.assert_called_once_with("alice", "work")

    def test_sync_status_and_state_for_unknown_calendar(self) -> None:
        self.assertEqual(self.client.get("/api/sync/status", params={"user_id": "alice"}).status_code, 404)
        self.assertEqual(self.client.delete("/api/sync/state", params={"user_id": "alice"}).status_code, 404)

    def test_batch_requires_users(self) -> None:
        resp = self.client.post("/api/sync/batch", json={"user_ids": []})
        self.assertEqual(resp.status_code, 400)

    def test_events_create_list_and_update(self) -> None:
        created = self._create_event()
        self.assertTrue(created["locally_modified"])
        self.assertIsNone(created["remote_id"])

        listed = self.client.get("/api/events", params={"user_id": "alice"}).json()["events"]
        self.assertEqual([e["id"] for e in listed], [created["id"]])

        resp = self.client.put(f"/api/events/{created['id']}", json={"changes": {"subject": "Deep work"}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["event"]["subject"], "Deep work")

        bad = self.client.put(f"/api/events/{created['id']}", json={"changes": {"end": "2000-01-01T00:00:00Z"}})
        self.assertEqual(bad.status_code, 400)
        missing = self.client.put("/api/events/nope", json={"changes": {"subject": "x"}})
        self.assertEqual(missing.status_code, 404)

        actions = [e["action"] for e in self.client.get("/api/audit/events").json()["events"]]
        self.assertIn("local_event_created", actions)
        self.assertIn("local_event_edited", actions)

    def test_resolve_unknown_conflict_is_404(self) -> None:
        resp = self.client.post("/api/conflicts/missing/resolve", json={"resolution": "use_local"})
        self.assertEqual(resp.status_code, 404)
        bad = self.client.post("/api/conflicts/missing/resolve", json={"resolution": "keep_both"})
        self.assertEqual(bad.status_code, 400)

    def test_auto_resolve_uses_engine_recommendation(self) -> None:
        missing = self.client.post("/api/conflicts/missing/auto-resolve")
        self.assertEqual(missing.status_code, 404)
        event = CalendarEvent(
            user_id="alice", calendar_id="default", subject="Standup", start=START, end=START + timedelta(minutes=15)
        )
        with mock.patch.object(self.context.sync_engine, "auto_resolve_conflict", return_value=event) as resolve:
            resp = self.client.post("/api/conflicts/c-1/auto-resolve")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["event"]["subject"], "Standup")
        resolve.assert_called_once_with("c-1")

    def test_conflict_listing_and_stats_start_empty(self) -> None:
        self.assertEqual(self.client.get("/api/conflicts", params={"user_id": "alice"}).json(), {"conflicts": []})
        stats = self.client.get("/api/conflicts/stats", params={"user_id": "alice"}).json()
        self.assertEqual(stats["open"], 0)
        self.assertEqual(self.client.get("/api/sync/history").json(), {"runs": []})


if __name__ == "__main__":
    unittest.main()
