import threading
import unittest
from unittest import mock

from focuscal.errors import AuthError
from focuscal.models import AppConfig
from focuscal.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = AppConfig.from_dict(
            {
                "sync": {
                    "targets": [
                        {"user_id": "alice", "calendar_id": "default"},
                        {"user_id": "bob", "calendar_id": "default"},
                        {"user_id": "carol", "calendar_id": "work"},
                    ]
                }
            }
        )
        self.engine = mock.Mock()

    def test_run_targets_continues_after_failures(self) -> None:
        self.engine.trigger_sync.side_effect = [AuthError("expired"), RuntimeError("db locked"), mock.Mock()]
        scheduler = SyncScheduler(self.engine, self.config_manager)

        with self.assertLogs("focuscal.scheduler", level="WARNING"):
            completed = scheduler.run_targets(trigger="scheduled")

        self.assertEqual(completed, 1)
        self.assertEqual(
            [c.args[:3] for c in self.engine.trigger_sync.call_args_list],
            [("alice", "default", "delta"), ("bob", "default", "delta"), ("carol", "work", "delta")],
        )
        self.assertEqual(self.engine.trigger_sync.call_args.kwargs["trigger"], "scheduled")

    def test_start_runs_startup_pass_and_stop_joins(self) -> None:
        started = threading.Event()
        self.engine.trigger_sync.side_effect = lambda *args, **kwargs: started.set()
        scheduler = SyncScheduler(self.engine, self.config_manager)
        scheduler.start()
        self.assertTrue(started.wait(timeout=5))
        scheduler.stop()

        self.assertFalse(scheduler._thread.is_alive())
        self.assertGreaterEqual(self.engine.trigger_sync.call_count, 1)
        self.assertEqual(self.engine.trigger_sync.call_args_list[0].kwargs["trigger"], "startup")


if __name__ == "__main__":
    unittest.main()
