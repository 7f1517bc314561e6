import tempfile
import threading
import time
import unittest
from pathlib import Path

from browserq.models import JobResult
from browserq.tasks import TaskTracker


class TaskTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tracker = TaskTracker(Path(self._tmp.name))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_single_job_task_lifecycle(self) -> None:
        self.tracker.register("t1")
        self.assertEqual(self.tracker.get_status("t1").status, "PENDING")
        self.tracker.job_started("t1", "j1")
        self.assertEqual(self.tracker.get_status("t1").status, "RUNNING")
        status = self.tracker.job_finished("t1", "j1", JobResult(success=True, data={"ok": 1}, duration=9))
        self.assertEqual(status.status, "SUCCEEDED")
        self.assertEqual(status.current_step, 1)
        self.assertEqual(status.last_result["data"], {"ok": 1})

    def test_two_step_task_stays_running_after_first_step(self) -> None:
        self.tracker.register("t2", total_steps=2)
        self.tracker.job_started("t2", "a")
        self.assertEqual(self.tracker.job_finished("t2", "a", JobResult(success=True)).status, "RUNNING")
        self.tracker.job_started("t2", "b")
        final = self.tracker.job_finished("t2", "b", JobResult(success=True))
        self.assertEqual(final.status, "SUCCEEDED")
        self.assertEqual(final.job_ids, ["a", "b"])

    def test_register_never_shrinks_step_count(self) -> None:
        self.tracker.register("t", total_steps=2)
        self.tracker.register("t")
        self.assertEqual(self.tracker.get_status("t").total_steps, 2)

    def test_terminal_status_is_final(self) -> None:
        self.tracker.register("t3")
        self.tracker.job_finished("t3", "a", JobResult.failure("TimeoutError: slow"))
        after = self.tracker.job_finished("t3", "b", JobResult(success=True))
        self.assertEqual(after.status, "FAILED")
        self.assertEqual(after.error, "TimeoutError: slow")
        self.assertEqual(self.tracker.cancel("t3").error, "TimeoutError: slow")

    def test_cancel_resolves_as_failed(self) -> None:
        self.tracker.register("t4")
        status = self.tracker.cancel("t4")
        self.assertEqual(status.status, "FAILED")
        self.assertEqual(status.error, "cancelled")

    def test_subscriber_sees_terminal_event_and_stream_ends(self) -> None:
        self.tracker.register("t5")
        received = []

        def consume() -> None:
            for event in self.tracker.subscribe("t5", poll_interval=0.01, timeout=5):
                received.append(event)

        thread = threading.Thread(target=consume)
        thread.start()
        time.sleep(0.05)
        self.tracker.job_started("t5", "j")
        self.tracker.job_finished("t5", "j", JobResult(success=True, duration=4))
        thread.join(timeout=5)
        self.assertFalse(thread.is_alive())
        self.assertEqual([e.status for e in received], ["PENDING", "RUNNING", "SUCCEEDED"])
        self.assertTrue(received[-1].is_terminal)

    def test_late_subscriber_still_gets_terminal_event(self) -> None:
        self.tracker.register("t6")
        self.tracker.job_finished("t6", "j", JobResult(success=True))
        events = list(self.tracker.subscribe("t6", poll_interval=0.01, timeout=1))
        self.assertEqual(events[-1].status, "SUCCEEDED")

    def test_heartbeat_yields_none_while_idle(self) -> None:
        self.tracker.register("t7")
        feed = self.tracker.subscribe("t7", poll_interval=0.01, heartbeat=0.02, timeout=1)
        self.assertEqual(next(feed).status, "PENDING")
        self.assertIsNone(next(feed))

    def test_unknown_task_has_no_status(self) -> None:
        self.assertIsNone(self.tracker.get_status("nope"))
        with self.assertRaises(ValueError):
            self.tracker.get_status("../etc")


if __name__ == "__main__":
    unittest.main()
