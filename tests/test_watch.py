import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from browserq.models import JobResult, TaskUpdateEvent
from browserq.tasks import TaskTracker
from browserq.watch import _format_event_line, _watch_loop, watch_command


def _event(status: str, **kwargs) -> TaskUpdateEvent:
    base = {
        "task_id": "t1",
        "status": status,
        "timestamp": "2026-02-15T10:00:00+00:00",
        "current_step": 0,
        "total_steps": 1,
    }
    base.update(kwargs)
    return TaskUpdateEvent(**base)


class WatchTests(unittest.TestCase):
    def test_format_line_includes_step_error_and_duration(self) -> None:
        line = _format_event_line(
            _event(
                "FAILED",
                current_step=1,
                message="job j1 failed",
                error="TimeoutError: slow",
                result={"success": False, "duration": 42},
            )
        )
        self.assertRegex(line, r"^\d\d:\d\d:\d\d FAILED step=1/1 job j1 failed")
        self.assertIn("error=TimeoutError: slow", line)
        self.assertTrue(line.endswith("duration_ms=42"))

    def test_bad_timestamp_is_masked(self) -> None:
        line = _format_event_line(_event("PENDING", timestamp="yesterday"))
        self.assertTrue(line.startswith("--:--:-- PENDING"))

    def test_loop_skips_heartbeats_and_returns_last_event(self) -> None:
        events = [_event("PENDING"), None, _event("SUCCEEDED", current_step=1)]
        buf = io.StringIO()
        with redirect_stdout(buf):
            last = _watch_loop(events=events, json_mode=True)
        lines = [json.loads(line) for line in buf.getvalue().splitlines()]
        self.assertEqual([item["status"] for item in lines], ["PENDING", "SUCCEEDED"])
        self.assertEqual(last.status, "SUCCEEDED")

    def test_watch_command_follows_recorded_task(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tracker = TaskTracker(Path(tmp))
            tracker.register("t1")
            tracker.job_finished("t1", "j1", JobResult(success=True, data={}, duration=5))
            buf = io.StringIO()
            with redirect_stdout(buf):
                last = watch_command("t1", tracker=tracker, interval_ms=50, json_mode=False, timeout=2)
        self.assertEqual(last.status, "SUCCEEDED")
        self.assertEqual(len(buf.getvalue().splitlines()), 2)

    def test_watch_command_rejects_unknown_task_and_fast_interval(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tracker = TaskTracker(Path(tmp))
            with self.assertRaises(SystemExit):
                watch_command("missing", tracker=tracker, interval_ms=100, json_mode=False)
            with self.assertRaises(SystemExit):
                watch_command("missing", tracker=tracker, interval_ms=10, json_mode=False)


if __name__ == "__main__":
    unittest.main()
