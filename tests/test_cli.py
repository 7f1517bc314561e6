import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from browserq.cli import _load_json_arg, _parse_file_args, logs_command, main
from browserq.models import JobResult, SessionBundle
from browserq.queue import JobQueue
from browserq.sessions import SessionStore


class CLITests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *argv: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            main(["--home", str(self.root), *argv])
        return buf.getvalue()

    def test_enqueue_then_status_and_job(self) -> None:
        out = self._run("enqueue", "navigate", "--payload", '{"url": "https://x.test"}', "--task-id", "t1")
        job_id = json.loads(out)["jobId"]

        status = json.loads(self._run("status", "t1"))
        self.assertEqual(status["status"], "PENDING")
        self.assertEqual(status["jobIds"], [job_id])

        job = json.loads(self._run("job", job_id))
        self.assertEqual(job["state"], "pending")
        self.assertEqual(job["payload"]["url"], "https://x.test")

        stats = json.loads(self._run("stats"))
        self.assertEqual(stats["pending"], 1)

    def test_enqueue_wait_exits_nonzero_on_failed_result(self) -> None:
        queue = JobQueue(self.root)
        # A result already on disk lets --wait return without a worker.
        original_enqueue = JobQueue.enqueue

        def enqueue_and_fail(self_queue, job_type, payload, **kwargs):
            job_id = original_enqueue(self_queue, job_type, payload, **kwargs)
            self_queue.complete(job_id, JobResult.failure("TimeoutError: slow"))
            return job_id

        buf = io.StringIO()
        with patch.object(JobQueue, "enqueue", autospec=True, side_effect=enqueue_and_fail):
            with redirect_stdout(buf), self.assertRaises(SystemExit) as ctx:
                main(
                    [
                        "--home",
                        str(self.root),
                        "enqueue",
                        "navigate",
                        "--payload",
                        '{"url": "https://x.test"}',
                        "--wait",
                        "--timeout",
                        "2",
                    ]
                )
        self.assertEqual(ctx.exception.code, 1)
        self.assertEqual(json.loads(buf.getvalue())["error"], "TimeoutError: slow")
        self.assertEqual(queue.stats()["failed"], 1)

    def test_enqueue_rejects_invalid_payload(self) -> None:
        with self.assertRaises(SystemExit) as ctx:
            self._run("enqueue", "click", "--payload", '{"url": "https://x.test"}')
        self.assertIn("selector", str(ctx.exception.code))

    def test_unknown_task_and_job_exit(self) -> None:
        with self.assertRaises(SystemExit):
            self._run("status", "missing")
        with self.assertRaises(SystemExit):
            self._run("job", "missing")

    def test_payload_from_file(self) -> None:
        path = self.root / "payload.json"
        path.write_text('{"url": "https://x.test", "fullPage": true}', encoding="utf-8")
        self.assertTrue(_load_json_arg(f"@{path}", flag="--payload")["fullPage"])
        with self.assertRaises(SystemExit):
            _load_json_arg("[1, 2]", flag="--payload")
        with self.assertRaises(SystemExit):
            _load_json_arg("@/nonexistent/payload.json", flag="--payload")

    def test_file_args_need_key_and_path(self) -> None:
        files = _parse_file_args(["resume=cv.pdf"])
        self.assertTrue(files["resume"].endswith("cv.pdf"))
        self.assertTrue(Path(files["resume"]).is_absolute())
        with self.assertRaises(SystemExit):
            _parse_file_args(["resume"])

    def test_logs_command_prints_component_headers(self) -> None:
        with self.assertRaises(SystemExit):
            logs_command(self.root, 10)
        self._run("enqueue", "navigate", "--payload", '{"url": "https://x.test"}')
        buf = io.StringIO()
        with redirect_stdout(buf):
            logs_command(self.root, 10)
        out = buf.getvalue()
        self.assertIn("==> queue.log <==", out)
        self.assertIn("enqueue job=", out)

    def test_purge_sessions(self) -> None:
        store = SessionStore(self.root, ttl_seconds=60)
        store.store(
            SessionBundle.from_dict(
                {"cookies": [], "localStorage": {}, "sessionStorage": {}, "url": "https://x.test", "expiresAt": 1000}
            )
        )
        self.assertEqual(self._run("purge-sessions").strip(), "removed=1")


if __name__ == "__main__":
    unittest.main()
