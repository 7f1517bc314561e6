"""HTTP surface: job submission, task status and stream, session endpoints."""

from __future__ import annotations

import json
import os
import re
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlparse

from browserq.form_flow import fill_form, public_url
from browserq.forms import match_fields
from browserq.models import PayloadError, SessionBundle, validate_job_payload
from browserq.queue import JobNotFound, JobQueue
from browserq.sessions import (
    SessionNotFound,
    SessionStore,
    render_error_page,
    render_filler_page,
    render_loader_page,
)
from browserq.storage import log_event
from browserq.tasks import TaskTracker

_JOB_RE = re.compile(r"^/jobs/([A-Za-z0-9_-]+)$")
_JOB_CANCEL_RE = re.compile(r"^/jobs/([A-Za-z0-9_-]+)/cancel$")
_JOB_RETRY_RE = re.compile(r"^/jobs/([A-Za-z0-9_-]+)/retry$")
_TASK_RE = re.compile(r"^/tasks/([A-Za-z0-9_-]+)$")
_TASK_EVENTS_RE = re.compile(r"^/tasks/([A-Za-z0-9_-]+)/events$")
_TASK_CANCEL_RE = re.compile(r"^/tasks/([A-Za-z0-9_-]+)/cancel$")
_SESSION_DATA_RE = re.compile(r"^/sessions/([A-Za-z0-9]+)/data$")
_SESSION_LOAD_RE = re.compile(r"^/sessions/([A-Za-z0-9]+)/load$")
_SESSION_FILLER_RE = re.compile(r"^/sessions/([A-Za-z0-9]+)/filler$")
_SESSION_EXTEND_RE = re.compile(r"^/sessions/([A-Za-z0-9]+)/extend$")
_SESSION_RE = re.compile(r"^/sessions/([A-Za-z0-9]+)$")

SSE_HEARTBEAT_SECONDS = 15.0


class _QueueHandler(BaseHTTPRequestHandler):
    server_version = "BrowserQ/0.1"
    server: "QueueServer"

    def _cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, DELETE, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")

    def _send_json(self, status_code: int, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self._cors_headers()
        self.end_headers()
        self.wfile.write(body)

    def _send_html(self, status_code: int, document: str) -> None:
        body = document.encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> Any:
        length = int(self.headers.get("Content-Length", "0") or "0")
        raw = self.rfile.read(length) if length > 0 else b"{}"
        return json.loads(raw.decode("utf-8", errors="replace"))

    def _log(self, message: str) -> None:
        log_event(self.server.queue.root, "server", message)

    def do_OPTIONS(self) -> None:  # noqa: N802
        self._send_json(200, {"ok": True})

    def do_GET(self) -> None:  # noqa: N802
        path = urlparse(self.path).path
        if path == "/health":
            self._send_json(200, {"ok": True, "queue": self.server.queue.stats()})
            return
        if path == "/stats":
            self._send_json(200, self.server.queue.stats())
            return
        match = _JOB_RE.match(path)
        if match:
            self._get_job(match.group(1))
            return
        match = _TASK_EVENTS_RE.match(path)
        if match:
            self._stream_task(match.group(1))
            return
        match = _TASK_RE.match(path)
        if match:
            status = self.server.tracker.get_status(match.group(1))
            if status is None:
                self._send_json(404, {"error": "task_not_found"})
                return
            self._send_json(200, status.to_dict())
            return
        match = _SESSION_DATA_RE.match(path)
        if match:
            try:
                bundle = self.server.sessions.load(match.group(1))
            except SessionNotFound as exc:
                self._send_json(404, {"error": str(exc)})
                return
            self._send_json(200, bundle.to_dict())
            return
        match = _SESSION_LOAD_RE.match(path)
        if match:
            try:
                bundle = self.server.sessions.load(match.group(1))
            except SessionNotFound as exc:
                self._send_html(404, render_error_page(str(exc)))
                return
            filler_url = f"/sessions/{match.group(1)}/filler" if bundle.field_mappings else None
            self._send_html(200, render_loader_page(bundle, filler_url=filler_url))
            return
        match = _SESSION_FILLER_RE.match(path)
        if match:
            try:
                bundle = self.server.sessions.load(match.group(1))
            except SessionNotFound as exc:
                self._send_html(404, render_error_page(str(exc)))
                return
            self._send_html(200, render_filler_page(bundle))
            return
        self._send_json(404, {"error": "not_found"})

    def do_POST(self) -> None:  # noqa: N802
        path = urlparse(self.path).path
        try:
            payload = self._read_json()
        except json.JSONDecodeError:
            self._send_json(400, {"error": "invalid_json"})
            return
        if not isinstance(payload, dict):
            self._send_json(400, {"error": "invalid_payload"})
            return

        if path == "/jobs":
            self._enqueue(payload)
            return
        if path == "/forms/fill":
            self._fill_form(payload)
            return
        if path == "/sessions/store":
            try:
                bundle = SessionBundle.from_dict(payload)
            except (KeyError, ValueError) as exc:
                self._send_json(400, {"error": str(exc)})
                return
            self._send_json(201, {"sessionId": self.server.sessions.store(bundle)})
            return
        match = _SESSION_EXTEND_RE.match(path)
        if match:
            ttl = payload.get("ttlSeconds")
            if ttl is not None and (not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0):
                self._send_json(400, {"error": "'ttlSeconds' must be a positive integer"})
                return
            try:
                bundle = self.server.sessions.extend(match.group(1), ttl)
            except SessionNotFound as exc:
                self._send_json(404, {"error": str(exc)})
                return
            self._send_json(200, {"expiresAt": bundle.expires_at})
            return
        match = _JOB_CANCEL_RE.match(path)
        if match:
            try:
                cancelled = self.server.queue.cancel(match.group(1))
            except JobNotFound:
                self._send_json(404, {"error": "job_not_found"})
                return
            self._send_json(200, {"jobId": match.group(1), "cancelled": cancelled})
            return
        match = _JOB_RETRY_RE.match(path)
        if match:
            try:
                job_id = self.server.queue.retry(match.group(1))
            except JobNotFound:
                self._send_json(404, {"error": "job_not_found"})
                return
            self._send_json(202, {"jobId": job_id, "retryOf": match.group(1)})
            return
        match = _TASK_CANCEL_RE.match(path)
        if match:
            self._cancel_task(match.group(1))
            return
        self._send_json(404, {"error": "not_found"})

    def do_DELETE(self) -> None:  # noqa: N802
        path = urlparse(self.path).path
        match = _SESSION_RE.match(path)
        if not match:
            self._send_json(404, {"error": "not_found"})
            return
        try:
            deleted = self.server.sessions.delete(match.group(1))
        except SessionNotFound as exc:
            self._send_json(404, {"error": str(exc)})
            return
        self._send_json(200 if deleted else 404, {"deleted": deleted})

    def _enqueue(self, payload: dict[str, Any]) -> None:
        job_type = str(payload.get("type", ""))
        task_id = payload.get("taskId")
        if task_id is not None and (not isinstance(task_id, str) or not re.match(r"^[A-Za-z0-9_-]+$", task_id)):
            self._send_json(400, {"error": "'taskId' must be a string of letters, digits, '-' or '_'"})
            return
        total_steps = payload.get("totalSteps", 1)
        if not isinstance(total_steps, int) or isinstance(total_steps, bool) or total_steps < 1:
            self._send_json(400, {"error": "'totalSteps' must be a positive integer"})
            return
        body = {key: value for key, value in payload.items() if key not in {"type", "taskId", "totalSteps"}}
        try:
            validate_job_payload(job_type, body)
        except PayloadError as exc:
            self._send_json(400, {"error": str(exc)})
            return
        # The task must know its step count before a worker can finish the job.
        if task_id:
            self.server.tracker.register(task_id, total_steps=total_steps)
        job_id = self.server.queue.enqueue(job_type, body, task_id=task_id)
        if task_id:
            self.server.tracker.add_job(task_id, job_id)
        self._log(f"accepted job={job_id} type={job_type}")
        self._send_json(202, {"jobId": job_id, "taskId": task_id})

    def _fill_form(self, payload: dict[str, Any]) -> None:
        """Run both form phases and answer with the outcome; blocks this request thread."""
        url = payload.get("url")
        user_data = payload.get("userData", {})
        files = payload.get("files", {})
        if not isinstance(url, str) or not url.strip():
            self._send_json(400, {"error": "'url' must be a non-empty string"})
            return
        if not isinstance(user_data, dict):
            self._send_json(400, {"error": "'userData' must be an object"})
            return
        if not isinstance(files, dict) or any(not isinstance(v, str) for v in files.values()):
            self._send_json(400, {"error": "'files' must map keys to paths"})
            return
        min_confidence = payload.get("minConfidence")
        if min_confidence is not None and (
            not isinstance(min_confidence, (int, float)) or isinstance(min_confidence, bool)
        ):
            self._send_json(400, {"error": "'minConfidence' must be a number"})
            return
        timeout = payload.get("timeout", self.server.form_timeout)
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            self._send_json(400, {"error": "'timeout' must be a positive number of seconds"})
            return
        task_id = payload.get("taskId")
        if task_id is not None and (not isinstance(task_id, str) or not re.match(r"^[A-Za-z0-9_-]+$", task_id)):
            self._send_json(400, {"error": "'taskId' must be a string of letters, digits, '-' or '_'"})
            return
        host = self.headers.get("Host")
        base_url = public_url() if os.getenv("BROWSERQ_PUBLIC_URL") or not host else f"http://{host}"
        self._log(f"fill_form url={url} task={task_id or '-'}")
        outcome = fill_form(
            self.server.queue,
            url,
            lambda fields: match_fields(fields, user_data, files),
            sessions=self.server.sessions,
            tracker=self.server.tracker,
            task_id=task_id,
            timeout=float(timeout),
            min_confidence=min_confidence,
            base_url=base_url,
        )
        self._send_json(200, outcome.to_dict())

    def _get_job(self, job_id: str) -> None:
        queue = self.server.queue
        try:
            job = queue.get_job(job_id)
            state = queue.state(job_id)
        except JobNotFound:
            self._send_json(404, {"error": "job_not_found"})
            return
        result = queue.get_result(job_id)
        self._send_json(
            200,
            {
                "jobId": job.id,
                "type": job.type,
                "taskId": job.task_id,
                "state": state,
                "result": result.to_dict() if result is not None else None,
            },
        )

    def _cancel_task(self, task_id: str) -> None:
        tracker = self.server.tracker
        status = tracker.get_status(task_id)
        if status is None:
            self._send_json(404, {"error": "task_not_found"})
            return
        cancelled_jobs = []
        for job_id in status.job_ids:
            try:
                if self.server.queue.cancel(job_id):
                    cancelled_jobs.append(job_id)
            except JobNotFound:
                continue
        status = tracker.cancel(task_id)
        self._send_json(200, {**status.to_dict(), "cancelledJobs": cancelled_jobs})

    def _stream_task(self, task_id: str) -> None:
        if self.server.tracker.get_status(task_id) is None:
            self._send_json(404, {"error": "task_not_found"})
            return
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "close")
        self._cors_headers()
        self.end_headers()
        self.close_connection = True
        try:
            for event in self.server.tracker.subscribe(
                task_id,
                poll_interval=self.server.poll_interval,
                heartbeat=self.server.heartbeat_seconds,
            ):
                if event is None:
                    self.wfile.write(b": keepalive\n\n")
                else:
                    data = json.dumps(event.to_dict(), ensure_ascii=False)
                    self.wfile.write(f"data: {data}\n\n".encode("utf-8"))
                self.wfile.flush()
        except (BrokenPipeError, ConnectionResetError):
            self._log(f"stream_closed task={task_id} reason=client_gone")

    def log_message(self, _format: str, *_args: Any) -> None:
        return


class QueueServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        server_address: tuple[str, int],
        *,
        queue: JobQueue,
        tracker: TaskTracker,
        sessions: SessionStore,
        poll_interval: float = 0.25,
        heartbeat_seconds: float = SSE_HEARTBEAT_SECONDS,
        form_timeout: float = 120.0,
    ) -> None:
        super().__init__(server_address, _QueueHandler)
        self.queue = queue
        self.tracker = tracker
        self.sessions = sessions
        self.form_timeout = form_timeout
        # Cancels and reaped jobs complete here too; their tasks must hear about it.
        if queue.on_complete is None:
            queue.on_complete = tracker.record_completion
        self.poll_interval = poll_interval
        self.heartbeat_seconds = heartbeat_seconds
