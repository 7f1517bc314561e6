"""Task status tracking and the per-task update feed.

Status lives in ``<root>/tasks/<id>.json`` and every transition is appended to
``<root>/tasks/<id>.events.jsonl``. Producers and workers may run in different
processes; subscribers tail the events file, so they see updates from any of them.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

from browserq.constants import (
    CANCELLED_ERROR,
    TASK_FAILED,
    TASK_PENDING,
    TASK_RUNNING,
    TASK_SUCCEEDED,
)
from browserq.models import Job, JobResult, TaskStatus, TaskUpdateEvent
from browserq.storage import append_jsonl, home_dir, log_event, read_json, utc_now_iso, write_json


class TaskTracker:
    def __init__(self, root: Path | None = None) -> None:
        self.root = root if root is not None else home_dir()
        self.base = self.root / "tasks"
        self.base.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _status_path(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or task_id.startswith("."):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return self.base / f"{task_id}.json"

    def _events_path(self, task_id: str) -> Path:
        return self._status_path(task_id).with_suffix(".events.jsonl")

    def get_status(self, task_id: str) -> TaskStatus | None:
        payload = read_json(self._status_path(task_id))
        if payload is None:
            return None
        return TaskStatus.from_dict(payload)

    def register(self, task_id: str, *, total_steps: int = 1) -> TaskStatus:
        with self._lock:
            existing = self.get_status(task_id)
            if existing is not None:
                if total_steps > existing.total_steps and not existing.is_terminal:
                    existing = replace(existing, total_steps=total_steps)
                    write_json(self._status_path(task_id), existing.to_dict())
                return existing
            status = TaskStatus(
                task_id=task_id,
                status=TASK_PENDING,
                total_steps=max(1, total_steps),
                updated_at=utc_now_iso(),
            )
            self._save(status, message="registered")
            return status

    def add_job(self, task_id: str, job_id: str) -> TaskStatus:
        with self._lock:
            status = self.get_status(task_id) or TaskStatus(task_id=task_id, status=TASK_PENDING)
            if job_id in status.job_ids:
                return status
            status = replace(status, job_ids=[*status.job_ids, job_id], updated_at=utc_now_iso())
            write_json(self._status_path(task_id), status.to_dict())
            return status

    def job_started(self, task_id: str, job_id: str) -> TaskStatus | None:
        with self._lock:
            status = self.get_status(task_id) or TaskStatus(task_id=task_id, status=TASK_PENDING)
            if status.is_terminal:
                return status
            job_ids = status.job_ids if job_id in status.job_ids else [*status.job_ids, job_id]
            status = replace(
                status,
                status=TASK_RUNNING,
                job_ids=job_ids,
                last_job_id=job_id,
                updated_at=utc_now_iso(),
            )
            self._save(status, message=f"job {job_id} started")
            return status

    def job_finished(self, task_id: str, job_id: str, result: JobResult) -> TaskStatus:
        """Fold a terminal job result into the task. Terminal tasks never change again."""
        with self._lock:
            status = self.get_status(task_id) or TaskStatus(task_id=task_id, status=TASK_RUNNING)
            if status.is_terminal:
                log_event(self.root, "tasks", f"ignored task={task_id} job={job_id} reason=terminal")
                return status
            step = status.current_step + 1
            if not result.success:
                new_state = TASK_FAILED
                message = f"job {job_id} failed"
            elif step >= status.total_steps:
                new_state = TASK_SUCCEEDED
                message = "completed"
            else:
                new_state = TASK_RUNNING
                message = f"step {step}/{status.total_steps} done"
            status = replace(
                status,
                status=new_state,
                current_step=step,
                last_job_id=job_id,
                last_result=result.to_dict(),
                error=result.error,
                updated_at=utc_now_iso(),
            )
            self._save(status, message=message, result=result.to_dict())
            return status

    def record_completion(self, job: Job, result: JobResult) -> None:
        """Completion hook for JobQueue: fold a job's terminal result into its task."""
        if job.task_id:
            self.job_finished(job.task_id, job.id, result)

    def fail(self, task_id: str, error: str) -> TaskStatus:
        with self._lock:
            status = self.get_status(task_id) or TaskStatus(task_id=task_id, status=TASK_PENDING)
            if status.is_terminal:
                return status
            status = replace(status, status=TASK_FAILED, error=error, updated_at=utc_now_iso())
            self._save(status, message="failed")
            return status

    def cancel(self, task_id: str) -> TaskStatus:
        return self.fail(task_id, CANCELLED_ERROR)

    def _save(self, status: TaskStatus, *, message: str, result: dict[str, Any] | None = None) -> None:
        write_json(self._status_path(status.task_id), status.to_dict())
        event = TaskUpdateEvent(
            task_id=status.task_id,
            status=status.status,
            timestamp=status.updated_at or utc_now_iso(),
            current_step=status.current_step,
            total_steps=status.total_steps,
            message=message,
            result=result,
            error=status.error,
        )
        append_jsonl(self._events_path(status.task_id), event.to_dict())
        log_event(
            self.root,
            "tasks",
            f"task={status.task_id} status={status.status} step={status.current_step}/{status.total_steps}",
        )

    def events(self, task_id: str) -> list[TaskUpdateEvent]:
        path = self._events_path(task_id)
        if not path.exists():
            return []
        out = []
        with path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    out.append(TaskUpdateEvent.from_dict(json.loads(line)))
        return out

    def subscribe(
        self,
        task_id: str,
        *,
        poll_interval: float = 0.25,
        timeout: float | None = None,
        heartbeat: float | None = None,
    ) -> Iterator[TaskUpdateEvent | None]:
        """Yield update events for ``task_id`` as they are appended.

        The feed replays events already recorded, then follows new ones and
        stops right after the first terminal event. When ``heartbeat`` is set,
        ``None`` is yielded after that many idle seconds so a caller can keep a
        connection alive.
        """
        path = self._events_path(task_id)
        offset = 0
        deadline = None if timeout is None else time.monotonic() + timeout
        last_activity = time.monotonic()
        while True:
            emitted = False
            if path.exists():
                with path.open("r", encoding="utf-8") as fh:
                    fh.seek(offset)
                    while True:
                        line = fh.readline()
                        if not line or not line.endswith("\n"):
                            break
                        offset = fh.tell()
                        line = line.strip()
                        if not line:
                            continue
                        event = TaskUpdateEvent.from_dict(json.loads(line))
                        emitted = True
                        yield event
                        if event.is_terminal:
                            return
            now = time.monotonic()
            if emitted:
                last_activity = now
            elif heartbeat is not None and now - last_activity >= heartbeat:
                last_activity = now
                yield None
            if deadline is not None and now >= deadline:
                return
            time.sleep(poll_interval)
