"""Caller-side orchestration of the two-phase form fill."""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from browserq.constants import DEFAULT_SERVER_PORT
from browserq.models import FieldMapping, FormField, FormStructure, JobResult, SessionBundle
from browserq.queue import JobQueue
from browserq.sessions import SessionStore
from browserq.storage import log_event
from browserq.tasks import TaskTracker

Mapper = Callable[[list[FormField]], list[FieldMapping]]


@dataclass(frozen=True)
class FormFillOutcome:
    success: bool
    task_id: str
    form_structure: FormStructure | None = None
    mappings: list[FieldMapping] = field(default_factory=list)
    fill_data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    session_url: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "taskId": self.task_id,
            "formStructure": self.form_structure.to_dict() if self.form_structure else None,
            "mappings": [item.to_dict() for item in self.mappings],
            "fillData": self.fill_data,
            "sessionId": self.session_id,
            "sessionUrl": self.session_url,
            "error": self.error,
        }


def public_url() -> str:
    return os.getenv("BROWSERQ_PUBLIC_URL", f"http://127.0.0.1:{DEFAULT_SERVER_PORT}").rstrip("/")


def session_load_url(session_id: str, base_url: str | None = None) -> str:
    return f"{(base_url or public_url()).rstrip('/')}/sessions/{session_id}/load"


def fill_form(
    queue: JobQueue,
    url: str,
    mapper: Mapper,
    *,
    sessions: SessionStore | None = None,
    tracker: TaskTracker | None = None,
    task_id: str | None = None,
    timeout: float = 120.0,
    min_confidence: float | None = None,
    base_url: str | None = None,
) -> FormFillOutcome:
    """Analyze a form, map it, fill it and store the resulting session.

    Both phases run under one task id so status watchers see a two-step task.
    ``min_confidence`` drops low-confidence mappings before Phase 2; by default
    every mapping produced by ``mapper`` is applied.
    """
    task_id = task_id or uuid.uuid4().hex
    if tracker is not None:
        tracker.register(task_id, total_steps=2)

    analyze_id = _enqueue(queue, tracker, task_id, {"url": url, "phase": "analyze"})
    try:
        analyzed = queue.await_result(analyze_id, timeout)
    except TimeoutError as exc:
        return _timed_out(queue, tracker, task_id, analyze_id, exc)
    if not analyzed.success:
        return FormFillOutcome(success=False, task_id=task_id, error=analyzed.error)
    structure = FormStructure.from_dict(analyzed.data["formStructure"])

    mappings = mapper(structure.fields)
    if min_confidence is not None:
        mappings = [item for item in mappings if item.confidence >= min_confidence]
    log_event(
        queue.root,
        "queue",
        f"form_mapped task={task_id} fields={len(structure.fields)} mappings={len(mappings)}",
    )
    if not mappings:
        error = "no field mappings produced"
        if tracker is not None:
            tracker.fail(task_id, error)
        return FormFillOutcome(success=False, task_id=task_id, form_structure=structure, error=error)

    fill_id = _enqueue(
        queue,
        tracker,
        task_id,
        {
            "url": url,
            "phase": "fill",
            "formStructure": structure.to_dict(),
            "mappings": [item.to_dict() for item in mappings],
        },
    )
    try:
        filled = queue.await_result(fill_id, timeout)
    except TimeoutError as exc:
        return _timed_out(queue, tracker, task_id, fill_id, exc, structure=structure, mappings=mappings)
    return _outcome(task_id, structure, mappings, filled, sessions, base_url)


def _timed_out(
    queue: JobQueue,
    tracker: TaskTracker | None,
    task_id: str,
    job_id: str,
    exc: TimeoutError,
    *,
    structure: FormStructure | None = None,
    mappings: list[FieldMapping] | None = None,
) -> FormFillOutcome:
    error = f"TimeoutError: {exc}"
    if tracker is not None:
        tracker.fail(task_id, error)
    # Nobody is waiting any more; a worker must not pick the job up later.
    queue.cancel(job_id)
    return FormFillOutcome(
        success=False,
        task_id=task_id,
        form_structure=structure,
        mappings=mappings or [],
        error=error,
    )


def _enqueue(queue: JobQueue, tracker: TaskTracker | None, task_id: str, payload: dict[str, Any]) -> str:
    job_id = queue.enqueue("fill_form_auto", payload, task_id=task_id)
    if tracker is not None:
        tracker.add_job(task_id, job_id)
    return job_id


def _outcome(
    task_id: str,
    structure: FormStructure,
    mappings: list[FieldMapping],
    filled: JobResult,
    sessions: SessionStore | None,
    base_url: str | None,
) -> FormFillOutcome:
    if not filled.success:
        return FormFillOutcome(
            success=False,
            task_id=task_id,
            form_structure=structure,
            mappings=mappings,
            fill_data=filled.data,
            error=filled.error,
        )
    data = dict(filled.data)
    session_id = session_url = None
    raw_session = data.pop("session", None)
    if raw_session is not None and sessions is not None:
        session_id = sessions.store(SessionBundle.from_dict(raw_session))
        session_url = session_load_url(session_id, base_url)
    return FormFillOutcome(
        success=True,
        task_id=task_id,
        form_structure=structure,
        mappings=mappings,
        fill_data=data,
        session_id=session_id,
        session_url=session_url,
    )
