"""Durable file-backed job queue with leases.

Layout under ``<root>/queue``::

    jobs/<id>.json       immutable job record
    pending/<id>.json    delivery marker waiting for a worker
    claimed/<id>.json    delivery marker leased by a worker
    results/<id>.json    terminal JobResult, written exactly once
    cancelled/<id>       cancellation request marker

Claims move a marker from ``pending`` to ``claimed`` with a single rename, so
two workers can never hold the same delivery. Results are created with an
exclusive link, so the first terminal transition wins and later ones are no-ops.
"""

from __future__ import annotations

import os
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from browserq.constants import (
    CANCELLED_ERROR,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    JOB_CLAIMED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_SUCCEEDED,
)
from browserq.models import Job, JobResult, validate_job_payload
from browserq.storage import (
    create_json_exclusive,
    home_dir,
    log_event,
    read_json,
    utc_now_iso,
    write_json,
)


class JobNotFound(KeyError):
    """No job with the given id was ever enqueued."""


class JobCancelled(RuntimeError):
    """Raised inside a running job once cancellation has been requested."""


@dataclass(frozen=True)
class Lease:
    job: Job
    worker_id: str
    attempt: int
    expires_at: float


class JobQueue:
    def __init__(
        self,
        root: Path | None = None,
        *,
        lease_seconds: float | None = None,
        max_attempts: int | None = None,
        on_complete: Callable[[Job, JobResult], None] | None = None,
    ) -> None:
        self.root = root if root is not None else home_dir()
        # Called once per job with its terminal result, whichever path finished it.
        self.on_complete = on_complete
        self.base = self.root / "queue"
        self.lease_seconds = (
            lease_seconds
            if lease_seconds is not None
            else float(os.getenv("BROWSERQ_LEASE_SECONDS", str(DEFAULT_LEASE_SECONDS)))
        )
        self.max_attempts = (
            max_attempts
            if max_attempts is not None
            else int(os.getenv("BROWSERQ_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
        )
        for name in ("jobs", "pending", "claimed", "results", "cancelled"):
            (self.base / name).mkdir(parents=True, exist_ok=True)

    def _path(self, area: str, job_id: str) -> Path:
        if not job_id or "/" in job_id or job_id.startswith("."):
            raise JobNotFound(job_id)
        suffix = "" if area == "cancelled" else ".json"
        return self.base / area / f"{job_id}{suffix}"

    def _log(self, message: str) -> None:
        log_event(self.root, "queue", message)

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        task_id: str | None = None,
        retry_of: str | None = None,
    ) -> str:
        """Validate and durably store a job, returning its id. Never blocks on execution."""
        normalized = validate_job_payload(job_type, payload)
        job = Job(
            id=uuid.uuid4().hex,
            type=job_type,
            payload=normalized,
            task_id=task_id,
            created_at=utc_now_iso(),
            retry_of=retry_of,
        )
        write_json(self._path("jobs", job.id), job.to_dict())
        write_json(
            self._path("pending", job.id),
            {"id": job.id, "attempt": 0, "enqueuedAt": time.time()},
        )
        self._log(f"enqueue job={job.id} type={job.type} task={task_id or '-'}")
        return job.id

    def get_job(self, job_id: str) -> Job:
        payload = read_json(self._path("jobs", job_id))
        if payload is None:
            raise JobNotFound(job_id)
        return Job.from_dict(payload)

    def dequeue(self, worker_id: str, *, timeout: float = 0.0, poll_interval: float = 0.25) -> Lease | None:
        """Claim the oldest pending job for ``worker_id``, waiting up to ``timeout`` seconds."""
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            lease = self._claim_next(worker_id)
            if lease is not None or time.monotonic() >= deadline:
                return lease
            time.sleep(poll_interval)

    def _claim_next(self, worker_id: str) -> Lease | None:
        self.requeue_expired()
        for marker_path, marker in self._pending_markers():
            job_id = str(marker.get("id", marker_path.stem))
            # Stamp the lease under a private name, then publish it with a second rename.
            staging = self.base / "claimed" / f".{job_id}.{uuid.uuid4().hex}.claim"
            try:
                os.rename(marker_path, staging)
            except FileNotFoundError:
                continue
            attempt = int(marker.get("attempt", 0)) + 1
            expires_at = time.time() + self.lease_seconds
            write_json(
                staging,
                {
                    "id": job_id,
                    "attempt": attempt,
                    "workerId": worker_id,
                    "leaseExpiresAt": expires_at,
                    "enqueuedAt": marker.get("enqueuedAt"),
                },
            )
            os.rename(staging, self._path("claimed", job_id))
            if self._path("results", job_id).exists():
                self._path("claimed", job_id).unlink(missing_ok=True)
                continue
            job = self.get_job(job_id)
            self._log(f"claim job={job_id} worker={worker_id} attempt={attempt}")
            return Lease(job=job, worker_id=worker_id, attempt=attempt, expires_at=expires_at)
        return None

    def _pending_markers(self) -> list[tuple[Path, dict[str, Any]]]:
        markers = []
        for path in (self.base / "pending").glob("*.json"):
            try:
                marker = read_json(path)
            except ValueError:
                continue
            if marker is not None:
                markers.append((path, marker))
        markers.sort(key=lambda item: (float(item[1].get("enqueuedAt") or 0.0), item[0].name))
        return markers

    def extend_lease(self, lease: Lease) -> Lease | None:
        """Push the lease deadline forward. Returns None if the claim was lost."""
        claimed_path = self._path("claimed", lease.job.id)
        marker = read_json(claimed_path)
        if marker is None or marker.get("workerId") != lease.worker_id:
            return None
        expires_at = time.time() + self.lease_seconds
        marker["leaseExpiresAt"] = expires_at
        write_json(claimed_path, marker)
        return Lease(job=lease.job, worker_id=lease.worker_id, attempt=lease.attempt, expires_at=expires_at)

    def release(self, lease: Lease) -> bool:
        """Hand a claimed job back to the pending area without finishing it."""
        claimed_path = self._path("claimed", lease.job.id)
        marker = read_json(claimed_path)
        if marker is None or marker.get("workerId") != lease.worker_id:
            return False
        return self._return_to_pending(claimed_path, marker, reason="released")

    def requeue_expired(self, now: float | None = None) -> int:
        """Return jobs with lapsed leases to pending, or fail them past the attempt cap."""
        current = time.time() if now is None else now
        moved = 0
        moved += self._recover_stale_claims(current)
        for claimed_path in (self.base / "claimed").glob("*.json"):
            if claimed_path.name.startswith("."):
                continue
            try:
                marker = read_json(claimed_path)
            except ValueError:
                continue
            if marker is None:
                continue
            expires_at = marker.get("leaseExpiresAt")
            if expires_at is None or float(expires_at) > current:
                continue
            job_id = str(marker.get("id", claimed_path.stem))
            attempt = int(marker.get("attempt", 1))
            if attempt >= self.max_attempts:
                error = f"LeaseExpired: worker stopped responding after {attempt} attempt(s)"
                if self.complete(job_id, JobResult.failure(error)):
                    moved += 1
                continue
            if self._return_to_pending(claimed_path, marker, reason="lease_expired"):
                moved += 1
        return moved

    def _recover_stale_claims(self, now: float) -> int:
        # A claimer that died between its two renames leaves a staging file behind.
        recovered = 0
        for staging in (self.base / "claimed").glob(".*.claim"):
            try:
                if staging.stat().st_mtime + self.lease_seconds > now:
                    continue
                marker = read_json(staging)
            except (FileNotFoundError, ValueError):
                continue
            if marker is None or "id" not in marker:
                continue
            marker.pop("leaseExpiresAt", None)
            if self._return_to_pending(staging, marker, reason="stale_claim"):
                recovered += 1
        return recovered

    def _return_to_pending(self, claimed_path: Path, marker: dict[str, Any], *, reason: str) -> bool:
        # The marker keeps its attempt count, so requeue is a single rename.
        job_id = str(marker.get("id", claimed_path.stem))
        try:
            os.rename(claimed_path, self._path("pending", job_id))
        except FileNotFoundError:
            return False
        self._log(f"requeue job={job_id} reason={reason} attempt={marker.get('attempt')}")
        return True

    def complete(self, job_id: str, result: JobResult) -> bool:
        """Record the terminal result. Only the first call for a job takes effect."""
        record = {"jobId": job_id, "completedAt": utc_now_iso(), **result.to_dict()}
        won = create_json_exclusive(self._path("results", job_id), record)
        for area in ("claimed", "pending"):
            self._path(area, job_id).unlink(missing_ok=True)
        if won:
            state = JOB_SUCCEEDED if result.success else JOB_FAILED
            self._log(f"complete job={job_id} state={state} duration_ms={result.duration}")
            if self.on_complete is not None:
                self.on_complete(self.get_job(job_id), result)
        else:
            self._log(f"complete_ignored job={job_id} reason=already_terminal")
        return won

    def get_result(self, job_id: str) -> JobResult | None:
        payload = read_json(self._path("results", job_id))
        if payload is None:
            return None
        return JobResult.from_dict(payload)

    def await_result(self, job_id: str, timeout: float, *, poll_interval: float = 0.1) -> JobResult:
        """Block until the job is terminal. Safe to call any number of times.

        Raises TimeoutError when ``timeout`` seconds pass first and JobNotFound
        for ids that were never enqueued.
        """
        if not self._path("jobs", job_id).exists():
            raise JobNotFound(job_id)
        deadline = time.monotonic() + timeout
        while True:
            result = self.get_result(job_id)
            if result is not None:
                return result
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")
            time.sleep(min(poll_interval, remaining))

    def state(self, job_id: str) -> str:
        result = self.get_result(job_id)
        if result is not None:
            return JOB_SUCCEEDED if result.success else JOB_FAILED
        if self._path("claimed", job_id).exists():
            return JOB_CLAIMED
        if self._path("pending", job_id).exists():
            return JOB_PENDING
        if self._path("jobs", job_id).exists():
            # Between rename and stamp; treat as claimed.
            return JOB_CLAIMED
        raise JobNotFound(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation. Pending jobs fail at once; running jobs stop at their next checkpoint."""
        if not self._path("jobs", job_id).exists():
            raise JobNotFound(job_id)
        if self.get_result(job_id) is not None:
            return False
        marker = self._path("cancelled", job_id)
        marker.touch(exist_ok=True)
        self._log(f"cancel_requested job={job_id}")
        pending_path = self._path("pending", job_id)
        parked = self.base / "cancelled" / f".{job_id}.pending"
        try:
            os.rename(pending_path, parked)
        except FileNotFoundError:
            return True
        parked.unlink(missing_ok=True)
        self.complete(job_id, JobResult.failure(CANCELLED_ERROR))
        return True

    def is_cancelled(self, job_id: str) -> bool:
        return self._path("cancelled", job_id).exists()

    def retry(self, job_id: str) -> str:
        """Enqueue a fresh copy of a failed job, linked to the original by ``retryOf``."""
        job = self.get_job(job_id)
        return self.enqueue(job.type, job.payload, task_id=job.task_id, retry_of=job.id)

    def stats(self) -> dict[str, int]:
        succeeded = failed = 0
        for path in (self.base / "results").glob("*.json"):
            payload = read_json(path)
            if payload and payload.get("success"):
                succeeded += 1
            else:
                failed += 1
        return {
            "pending": len(list((self.base / "pending").glob("*.json"))),
            "claimed": len(list((self.base / "claimed").glob("*.json"))),
            "succeeded": succeeded,
            "failed": failed,
            "total": len(list((self.base / "jobs").glob("*.json"))),
        }
