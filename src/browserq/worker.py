"""Workers that lease jobs from the queue and run them in a browser."""

from __future__ import annotations

import os
import socket
import threading
import uuid
from collections.abc import Callable
from typing import Any

from browserq.actions import ActionSettings
from browserq.browser import BrowserPool
from browserq.constants import (
    CANCELLED_ERROR,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_WORKER_CONCURRENCY,
)
from browserq.executor import execute, format_error
from browserq.models import JobResult
from browserq.queue import JobQueue, Lease
from browserq.storage import log_event
from browserq.tasks import TaskTracker


def poll_interval_from_env() -> float:
    return int(os.getenv("BROWSERQ_POLL_INTERVAL_MS", str(DEFAULT_POLL_INTERVAL_MS))) / 1000.0


def concurrency_from_env() -> int:
    return max(1, int(os.getenv("BROWSERQ_WORKER_CONCURRENCY", str(DEFAULT_WORKER_CONCURRENCY))))


class _LeaseKeeper(threading.Thread):
    """Extends a lease in the background while its job runs."""

    def __init__(self, queue: JobQueue, lease: Lease) -> None:
        super().__init__(name=f"lease-{lease.job.id[:8]}", daemon=True)
        self.queue = queue
        self.lease = lease
        self.interval = max(0.05, queue.lease_seconds / 3.0)
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            renewed = self.queue.extend_lease(self.lease)
            if renewed is None:
                return
            self.lease = renewed

    def stop(self) -> None:
        self._stop_event.set()
        self.join(timeout=5)


class Worker:
    def __init__(
        self,
        queue: JobQueue,
        *,
        tracker: TaskTracker | None = None,
        storage: Any = None,
        worker_id: str | None = None,
        pool: Any = None,
        settings: ActionSettings | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.queue = queue
        self.tracker = tracker
        self.storage = storage
        if tracker is not None and queue.on_complete is None:
            queue.on_complete = tracker.record_completion
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.pool = pool if pool is not None else BrowserPool()
        self.settings = settings or ActionSettings.from_env()
        self.poll_interval = poll_interval if poll_interval is not None else poll_interval_from_env()

    def _log(self, message: str) -> None:
        log_event(self.queue.root, "worker", f"worker={self.worker_id} {message}")

    def process(self, lease: Lease) -> JobResult | None:
        """Run one leased job. Returns None when the job was handed back to the queue."""
        job = lease.job
        self._log(f"start job={job.id} type={job.type} attempt={lease.attempt}")
        if self.queue.is_cancelled(job.id):
            result = JobResult.failure(CANCELLED_ERROR)
            self._finish(lease, result)
            return result
        if job.task_id and self.tracker is not None:
            self.tracker.job_started(job.task_id, job.id)

        result: JobResult | None = None
        keeper = _LeaseKeeper(self.queue, lease)
        keeper.start()
        try:
            with self.pool.checkout() as page:
                result = execute(
                    job,
                    page,
                    storage=self.storage,
                    cancel_check=lambda: self.queue.is_cancelled(job.id),
                    settings=self.settings,
                )
        except Exception as exc:
            if result is None:
                return self._browser_unavailable(lease, exc)
            self._log(f"checkin_failed job={job.id} error={format_error(exc)}")
        finally:
            keeper.stop()
        self._finish(lease, result)
        return result

    def _browser_unavailable(self, lease: Lease, exc: Exception) -> JobResult | None:
        error = format_error(exc)
        self._log(f"browser_unavailable job={lease.job.id} attempt={lease.attempt} error={error}")
        if lease.attempt >= self.queue.max_attempts:
            result = JobResult.failure(error, data={"url": lease.job.url})
            self._finish(lease, result)
            return result
        self.queue.release(lease)
        return None

    def _finish(self, lease: Lease, result: JobResult) -> None:
        job = lease.job
        recorded = self.queue.complete(job.id, result)
        self._log(
            f"finish job={job.id} success={result.success} duration_ms={result.duration} recorded={recorded}"
        )

    def run_once(self) -> bool:
        lease = self.queue.dequeue(self.worker_id)
        if lease is None:
            return False
        self.process(lease)
        return True

    def run(self, stop_event: threading.Event) -> None:
        self._log("online")
        try:
            while not stop_event.is_set():
                if not self.run_once():
                    stop_event.wait(self.poll_interval)
        finally:
            self.pool.close()
            self._log("offline")


class WorkerPool:
    """A fixed number of worker threads plus a lease reaper."""

    def __init__(
        self,
        queue: JobQueue,
        *,
        tracker: TaskTracker | None = None,
        storage: Any = None,
        concurrency: int | None = None,
        pool_factory: Callable[[], Any] = BrowserPool,
        settings: ActionSettings | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.queue = queue
        self.concurrency = concurrency if concurrency is not None else concurrency_from_env()
        self.poll_interval = poll_interval if poll_interval is not None else poll_interval_from_env()
        self.workers = [
            Worker(
                queue,
                tracker=tracker,
                storage=storage,
                pool=pool_factory(),
                settings=settings,
                poll_interval=self.poll_interval,
            )
            for _ in range(max(1, self.concurrency))
        ]
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for index, worker in enumerate(self.workers):
            thread = threading.Thread(
                target=worker.run,
                args=(self._stop_event,),
                name=f"browserq-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        reaper = threading.Thread(target=self._reap, name="browserq-reaper", daemon=True)
        reaper.start()
        self._threads.append(reaper)

    def _reap(self) -> None:
        interval = max(0.1, self.queue.lease_seconds / 4.0)
        while not self._stop_event.wait(interval):
            moved = self.queue.requeue_expired()
            if moved:
                log_event(self.queue.root, "worker", f"reaper requeued={moved}")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()
