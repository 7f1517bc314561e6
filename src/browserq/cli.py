"""CLI entrypoint for browserq."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

from browserq.constants import DEFAULT_SERVER_PORT, JOB_TYPES
from browserq.form_flow import fill_form
from browserq.forms import match_fields
from browserq.models import PayloadError, validate_job_payload
from browserq.object_storage import ConfigurationError, object_storage_from_env
from browserq.queue import JobNotFound, JobQueue
from browserq.server import QueueServer
from browserq.sessions import SessionStore
from browserq.storage import home_dir, log_path, tail_lines
from browserq.tasks import TaskTracker
from browserq.watch import watch_command
from browserq.worker import WorkerPool, poll_interval_from_env

LOG_COMPONENTS = ("queue", "worker", "server", "sessions", "tasks")


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    root = Path(args.home) if args.home else home_dir()

    if args.command == "serve":
        serve_command(root, host=args.host, port=args.port)
        return
    if args.command == "worker":
        worker_command(root, concurrency=args.concurrency)
        return
    if args.command == "enqueue":
        enqueue_command(
            root,
            args.job_type,
            payload_text=args.payload,
            task_id=args.task_id,
            wait=args.wait,
            timeout=args.timeout,
        )
        return
    if args.command == "status":
        status = TaskTracker(root).get_status(args.task_id)
        if status is None:
            raise SystemExit(f"Unknown task: {args.task_id}")
        _print_json(status.to_dict())
        return
    if args.command == "job":
        job_command(root, args.job_id)
        return
    if args.command == "stats":
        _print_json(JobQueue(root).stats())
        return
    if args.command == "watch":
        watch_command(
            args.task_id,
            tracker=TaskTracker(root),
            interval_ms=args.interval_ms,
            json_mode=args.json,
        )
        return
    if args.command == "fill-form":
        fill_form_command(
            root,
            args.url,
            data_text=args.data,
            file_args=args.file or [],
            timeout=args.timeout,
            min_confidence=args.min_confidence,
            task_id=args.task_id,
        )
        return
    if args.command == "logs":
        logs_command(root, args.tail, component=args.component)
        return
    if args.command == "purge-sessions":
        removed = SessionStore(root).purge_expired()
        print(f"removed={removed}")
        return

    parser.print_help()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="browserq", description="Queue-driven browser automation.")
    parser.add_argument("--home", default=None, help="State directory (default: $BROWSERQ_HOME).")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=DEFAULT_SERVER_PORT)

    worker_parser = subparsers.add_parser("worker", help="Run browser workers.")
    worker_parser.add_argument("--concurrency", type=int, default=None)

    enqueue_parser = subparsers.add_parser("enqueue", help="Submit a job.")
    enqueue_parser.add_argument("job_type", choices=JOB_TYPES)
    enqueue_parser.add_argument("--payload", default="{}", help="JSON object or @path/to/file.json")
    enqueue_parser.add_argument("--task-id", default=None)
    enqueue_parser.add_argument("--wait", action="store_true", help="Block until the job finishes.")
    enqueue_parser.add_argument("--timeout", type=float, default=60.0)

    status_parser = subparsers.add_parser("status", help="Show a task's status.")
    status_parser.add_argument("task_id")

    job_parser = subparsers.add_parser("job", help="Show a job's state and result.")
    job_parser.add_argument("job_id")

    subparsers.add_parser("stats", help="Show queue counters.")

    watch_parser = subparsers.add_parser("watch", help="Follow a task until it finishes.")
    watch_parser.add_argument("task_id")
    watch_parser.add_argument("--interval-ms", type=int, default=250)
    watch_parser.add_argument("--json", action="store_true")

    fill_parser = subparsers.add_parser("fill-form", help="Analyze, map and fill a form.")
    fill_parser.add_argument("url")
    fill_parser.add_argument("--data", required=True, help="User data as JSON object or @path")
    fill_parser.add_argument("--file", action="append", help="key=path for file inputs (repeatable)")
    fill_parser.add_argument("--timeout", type=float, default=120.0)
    fill_parser.add_argument("--min-confidence", type=float, default=None)
    fill_parser.add_argument("--task-id", default=None)

    logs_parser = subparsers.add_parser("logs", help="Print recent log lines.")
    logs_parser.add_argument("--tail", type=int, default=50)
    logs_parser.add_argument("--component", choices=LOG_COMPONENTS, default=None)

    subparsers.add_parser("purge-sessions", help="Delete expired session bundles.")
    return parser


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _load_json_arg(text: str, *, flag: str) -> dict[str, Any]:
    raw = text
    if text.startswith("@"):
        path = Path(text[1:])
        if not path.is_file():
            raise SystemExit(f"{flag}: file not found: {path}")
        raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"{flag}: invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SystemExit(f"{flag}: expected a JSON object")
    return payload


def _object_storage(root: Path) -> Any:
    try:
        return object_storage_from_env(root)
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc


def serve_command(root: Path, *, host: str, port: int) -> None:
    tracker = TaskTracker(root)
    server = QueueServer(
        (host, port),
        queue=JobQueue(root, on_complete=tracker.record_completion),
        tracker=tracker,
        sessions=SessionStore(root),
        poll_interval=poll_interval_from_env(),
    )
    print(f"browserq listening on http://{host}:{server.server_address[1]}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


def worker_command(root: Path, *, concurrency: int | None) -> None:
    if concurrency is not None and concurrency < 1:
        raise SystemExit("--concurrency must be >= 1")
    tracker = TaskTracker(root)
    pool = WorkerPool(
        JobQueue(root, on_complete=tracker.record_completion),
        tracker=tracker,
        storage=_object_storage(root),
        concurrency=concurrency,
    )
    print(f"browserq workers={pool.concurrency} home={root}", flush=True)
    pool.run_forever()


def enqueue_command(
    root: Path,
    job_type: str,
    *,
    payload_text: str,
    task_id: str | None,
    wait: bool,
    timeout: float,
) -> None:
    payload = _load_json_arg(payload_text, flag="--payload")
    try:
        validate_job_payload(job_type, payload)
    except PayloadError as exc:
        raise SystemExit(f"Invalid payload: {exc}") from exc
    queue = JobQueue(root)
    tracker = TaskTracker(root)
    if task_id:
        tracker.register(task_id)
    job_id = queue.enqueue(job_type, payload, task_id=task_id)
    if task_id:
        tracker.add_job(task_id, job_id)
    if not wait:
        _print_json({"jobId": job_id, "taskId": task_id})
        return
    try:
        result = queue.await_result(job_id, timeout, poll_interval=poll_interval_from_env())
    except TimeoutError as exc:
        raise SystemExit(str(exc)) from exc
    _print_json({"jobId": job_id, **result.to_dict()})
    if not result.success:
        sys.exit(1)


def job_command(root: Path, job_id: str) -> None:
    queue = JobQueue(root)
    try:
        job = queue.get_job(job_id)
        state = queue.state(job_id)
    except JobNotFound as exc:
        raise SystemExit(f"Unknown job: {job_id}") from exc
    result = queue.get_result(job_id)
    _print_json(
        {
            **job.to_dict(),
            "state": state,
            "result": result.to_dict() if result is not None else None,
        }
    )


def _parse_file_args(file_args: list[str]) -> dict[str, str]:
    files: dict[str, str] = {}
    for item in file_args:
        key, sep, path = item.partition("=")
        if not sep or not key.strip() or not path.strip():
            raise SystemExit(f"--file expects key=path, got {item!r}")
        files[key.strip()] = os.path.abspath(path.strip())
    return files


def fill_form_command(
    root: Path,
    url: str,
    *,
    data_text: str,
    file_args: list[str],
    timeout: float,
    min_confidence: float | None,
    task_id: str | None,
) -> None:
    user_data = _load_json_arg(data_text, flag="--data")
    files = _parse_file_args(file_args)
    try:
        outcome = fill_form(
            JobQueue(root),
            url,
            lambda fields: match_fields(fields, user_data, files),
            sessions=SessionStore(root),
            tracker=TaskTracker(root),
            task_id=task_id,
            timeout=timeout,
            min_confidence=min_confidence,
        )
    except PayloadError as exc:
        raise SystemExit(f"Invalid request: {exc}") from exc
    _print_json(outcome.to_dict())
    if not outcome.success:
        sys.exit(1)


def logs_command(root: Path, tail_count: int, *, component: str | None = None) -> None:
    components = [component] if component else list(LOG_COMPONENTS)
    output_lines = []
    for name in components:
        lines = tail_lines(log_path(root, name), tail_count)
        if not lines:
            continue
        if component is None:
            output_lines.append(f"==> {name}.log <==")
        output_lines.extend(lines)
    if not output_lines:
        raise SystemExit("No logs available yet.")
    print("\n".join(output_lines))


if __name__ == "__main__":
    main()
