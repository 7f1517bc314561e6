"""Follow a task's updates from the terminal."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime

from browserq.models import TaskUpdateEvent
from browserq.tasks import TaskTracker


def _safe_time_hhmmss(iso_text: str) -> str:
    try:
        dt = datetime.fromisoformat(str(iso_text).replace("Z", "+00:00"))
        return dt.astimezone().strftime("%H:%M:%S")
    except ValueError:
        return "--:--:--"


def _format_event_line(event: TaskUpdateEvent) -> str:
    t = _safe_time_hhmmss(event.timestamp)
    parts = [f"{t} {event.status}", f"step={event.current_step}/{event.total_steps}"]
    if event.message:
        parts.append(event.message)
    if event.error:
        parts.append(f"error={event.error}")
    result = event.result or {}
    duration = result.get("duration")
    if duration is not None:
        parts.append(f"duration_ms={duration}")
    return " ".join(parts)


def _watch_loop(*, events: Iterable[TaskUpdateEvent | None], json_mode: bool) -> TaskUpdateEvent | None:
    last = None
    try:
        for event in events:
            if event is None:
                continue
            last = event
            if json_mode:
                print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)
            else:
                print(_format_event_line(event), flush=True)
    except KeyboardInterrupt:
        return last
    return last


def watch_command(
    task_id: str,
    *,
    tracker: TaskTracker,
    interval_ms: int,
    json_mode: bool,
    timeout: float | None = None,
) -> TaskUpdateEvent | None:
    if interval_ms < 50:
        raise SystemExit("--interval-ms must be >= 50")
    if tracker.get_status(task_id) is None:
        raise SystemExit(f"Unknown task: {task_id}")
    return _watch_loop(
        events=tracker.subscribe(task_id, poll_interval=interval_ms / 1000.0, timeout=timeout),
        json_mode=json_mode,
    )
