"""Run one job against a page and turn the outcome into a JobResult."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from browserq import actions, forms
from browserq.actions import ActionContext, ActionSettings, store_png
from browserq.browser import page_is_closed
from browserq.constants import CANCELLED_ERROR
from browserq.models import Job, JobResult
from browserq.queue import JobCancelled

Handler = Callable[[ActionContext], dict[str, Any]]

HANDLERS: dict[str, Handler] = {
    "navigate": actions.navigate,
    "screenshot": actions.screenshot,
    "click": actions.click,
    "type": actions.type_text,
    "wait": actions.wait,
    "upload": actions.upload,
    "fill_form_auto": forms.run_fill_form_auto,
}


def is_timeout_error(exc: BaseException) -> bool:
    name = exc.__class__.__name__.lower()
    if "timeout" in name:
        return True
    msg = str(exc).lower()
    return "timeout" in msg and "exceeded" in msg


def format_error(exc: BaseException) -> str:
    if isinstance(exc, JobCancelled):
        return CANCELLED_ERROR
    message = " ".join(str(exc).split()) or exc.__class__.__name__
    if is_timeout_error(exc):
        return f"TimeoutError: {message}"
    return f"{exc.__class__.__name__}: {message}"


def execute(
    job: Job,
    page: Any,
    *,
    storage: Any = None,
    cancel_check: Callable[[], bool] | None = None,
    settings: ActionSettings | None = None,
) -> JobResult:
    """Dispatch ``job`` to its routine. Never raises for routine failures."""
    started = time.monotonic()
    ctx = ActionContext(
        page=page,
        job=job,
        storage=storage,
        cancel_check=cancel_check,
        settings=settings or ActionSettings.from_env(),
    )
    try:
        handler = HANDLERS.get(job.type)
        if handler is None:
            raise ValueError(f"Unknown job type '{job.type}'")
        ctx.checkpoint()
        data = handler(ctx)
    except Exception as exc:
        data = {"url": job.url}
        if not isinstance(exc, JobCancelled):
            evidence = _failure_screenshot(ctx)
            if evidence is not None:
                data["screenshot"] = evidence
        return JobResult(success=False, data=data, error=format_error(exc), duration=_elapsed_ms(started))
    return JobResult(success=True, data=data, error=None, duration=_elapsed_ms(started))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _failure_screenshot(ctx: ActionContext) -> dict[str, Any] | None:
    # Diagnostic only: a dead page or a failing upload must not mask the real error.
    if page_is_closed(ctx.page):
        return None
    try:
        image = ctx.page.screenshot(full_page=True, type="png")
    except Exception:
        return None
    return store_png(ctx, image, "error")
