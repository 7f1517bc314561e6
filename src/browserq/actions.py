"""Per-type browser action routines run by the executor."""

from __future__ import annotations

import base64
import os
import shutil
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from browserq.browser import safe_page_title
from browserq.constants import (
    DEFAULT_ELEMENT_TIMEOUT_MS,
    DEFAULT_FIELD_TIMEOUT_MS,
    DEFAULT_MAX_FILE_BYTES,
    DEFAULT_NAV_TIMEOUT_MS,
    DEFAULT_SESSION_TTL_SECONDS,
    DEFAULT_WAIT_TIMEOUT_MS,
)
from browserq.models import Job
from browserq.object_storage import artifact_key
from browserq.queue import JobCancelled
from browserq.sources import resolve_files

_TEXT_PRESENT_JS = "(text) => !!document.body && document.body.innerText.includes(text)"
_FILE_COUNT_JS = "(el) => (el.files ? el.files.length : 0)"
_SLEEP_SLICE_MS = 250


class UploadAttachError(RuntimeError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"attach_failed: {detail}")


@dataclass(frozen=True)
class ActionSettings:
    nav_timeout_ms: int = DEFAULT_NAV_TIMEOUT_MS
    element_timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS
    wait_timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS
    field_timeout_ms: int = DEFAULT_FIELD_TIMEOUT_MS
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES

    @classmethod
    def from_env(cls) -> "ActionSettings":
        return cls(
            nav_timeout_ms=int(os.getenv("BROWSERQ_NAV_TIMEOUT_MS", str(DEFAULT_NAV_TIMEOUT_MS))),
            element_timeout_ms=int(os.getenv("BROWSERQ_ELEMENT_TIMEOUT_MS", str(DEFAULT_ELEMENT_TIMEOUT_MS))),
            wait_timeout_ms=int(os.getenv("BROWSERQ_WAIT_TIMEOUT_MS", str(DEFAULT_WAIT_TIMEOUT_MS))),
            field_timeout_ms=int(os.getenv("BROWSERQ_FIELD_TIMEOUT_MS", str(DEFAULT_FIELD_TIMEOUT_MS))),
            session_ttl_seconds=int(
                os.getenv("BROWSERQ_SESSION_TTL_SECONDS", str(DEFAULT_SESSION_TTL_SECONDS))
            ),
            max_file_bytes=int(os.getenv("BROWSERQ_MAX_FILE_BYTES", str(DEFAULT_MAX_FILE_BYTES))),
        )


@dataclass
class ActionContext:
    page: Any
    job: Job
    storage: Any = None
    cancel_check: Callable[[], bool] | None = None
    settings: ActionSettings = field(default_factory=ActionSettings)

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    def checkpoint(self) -> None:
        if self.cancel_check is not None and self.cancel_check():
            raise JobCancelled(self.job.id)


def ensure_url(ctx: ActionContext, *, wait_until: str = "domcontentloaded") -> None:
    url = ctx.payload.get("url")
    if url and ctx.page.url != url:
        ctx.page.goto(url, wait_until=wait_until, timeout=ctx.settings.nav_timeout_ms)
    ctx.checkpoint()


def store_png(ctx: ActionContext, image: bytes, prefix: str) -> dict[str, Any]:
    """Upload a PNG to object storage, falling back to inline base64."""
    if ctx.storage is not None:
        try:
            return ctx.storage.upload(artifact_key(prefix), image, content_type="image/png").to_dict()
        except Exception as exc:
            return {"base64": base64.b64encode(image).decode("ascii"), "storageError": str(exc)}
    return {"base64": base64.b64encode(image).decode("ascii")}


def navigate(ctx: ActionContext) -> dict[str, Any]:
    page = ctx.page
    wait_until = ctx.payload.get("waitUntil", "domcontentloaded")
    response = page.goto(ctx.payload["url"], wait_until=wait_until, timeout=ctx.settings.nav_timeout_ms)
    ctx.checkpoint()
    return {
        "url": page.url,
        "title": safe_page_title(page),
        "status": getattr(response, "status", None) if response is not None else None,
    }


def screenshot(ctx: ActionContext) -> dict[str, Any]:
    ensure_url(ctx)
    page = ctx.page
    selector = ctx.payload.get("selector")
    if selector:
        image = page.locator(selector).first.screenshot(timeout=ctx.settings.element_timeout_ms)
    else:
        image = page.screenshot(full_page=bool(ctx.payload.get("fullPage", True)), type="png")
    data: dict[str, Any] = {
        "url": page.url,
        "title": safe_page_title(page),
        "screenshot": base64.b64encode(image).decode("ascii"),
        "size": len(image),
    }
    if ctx.storage is not None:
        data["artifact"] = store_png(ctx, image, "page")
    return data


def click(ctx: ActionContext) -> dict[str, Any]:
    ensure_url(ctx)
    page = ctx.page
    selector = ctx.payload["selector"]
    page.wait_for_selector(selector, state="visible", timeout=ctx.settings.element_timeout_ms)
    ctx.checkpoint()
    if ctx.payload.get("waitForNavigation"):
        with page.expect_navigation(timeout=ctx.settings.nav_timeout_ms):
            page.click(selector)
    else:
        page.click(selector)
    return {"url": page.url, "selector": selector, "clicked": True}


def type_text(ctx: ActionContext) -> dict[str, Any]:
    ensure_url(ctx)
    page = ctx.page
    selector = ctx.payload["selector"]
    text = ctx.payload["text"]
    delay = ctx.payload.get("delay") or 0
    page.wait_for_selector(selector, state="visible", timeout=ctx.settings.element_timeout_ms)
    locator = page.locator(selector).first
    if ctx.payload.get("clearFirst"):
        locator.fill("")
    ctx.checkpoint()
    if delay:
        locator.press_sequentially(text, delay=delay)
    else:
        locator.fill(text)
    # Read back before any key press, which may submit and navigate away.
    final_value = locator.input_value()
    press_key = ctx.payload.get("pressKey")
    if press_key:
        locator.press(press_key)
    return {
        "url": page.url,
        "selector": selector,
        "textLength": len(text),
        "finalValue": final_value,
        "verified": final_value == text,
    }


def wait(ctx: ActionContext) -> dict[str, Any]:
    ensure_url(ctx)
    page = ctx.page
    payload = ctx.payload
    wait_type = payload.get("waitType", "timeout")
    timeout = payload.get("timeout")
    if wait_type == "timeout":
        waited_ms = int(timeout if timeout is not None else 1000)
        _sleep_with_checkpoints(ctx, waited_ms)
        return {"url": page.url, "waitType": wait_type, "waitedMs": waited_ms}

    limit = max(1, int(timeout if timeout is not None else ctx.settings.wait_timeout_ms))
    if wait_type in {"selector", "state"}:
        page.wait_for_selector(payload["selector"], state=payload.get("state", "visible"), timeout=limit)
    elif wait_type == "text":
        page.wait_for_function(_TEXT_PRESENT_JS, arg=payload["text"], timeout=limit)
    elif wait_type == "networkidle":
        page.wait_for_load_state("networkidle", timeout=limit)
    elif wait_type == "function":
        page.wait_for_function(payload["customFunction"], timeout=limit)
    else:
        raise ValueError(f"Unsupported waitType '{wait_type}'")
    ctx.checkpoint()
    return {"url": page.url, "waitType": wait_type, "satisfied": True}


def _sleep_with_checkpoints(ctx: ActionContext, duration_ms: int) -> None:
    deadline = time.monotonic() + duration_ms / 1000.0
    while True:
        ctx.checkpoint()
        remaining_ms = (deadline - time.monotonic()) * 1000.0
        if remaining_ms <= 0:
            return
        ctx.page.wait_for_timeout(min(_SLEEP_SLICE_MS, max(1, int(remaining_ms + 0.999))))


def upload(ctx: ActionContext) -> dict[str, Any]:
    ensure_url(ctx)
    page = ctx.page
    selector = ctx.payload["selector"]
    page.wait_for_selector(selector, state="attached", timeout=ctx.settings.element_timeout_ms)
    workdir = Path(tempfile.mkdtemp(prefix=f"browserq-{ctx.job.id[:8]}-"))
    try:
        paths = resolve_files(ctx.payload, workdir, ctx.storage, limit=ctx.settings.max_file_bytes)
        ctx.checkpoint()
        try:
            page.set_input_files(selector, [str(path) for path in paths])
        except Exception as exc:
            raise UploadAttachError(str(exc)) from exc
        if ctx.payload.get("waitForUpload"):
            _sleep_with_checkpoints(ctx, int(ctx.payload.get("uploadTimeout", 2000)))
        attached = int(page.eval_on_selector(selector, _FILE_COUNT_JS) or 0)
        if attached != len(paths):
            raise UploadAttachError(f"expected {len(paths)} file(s) on {selector}, found {attached}")
        return {
            "url": page.url,
            "selector": selector,
            "filesUploaded": len(paths),
            "fileNames": [path.name for path in paths],
            "totalBytes": sum(path.stat().st_size for path in paths),
        }
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
