"""Playwright browser lifecycle for workers."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from browserq.constants import DEFAULT_NAV_TIMEOUT_MS

_VIEWPORT = {"width": 1280, "height": 860}


def headless_from_env() -> bool:
    raw = str(os.getenv("BROWSERQ_HEADLESS", "1")).strip().lower()
    return raw not in {"0", "false", "no", "off"}


def page_is_closed(page: Any | None) -> bool:
    if page is None:
        return True
    checker = getattr(page, "is_closed", None)
    if callable(checker):
        try:
            return bool(checker())
        except Exception:
            return True
    return False


def safe_page_title(page: object) -> str:
    title_attr = getattr(page, "title", None)
    if not callable(title_attr):
        return ""
    try:
        value = title_attr()
    except Exception:
        return ""
    return str(value or "")


def _launch_browser(playwright_obj: Any, *, headless: bool) -> Any:
    kwargs: dict[str, Any] = {"headless": headless}
    try:
        return playwright_obj.chromium.launch(channel="chrome", **kwargs)
    except Exception:
        return playwright_obj.chromium.launch(**kwargs)


class BrowserPool:
    """One browser process and a bounded set of isolated contexts.

    Sync Playwright objects are bound to the thread that created them, so each
    worker thread owns its own pool. Every checkout gets a fresh context, which
    keeps cookies and storage from leaking between jobs.
    """

    def __init__(
        self,
        *,
        headless: bool | None = None,
        max_contexts: int = 1,
        default_timeout_ms: int | None = None,
        playwright_factory: Any = None,
    ) -> None:
        self.headless = headless_from_env() if headless is None else headless
        self.default_timeout_ms = (
            default_timeout_ms
            if default_timeout_ms is not None
            else int(os.getenv("BROWSERQ_NAV_TIMEOUT_MS", str(DEFAULT_NAV_TIMEOUT_MS)))
        )
        self._slots = threading.BoundedSemaphore(max(1, max_contexts))
        self._playwright_factory = playwright_factory
        self._playwright: Any = None
        self._browser: Any = None

    def _ensure_browser(self) -> Any:
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        self._close_browser()
        if self._playwright is None:
            factory = self._playwright_factory
            if factory is None:
                from playwright.sync_api import sync_playwright

                factory = sync_playwright
            self._playwright = factory().start()
        self._browser = _launch_browser(self._playwright, headless=self.headless)
        return self._browser

    @contextmanager
    def checkout(self) -> Iterator[Any]:
        """Yield a page in a brand-new context; the context is closed afterwards."""
        with self._slots:
            browser = self._ensure_browser()
            context = browser.new_context(viewport=_VIEWPORT, ignore_https_errors=True)
            try:
                page = context.new_page()
                page.set_default_timeout(self.default_timeout_ms)
                yield page
            finally:
                try:
                    context.close()
                except Exception:
                    # A crashed browser takes its contexts with it.
                    self._close_browser()

    def _close_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                browser.close()
            except Exception:
                pass

    def close(self) -> None:
        self._close_browser()
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            playwright.stop()
