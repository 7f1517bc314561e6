"""Session capture, the session store and the replay loader page."""

from __future__ import annotations

import html
import json
import os
import re
import secrets
import time
from dataclasses import replace
from pathlib import Path
from typing import Any
from urllib.parse import quote

from browserq.constants import DEFAULT_SESSION_TTL_SECONDS
from browserq.models import Cookie, FieldMapping, SessionBundle
from browserq.storage import home_dir, log_event, read_json, utc_now_iso, write_json

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{64}$")
_NOT_FOUND_MESSAGE = "Session not found or expired"

_STORAGE_SNAPSHOT_JS = """
(area) => {
  const store = window[area];
  const out = {};
  if (!store) return out;
  for (let i = 0; i < store.length; i++) {
    const key = store.key(i);
    out[key] = store.getItem(key);
  }
  return out;
}
"""


class SessionNotFound(LookupError):
    """Unknown and expired sessions look the same to callers."""

    def __init__(self) -> None:
        super().__init__(_NOT_FOUND_MESSAGE)


def session_ttl_seconds() -> int:
    return int(os.getenv("BROWSERQ_SESSION_TTL_SECONDS", str(DEFAULT_SESSION_TTL_SECONDS)))


def capture_session(
    page: Any,
    *,
    ttl_seconds: int | None = None,
    field_mappings: list[FieldMapping] | None = None,
) -> SessionBundle:
    """Snapshot cookies and web storage of the page's browsing context."""
    ttl = session_ttl_seconds() if ttl_seconds is None else ttl_seconds
    cookies = [Cookie.from_dict(item) for item in page.context.cookies()]
    local_storage = _storage_snapshot(page, "localStorage")
    session_storage = _storage_snapshot(page, "sessionStorage")
    return SessionBundle(
        cookies=cookies,
        local_storage=local_storage,
        session_storage=session_storage,
        url=str(page.url),
        expires_at=int(time.time() * 1000) + ttl * 1000,
        field_mappings=[item.to_dict() for item in field_mappings or []],
    )


def _storage_snapshot(page: Any, area: str) -> dict[str, str]:
    raw = page.evaluate(_STORAGE_SNAPSHOT_JS, area) or {}
    return {str(key): "" if value is None else str(value) for key, value in raw.items()}


class SessionStore:
    def __init__(self, root: Path | None = None, *, ttl_seconds: int | None = None) -> None:
        self.root = root if root is not None else home_dir()
        self.base = self.root / "sessions"
        self.base.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = session_ttl_seconds() if ttl_seconds is None else ttl_seconds

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id or ""):
            raise SessionNotFound()
        return self.base / f"{session_id}.json"

    def _log(self, message: str) -> None:
        log_event(self.root, "sessions", message)

    def store(self, bundle: SessionBundle) -> str:
        """Persist a bundle and return its opaque 256-bit id."""
        session_id = secrets.token_hex(32)
        now_ms = int(time.time() * 1000)
        # The store never keeps a bundle longer than its own TTL.
        expires_at = min(bundle.expires_at, now_ms + self.ttl_seconds * 1000)
        if expires_at != bundle.expires_at:
            bundle = replace(bundle, expires_at=expires_at)
        write_json(
            self._path(session_id),
            {"sessionId": session_id, "storedAt": utc_now_iso(), "bundle": bundle.to_dict()},
        )
        self._log(
            f"store session={session_id[:8]} cookies={len(bundle.cookies)} "
            f"local_keys={len(bundle.local_storage)} session_keys={len(bundle.session_storage)}"
        )
        return session_id

    def load(self, session_id: str) -> SessionBundle:
        path = self._path(session_id)
        record = read_json(path)
        if record is None:
            self._log(f"load_miss session={session_id[:8]}")
            raise SessionNotFound()
        bundle = SessionBundle.from_dict(record["bundle"])
        if bundle.expires_at <= int(time.time() * 1000):
            path.unlink(missing_ok=True)
            self._log(f"expired session={session_id[:8]}")
            raise SessionNotFound()
        self._log(f"load session={session_id[:8]}")
        return bundle

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        existed = path.exists()
        path.unlink(missing_ok=True)
        if existed:
            self._log(f"delete session={session_id[:8]}")
        return existed

    def extend(self, session_id: str, ttl_seconds: int | None = None) -> SessionBundle:
        """Give a live session a fresh lifetime starting now."""
        bundle = self.load(session_id)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        extended = replace(bundle, expires_at=int(time.time() * 1000) + ttl * 1000)
        record = read_json(self._path(session_id)) or {"sessionId": session_id}
        record["bundle"] = extended.to_dict()
        write_json(self._path(session_id), record)
        self._log(f"extend session={session_id[:8]} ttl={ttl}")
        return extended

    def purge_expired(self) -> int:
        now_ms = int(time.time() * 1000)
        removed = 0
        for path in self.base.glob("*.json"):
            try:
                record = read_json(path)
                expires_at = int(record["bundle"]["expiresAt"]) if record else 0
            except (KeyError, TypeError, ValueError):
                expires_at = 0
            if expires_at <= now_ms:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            self._log(f"purge removed={removed}")
        return removed


def _script_json(value: Any) -> str:
    # Safe to embed inside <script>: no early tag close, no HTML comment openers.
    text = json.dumps(value, ensure_ascii=False)
    return text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def render_loader_page(bundle: SessionBundle, *, filler_url: str | None = None) -> str:
    """HTML that restores cookies, then localStorage, then sessionStorage, then redirects.

    httpOnly cookies cannot be written from script and are skipped. Cookie
    values are written verbatim so the origin receives exactly what was
    captured. With ``filler_url`` the page continues to the re-fill page
    instead of the form itself.
    """
    cookies = [cookie.to_dict() for cookie in bundle.cookies if not cookie.http_only]
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Restoring session</title>
</head>
<body>
  <p id="status">Restoring session for {html.escape(bundle.url)}...</p>
  <script>
    (function () {{
      var cookies = {_script_json(cookies)};
      var localData = {_script_json(bundle.local_storage)};
      var sessionData = {_script_json(bundle.session_storage)};
      var target = {_script_json(bundle.url)};
      var filler = {_script_json(filler_url)};
      cookies.forEach(function (c) {{
        var parts = [c.name + "=" + c.value];
        if (c.domain) parts.push("domain=" + c.domain);
        parts.push("path=" + (c.path || "/"));
        if (c.expires && c.expires > 0) {{
          parts.push("expires=" + new Date(c.expires * 1000).toUTCString());
        }}
        if (c.secure) parts.push("secure");
        if (c.sameSite) parts.push("samesite=" + c.sameSite);
        document.cookie = parts.join("; ");
      }});
      Object.keys(localData).forEach(function (k) {{
        try {{ window.localStorage.setItem(k, localData[k]); }} catch (e) {{}}
      }});
      Object.keys(sessionData).forEach(function (k) {{
        try {{ window.sessionStorage.setItem(k, sessionData[k]); }} catch (e) {{}}
      }});
      window.location.replace(filler || target);
    }})();
  </script>
</body>
</html>
"""


# Runs on the user's copy of the form, so it only touches the DOM.
_REFILL_JS = """function (mappings) {
  var truthy = ["true", "1", "yes", "on", "checked", "y"];
  var filled = 0;
  mappings.forEach(function (m) {
    try {
      var nodes = document.querySelectorAll(m.selector);
      if (!nodes.length) return;
      if (m.fieldType === "file") return;
      if (m.fieldType === "radio") {
        var wanted = String(m.value).trim().toLowerCase();
        for (var i = 0; i < nodes.length; i++) {
          if (String(nodes[i].value).trim().toLowerCase() === wanted) {
            nodes[i].checked = true;
            nodes[i].dispatchEvent(new Event("change", { bubbles: true }));
            filled++;
            return;
          }
        }
        return;
      }
      var el = nodes[0];
      if (m.fieldType === "checkbox") {
        el.checked = m.value === true || truthy.indexOf(String(m.value).trim().toLowerCase()) >= 0;
      } else {
        el.value = m.value;
        el.dispatchEvent(new Event("input", { bubbles: true }));
      }
      el.dispatchEvent(new Event("change", { bubbles: true }));
      filled++;
    } catch (err) {
      console.error("refill failed", m.selector, err);
    }
  });
  alert("Filled " + filled + "/" + mappings.length + " form fields");
}"""


def refill_script(field_mappings: list[dict[str, Any]]) -> str:
    """Self-contained script that re-applies ``field_mappings`` to an open form."""
    return f"({_REFILL_JS})({_script_json(field_mappings)});"


def render_filler_page(bundle: SessionBundle) -> str:
    """Page offering the stored mappings as a bookmarklet and as a console script.

    The filled page lives on another origin, so the user runs the script there.
    """
    script = refill_script(bundle.field_mappings)
    bookmarklet = "javascript:" + quote(script, safe="")
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Fill your form</title>
</head>
<body>
  <h1>Form ready to fill</h1>
  <p>{len(bundle.field_mappings)} field(s) mapped for <code>{html.escape(bundle.url)}</code></p>
  <ol>
    <li>Drag <a id="bookmarklet" href="{html.escape(bookmarklet, quote=True)}">Fill form</a> to your bookmarks bar.</li>
    <li><a href="{html.escape(bundle.url, quote=True)}" target="_blank" rel="noopener">Open the form</a>.</li>
    <li>Click the bookmark, then review and submit the form yourself.</li>
  </ol>
  <p>Or paste this into the browser console on the form page:</p>
  <textarea id="script" readonly rows="8" cols="80">{html.escape(script)}</textarea>
</body>
</html>
"""


def render_error_page(message: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Session unavailable</title>
</head>
<body>
  <h1>Session unavailable</h1>
  <p>{html.escape(message)}</p>
</body>
</html>
"""
