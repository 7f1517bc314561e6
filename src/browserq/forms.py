"""Two-phase form filling: DOM analysis, mapped fill and verification."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from browserq.actions import ActionContext, store_png
from browserq.browser import safe_page_title
from browserq.constants import TEMPORAL_FIELD_TYPES, TEXT_FIELD_TYPES, TRUTHY_VALUES
from browserq.models import FailedField, FieldMapping, FillVerification, FormField, FormStructure
from browserq.sessions import capture_session

_ANALYZE_FORM_JS = r"""
() => {
  const INPUT_TYPES = ["text", "email", "tel", "number", "url", "password", "search",
    "date", "datetime-local", "time", "week", "month", "checkbox", "radio", "file"];
  const esc = (v) => CSS.escape(String(v));
  const attr = (v) => String(v).replace(/\\/g, "\\\\").replace(/"/g, '\\"');
  const clean = (t) => String(t || "").replace(/\s+/g, " ").trim();
  const unique = (sel) => {
    try { return document.querySelectorAll(sel).length === 1; } catch (e) { return false; }
  };
  const pathSelector = (el) => {
    const parts = [];
    let node = el;
    while (node && node.nodeType === 1 && node !== document.documentElement) {
      if (node.id && unique("#" + esc(node.id))) { parts.unshift("#" + esc(node.id)); break; }
      let index = 1;
      let sib = node;
      while ((sib = sib.previousElementSibling)) { if (sib.tagName === node.tagName) index++; }
      parts.unshift(node.tagName.toLowerCase() + ":nth-of-type(" + index + ")");
      node = node.parentElement;
    }
    if (!parts.length || !parts[0].startsWith("#")) parts.unshift("html");
    return parts.join(" > ");
  };
  const selectorFor = (el) => {
    const tag = el.tagName.toLowerCase();
    if (el.id && unique("#" + esc(el.id))) return "#" + esc(el.id);
    const name = el.getAttribute("name");
    if (name) {
      const byName = tag + '[name="' + attr(name) + '"]';
      if (unique(byName)) return byName;
    }
    return pathSelector(el);
  };
  const labelFor = (el) => {
    if (el.id) {
      const explicit = document.querySelector('label[for="' + attr(el.id) + '"]');
      if (explicit && clean(explicit.textContent)) return clean(explicit.textContent);
    }
    const wrapping = el.closest("label");
    if (wrapping && clean(wrapping.textContent)) return clean(wrapping.textContent);
    if (clean(el.getAttribute("aria-label"))) return clean(el.getAttribute("aria-label"));
    const labelledBy = el.getAttribute("aria-labelledby");
    if (labelledBy) {
      const text = labelledBy.split(/\s+/).map((id) => {
        const n = document.getElementById(id);
        return n ? clean(n.textContent) : "";
      }).join(" ");
      if (clean(text)) return clean(text);
    }
    if (clean(el.getAttribute("placeholder"))) return clean(el.getAttribute("placeholder"));
    const prev = el.previousElementSibling;
    if (prev && !["INPUT", "SELECT", "TEXTAREA"].includes(prev.tagName) && clean(prev.textContent)) {
      return clean(prev.textContent).slice(0, 120);
    }
    return clean(el.getAttribute("name"));
  };

  const fields = [];
  const seenGroups = new Set();
  for (const el of document.querySelectorAll("input, textarea, select")) {
    if (el.disabled) continue;
    const tag = el.tagName.toLowerCase();
    const type = tag === "input" ? (el.getAttribute("type") || "text").toLowerCase() : tag;
    if (tag === "input" && !INPUT_TYPES.includes(type)) continue;
    const name = el.getAttribute("name");
    if (type === "radio" && name) {
      if (seenGroups.has(name)) continue;
      seenGroups.add(name);
      const groupSelector = 'input[type="radio"][name="' + attr(name) + '"]';
      const radios = Array.from(document.querySelectorAll(groupSelector));
      const fieldset = el.closest("fieldset");
      const legend = fieldset ? fieldset.querySelector("legend") : null;
      fields.push({
        selector: groupSelector,
        type: "radio",
        label: legend && clean(legend.textContent) ? clean(legend.textContent) : labelFor(el),
        name: name,
        required: radios.some((r) => r.required),
        options: radios.map((r) => r.value),
      });
      continue;
    }
    const entry = {
      selector: selectorFor(el),
      type: type,
      label: labelFor(el),
      name: name || null,
      required: !!el.required,
    };
    if (type === "select") {
      entry.options = Array.from(el.options).map((o) => clean(o.textContent) || o.value);
    }
    fields.push(entry);
  }

  const form = document.querySelector("form");
  let formSelector = null;
  if (form) {
    formSelector = form.id ? "#" + esc(form.id)
      : (form.getAttribute("name") ? 'form[name="' + attr(form.getAttribute("name")) + '"]' : "form");
  }
  const scope = form || document;
  const submit = scope.querySelector('button[type="submit"], input[type="submit"]')
    || scope.querySelector("button:not([type])");
  return {
    url: location.href,
    title: document.title,
    fields: fields,
    formSelector: formSelector,
    submitButton: submit ? selectorFor(submit) : null,
  };
}
"""

_FIELD_STATE_JS = r"""
(selector) => {
  let nodes;
  try { nodes = Array.from(document.querySelectorAll(selector)); } catch (e) { return {exists: false}; }
  if (!nodes.length) return {exists: false};
  const el = nodes[0];
  return {
    exists: true,
    checked: nodes.some((n) => !!n.checked),
    value: String(el.value == null ? "" : el.value).trim(),
    files: el.files ? el.files.length : 0,
  };
}
"""

_RADIO_LABEL_JS = "(el) => (el.labels && el.labels.length ? el.labels[0].textContent : '')"

_TEMPORAL_FORMATS = {
    "date": "%Y-%m-%d",
    "datetime-local": "%Y-%m-%dT%H:%M",
    "time": "%H:%M",
    "month": "%Y-%m",
    "week": "%G-W%V",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value or "").strip().lower() in TRUTHY_VALUES


def format_temporal_value(field_type: str, value: Any) -> str:
    """Render ``value`` the way an ``<input type=field_type>`` expects it."""
    fmt = _TEMPORAL_FORMATS[field_type]
    if isinstance(value, datetime):
        return value.strftime(fmt)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).strftime(fmt)
    text = str(value).strip()
    if field_type == "time":
        try:
            return datetime.strptime(text, "%H:%M:%S").strftime(fmt)
        except ValueError:
            pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        # Already in input format (e.g. "2024-W05" or "14:30") or unparseable.
        return text
    return parsed.strftime(fmt)


def analyze_form(page: Any) -> FormStructure:
    return FormStructure.from_dict(page.evaluate(_ANALYZE_FORM_JS))


def run_analyze(ctx: ActionContext) -> dict[str, Any]:
    page = ctx.page
    page.goto(ctx.payload["url"], wait_until="load", timeout=ctx.settings.nav_timeout_ms)
    ctx.checkpoint()
    structure = analyze_form(page)
    return {
        "url": page.url,
        "phase": "analyze",
        "formStructure": structure.to_dict(),
        "needsMapping": True,
    }


def apply_mapping(page: Any, selector: str, field_type: str, value: Any, *, timeout_ms: int) -> None:
    locator = page.locator(selector)
    target = locator.first
    target.wait_for(state="attached", timeout=timeout_ms)
    if field_type in TEXT_FIELD_TYPES:
        target.fill("" if value is None else str(value), timeout=timeout_ms)
    elif field_type in TEMPORAL_FIELD_TYPES:
        target.fill(format_temporal_value(field_type, value), timeout=timeout_ms)
    elif field_type == "select":
        choice = [str(item) for item in value] if isinstance(value, list) else str(value)
        target.select_option(choice, timeout=timeout_ms)
    elif field_type == "checkbox":
        target.set_checked(is_truthy(value), timeout=timeout_ms)
    elif field_type == "radio":
        _check_radio(locator, value, timeout_ms=timeout_ms)
    elif field_type == "file":
        files = [str(item) for item in value] if isinstance(value, list) else str(value)
        target.set_input_files(files, timeout=timeout_ms)
    else:
        raise ValueError(f"unsupported field type '{field_type}'")


def _check_radio(locator: Any, value: Any, *, timeout_ms: int) -> None:
    wanted = str(value).strip().lower()
    for index in range(locator.count()):
        option = locator.nth(index)
        candidates = {
            str(option.get_attribute("value") or "").strip().lower(),
            str(option.get_attribute("aria-label") or "").strip().lower(),
            " ".join(str(option.evaluate(_RADIO_LABEL_JS) or "").split()).lower(),
        }
        if wanted in candidates:
            option.check(timeout=timeout_ms)
            return
    raise ValueError(f"no radio option matches {value!r}")


def fill_fields(
    page: Any,
    mappings: list[FieldMapping],
    structure: FormStructure,
    *,
    timeout_ms: int,
    checkpoint: Any = None,
) -> tuple[list[FieldMapping], list[FailedField]]:
    """Apply every mapping; a field that cannot be set is recorded and skipped.

    Mappings for selectors that Phase 1 did not report are never applied.
    """
    known: dict[str, FormField] = {item.selector: item for item in structure.fields}
    filled: list[FieldMapping] = []
    failed: list[FailedField] = []
    for mapping in mappings:
        if checkpoint is not None:
            checkpoint()
        if mapping.selector not in known:
            failed.append(FailedField(selector=mapping.selector, error="selector not in form structure"))
            continue
        field_type = known[mapping.selector].type
        try:
            apply_mapping(page, mapping.selector, field_type, mapping.value, timeout_ms=timeout_ms)
        except Exception as exc:
            failed.append(FailedField(selector=mapping.selector, error=f"{type(exc).__name__}: {exc}"))
            continue
        filled.append(mapping)
    return filled, failed


def is_field_filled(state: dict[str, Any], field_type: str, value: Any) -> bool:
    if not state.get("exists"):
        return False
    if field_type == "checkbox":
        return bool(state.get("checked")) == is_truthy(value)
    if field_type == "radio":
        return bool(state.get("checked"))
    if field_type == "file":
        return int(state.get("files") or 0) > 0
    return bool(state.get("value"))


def verify_fields(page: Any, mappings: list[FieldMapping], structure: FormStructure) -> FillVerification:
    known = {item.selector: item.type for item in structure.fields}
    checks = []
    for mapping in mappings:
        if mapping.selector not in known:
            checks.append((mapping.selector, False))
            continue
        state = page.evaluate(_FIELD_STATE_JS, mapping.selector) or {}
        checks.append((mapping.selector, is_field_filled(state, known[mapping.selector], mapping.value)))
    return FillVerification.from_checks(checks)


def run_fill(ctx: ActionContext) -> dict[str, Any]:
    """Fill a previously analyzed form. The form is never submitted."""
    page = ctx.page
    structure = FormStructure.from_dict(ctx.payload["formStructure"])
    mappings = [FieldMapping.from_dict(item) for item in ctx.payload["mappings"]]
    page.goto(ctx.payload["url"], wait_until="load", timeout=ctx.settings.nav_timeout_ms)
    ctx.checkpoint()

    _, failed = fill_fields(
        page,
        mappings,
        structure,
        timeout_ms=ctx.settings.field_timeout_ms,
        checkpoint=ctx.checkpoint,
    )
    verification = verify_fields(page, mappings, structure)
    ctx.checkpoint()

    data: dict[str, Any] = {
        "url": page.url,
        "title": safe_page_title(page),
        "phase": "fill",
        "fieldsFilled": len(mappings) - len(failed),
        "fieldsFailed": len(failed),
        "failedFields": [item.to_dict() for item in failed],
        "verification": verification.to_dict(),
    }
    image = page.screenshot(full_page=True, type="png")
    data["screenshot"] = store_png(ctx, image, "form")
    if ctx.payload.get("captureSession", True):
        bundle = capture_session(
            page,
            ttl_seconds=ctx.settings.session_ttl_seconds,
            field_mappings=mappings,
        )
        data["session"] = bundle.to_dict()
    return data


def run_fill_form_auto(ctx: ActionContext) -> dict[str, Any]:
    if ctx.payload.get("phase") == "fill":
        return run_fill(ctx)
    return run_analyze(ctx)


def _normalize(text: str) -> str:
    return _NON_ALNUM.sub("", str(text).lower())


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            out.update(_flatten(value, full_key))
        elif value is not None and value != "":
            out[full_key] = value
    return out


def match_fields(
    fields: list[FormField],
    user_data: dict[str, Any],
    files: dict[str, str] | None = None,
) -> list[FieldMapping]:
    """Map form fields to user data by normalized name and label matching.

    Used when no smarter mapper is plugged in. Text matches score 0.7 and file
    matches 0.8; each field takes the first key that matches.
    """
    flat = _flatten(user_data)
    mappings: list[FieldMapping] = []
    for item in fields:
        needles = [p for p in (_normalize(item.name or ""), _normalize(item.label)) if p]
        if not needles:
            continue
        if item.type == "file":
            for key, path in (files or {}).items():
                norm_key = _normalize(key)
                if norm_key and any(norm_key == p or norm_key in p or p in norm_key for p in needles):
                    mappings.append(
                        FieldMapping(selector=item.selector, value=path, confidence=0.8, field_type="file", source=key)
                    )
                    break
            continue
        for key, value in flat.items():
            norm_key = _normalize(key.rsplit(".", 1)[-1])
            if not norm_key:
                continue
            if any(norm_key == p or norm_key in p or p in norm_key for p in needles):
                mappings.append(
                    FieldMapping(
                        selector=item.selector,
                        value=value,
                        confidence=0.7,
                        field_type=item.type,
                        source=key,
                    )
                )
                break
    return mappings
