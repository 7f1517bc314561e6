import unittest
from datetime import date, datetime

from browserq.actions import ActionContext, ActionSettings
from browserq.forms import (
    _ANALYZE_FORM_JS,
    _FIELD_STATE_JS,
    fill_fields,
    format_temporal_value,
    is_field_filled,
    is_truthy,
    match_fields,
    run_fill_form_auto,
    verify_fields,
)
from browserq.models import FieldMapping, FormField, FormStructure, Job

_SETTINGS = ActionSettings(field_timeout_ms=100, session_ttl_seconds=3600)


class _FakeTimeoutError(Exception):
    pass


class _FakeElementHandle:
    """One element or a group of radios behind a selector."""

    def __init__(self, page: "_FakeFormPage", selector: str, index: int | None = None) -> None:
        self.page = page
        self.selector = selector
        self.index = index

    @property
    def _node(self) -> dict:
        node = self.page.dom.get(self.selector)
        if node is None:
            raise _FakeTimeoutError(f"Timeout exceeded waiting for {self.selector}")
        return node

    @property
    def first(self) -> "_FakeElementHandle":
        return self

    def wait_for(self, state=None, timeout=None) -> None:
        self._node

    def fill(self, value: str, timeout=None) -> None:
        self._node["value"] = value
        self.page.actions.append(("fill", self.selector, value))

    def select_option(self, value, timeout=None) -> None:
        node = self._node
        if value not in node["options"]:
            raise ValueError(f"no option {value!r}")
        node["value"] = value

    def set_checked(self, checked: bool, timeout=None) -> None:
        self._node["checked"] = checked

    def set_input_files(self, files, timeout=None) -> None:
        self._node["files"] = 1 if isinstance(files, str) else len(files)

    def count(self) -> int:
        return len(self._node["radios"])

    def nth(self, index: int) -> "_FakeElementHandle":
        return _FakeElementHandle(self.page, self.selector, index)

    def get_attribute(self, name: str):
        radio = self._node["radios"][self.index]
        return radio.get(name)

    def evaluate(self, _script: str):
        return self._node["radios"][self.index].get("label", "")

    def check(self, timeout=None) -> None:
        for position, radio in enumerate(self._node["radios"]):
            radio["checked"] = position == self.index


class _FakeContext:
    def cookies(self):
        return [{"name": "sid", "value": "abc", "domain": "x.test", "path": "/", "httpOnly": True}]


class _FakeFormPage:
    def __init__(self, dom: dict) -> None:
        self.dom = dom
        self.url = "about:blank"
        self.actions: list = []
        self.context = _FakeContext()
        self.analysis: dict = {}

    def goto(self, url: str, wait_until=None, timeout=None) -> None:
        self.url = url

    def title(self) -> str:
        return "Signup"

    def locator(self, selector: str) -> _FakeElementHandle:
        return _FakeElementHandle(self, selector)

    def screenshot(self, full_page: bool = False, type: str = "png") -> bytes:
        return b"\x89PNG"

    def evaluate(self, script: str, arg=None):
        if script == _ANALYZE_FORM_JS:
            return self.analysis
        if script == _FIELD_STATE_JS:
            node = self.dom.get(arg)
            if node is None:
                return {"exists": False}
            if "radios" in node:
                return {"exists": True, "checked": any(r.get("checked") for r in node["radios"]), "value": "", "files": 0}
            return {
                "exists": True,
                "checked": bool(node.get("checked")),
                "value": str(node.get("value", "")).strip(),
                "files": node.get("files", 0),
            }
        return {"k": "v"} if arg == "localStorage" else {}


def _dom() -> dict:
    return {
        "#name": {"value": ""},
        "#email": {"value": ""},
        "#dob": {"value": ""},
        "#country": {"value": "", "options": ["US", "ES"]},
        "#terms": {"checked": False},
        'input[type="radio"][name="plan"]': {
            "radios": [
                {"value": "free", "label": "Free"},
                {"value": "pro", "label": "Pro plan"},
            ]
        },
        "#cv": {"files": 0},
    }


def _structure() -> FormStructure:
    return FormStructure(
        url="https://x.test/signup",
        title="Signup",
        fields=[
            FormField(selector="#name", type="text", label="Full name", name="name"),
            FormField(selector="#email", type="email", label="Email", name="email"),
            FormField(selector="#dob", type="date", label="Date of birth", name="dob"),
            FormField(selector="#country", type="select", label="Country", name="country", options=["US", "ES"]),
            FormField(selector="#terms", type="checkbox", label="Accept terms", name="terms"),
            FormField(
                selector='input[type="radio"][name="plan"]', type="radio", label="Plan", name="plan",
                options=["free", "pro"],
            ),
            FormField(selector="#cv", type="file", label="CV", name="cv"),
        ],
    )


def _mapping(selector: str, value, field_type: str = "text") -> FieldMapping:
    return FieldMapping(selector=selector, value=value, confidence=0.9, field_type=field_type, source="test")


class FillTests(unittest.TestCase):
    def test_three_valid_and_one_missing_selector(self) -> None:
        page = _FakeFormPage(_dom())
        mappings = [
            _mapping("#name", "Ada Lovelace"),
            _mapping("#email", "ada@example.com", "email"),
            _mapping("#dob", "1815-12-10", "date"),
            _mapping("#nonexistent", "x"),
        ]
        _, failed = fill_fields(page, mappings, _structure(), timeout_ms=100)
        self.assertEqual(len(mappings) - len(failed), 3)
        self.assertEqual([f.selector for f in failed], ["#nonexistent"])
        verification = verify_fields(page, mappings, _structure())
        self.assertEqual(verification.filled_count, 3)
        self.assertEqual(verification.empty_fields, ["#nonexistent"])
        self.assertEqual(verification.filled_count + len(verification.empty_fields), verification.total_count)

    def test_selector_outside_analyzed_structure_is_not_touched(self) -> None:
        dom = _dom()
        dom["#extra"] = {"value": ""}
        page = _FakeFormPage(dom)
        mappings = [_mapping("#name", "Ada"), _mapping("#extra", "sneaky")]
        _, failed = fill_fields(page, mappings, _structure(), timeout_ms=100)
        self.assertEqual([f.selector for f in failed], ["#extra"])
        self.assertEqual(failed[0].error, "selector not in form structure")
        self.assertEqual(page.dom["#extra"]["value"], "")
        verification = verify_fields(page, mappings, _structure())
        self.assertEqual(verification.empty_fields, ["#extra"])

    def test_analyzed_selector_missing_from_live_page_is_failed(self) -> None:
        dom = _dom()
        del dom["#email"]
        page = _FakeFormPage(dom)
        _, failed = fill_fields(page, [_mapping("#email", "ada@example.com", "email")], _structure(), timeout_ms=100)
        self.assertEqual([f.selector for f in failed], ["#email"])
        self.assertTrue(failed[0].error.startswith("_FakeTimeoutError"))

    def test_each_field_type_strategy(self) -> None:
        page = _FakeFormPage(_dom())
        mappings = [
            _mapping("#country", "ES", "select"),
            _mapping("#terms", "yes", "checkbox"),
            _mapping('input[type="radio"][name="plan"]', "Pro plan", "radio"),
            _mapping("#cv", "/tmp/cv.pdf", "file"),
        ]
        _, failed = fill_fields(page, mappings, _structure(), timeout_ms=100)
        self.assertEqual(failed, [])
        self.assertEqual(page.dom["#country"]["value"], "ES")
        self.assertTrue(page.dom["#terms"]["checked"])
        radios = page.dom['input[type="radio"][name="plan"]']["radios"]
        self.assertEqual([r.get("checked") for r in radios], [False, True])
        self.assertTrue(verify_fields(page, mappings, _structure()).all_filled)

    def test_unmatched_radio_and_bad_option_are_failed_fields(self) -> None:
        page = _FakeFormPage(_dom())
        mappings = [
            _mapping('input[type="radio"][name="plan"]', "enterprise", "radio"),
            _mapping("#country", "Atlantis", "select"),
        ]
        _, failed = fill_fields(page, mappings, _structure(), timeout_ms=100)
        self.assertEqual(len(failed), 2)
        self.assertIn("no radio option", failed[0].error)

    def test_analyzed_type_wins_over_mapping_type(self) -> None:
        page = _FakeFormPage(_dom())
        fill_fields(page, [_mapping("#dob", datetime(2001, 2, 3, 4, 5), "text")], _structure(), timeout_ms=100)
        self.assertEqual(page.dom["#dob"]["value"], "2001-02-03")

    def test_checkbox_mapped_false_counts_as_filled_when_unchecked(self) -> None:
        state = {"exists": True, "checked": False, "value": "on", "files": 0}
        self.assertTrue(is_field_filled(state, "checkbox", "false"))
        self.assertFalse(is_field_filled(state, "checkbox", True))
        self.assertFalse(is_field_filled({"exists": False}, "text", "x"))


class PhaseTests(unittest.TestCase):
    def _ctx(self, page, **payload) -> ActionContext:
        return ActionContext(page=page, job=Job(id="j1", type="fill_form_auto", payload=payload), settings=_SETTINGS)

    def test_analyze_phase_returns_structure_and_needs_mapping(self) -> None:
        page = _FakeFormPage(_dom())
        page.analysis = _structure().to_dict()
        data = run_fill_form_auto(self._ctx(page, url="https://x.test/signup", phase="analyze"))
        self.assertTrue(data["needsMapping"])
        self.assertEqual(data["formStructure"]["fieldCount"], 7)
        again = run_fill_form_auto(self._ctx(page, url="https://x.test/signup", phase="analyze"))
        self.assertEqual(again["formStructure"], data["formStructure"])

    def test_fill_phase_reports_counts_screenshot_and_session(self) -> None:
        page = _FakeFormPage(_dom())
        mappings = [_mapping("#name", "Ada"), _mapping("#gone", "x")]
        data = run_fill_form_auto(
            self._ctx(
                page,
                url="https://x.test/signup",
                phase="fill",
                formStructure=_structure().to_dict(),
                mappings=[m.to_dict() for m in mappings],
            )
        )
        self.assertEqual(data["fieldsFilled"], 1)
        self.assertEqual(data["fieldsFailed"], 1)
        self.assertEqual(data["failedFields"][0]["selector"], "#gone")
        self.assertEqual(data["verification"]["totalCount"], 2)
        self.assertIn("base64", data["screenshot"])
        self.assertEqual(data["session"]["cookies"][0]["name"], "sid")
        self.assertEqual(data["session"]["localStorage"], {"k": "v"})
        self.assertEqual(len(data["session"]["fieldMappings"]), 2)


class HelperTests(unittest.TestCase):
    def test_temporal_formatting(self) -> None:
        self.assertEqual(format_temporal_value("date", "2024-01-05T10:30:00"), "2024-01-05")
        self.assertEqual(format_temporal_value("datetime-local", "2024-01-05 10:30:59"), "2024-01-05T10:30")
        self.assertEqual(format_temporal_value("time", "14:30:15"), "14:30")
        self.assertEqual(format_temporal_value("month", date(2024, 3, 9)), "2024-03")
        self.assertEqual(format_temporal_value("week", "2024-01-05"), "2024-W01")
        self.assertEqual(format_temporal_value("week", "2024-W05"), "2024-W05")

    def test_truthy_values(self) -> None:
        for value in (True, "true", "YES", "1", 1, "on"):
            self.assertTrue(is_truthy(value), value)
        for value in (False, "false", "no", "0", 0, None, ""):
            self.assertFalse(is_truthy(value), value)

    def test_match_fields_by_normalized_name_and_label(self) -> None:
        fields = _structure().fields
        mappings = match_fields(
            fields,
            {"contact": {"e-mail": "ada@example.com"}, "full_name": "Ada", "country": "ES", "unused": ""},
            files={"cv": "/tmp/cv.pdf"},
        )
        by_selector = {m.selector: m for m in mappings}
        self.assertEqual(by_selector["#email"].value, "ada@example.com")
        self.assertEqual(by_selector["#email"].source, "contact.e-mail")
        self.assertEqual(by_selector["#email"].confidence, 0.7)
        self.assertEqual(by_selector["#name"].value, "Ada")
        self.assertEqual(by_selector["#country"].value, "ES")
        self.assertEqual(by_selector["#cv"].confidence, 0.8)
        self.assertNotIn("#terms", by_selector)


if __name__ == "__main__":
    unittest.main()
