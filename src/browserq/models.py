"""Data models and strict parsing for jobs, results, forms and sessions."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from browserq.constants import (
    ELEMENT_STATES,
    FILE_SOURCES,
    FORM_PHASES,
    JOB_TYPES,
    NAVIGATION_WAIT_UNTIL,
    PRESS_KEYS,
    TASK_TERMINAL_STATES,
    WAIT_TYPES,
)


class PayloadError(ValueError):
    """A job payload that cannot be accepted."""


@dataclass(frozen=True)
class Job:
    id: str
    type: str
    payload: dict[str, Any]
    task_id: str | None = None
    created_at: str = ""
    retry_of: str | None = None

    @property
    def url(self) -> str | None:
        value = self.payload.get("url")
        return value if isinstance(value, str) else None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Job":
        job_payload = payload.get("payload")
        if not isinstance(job_payload, dict):
            raise ValueError("'payload' must be an object")
        return cls(
            id=_expect_str(payload, "id"),
            type=_expect_str(payload, "type"),
            payload=job_payload,
            task_id=_optional_str(payload, "taskId"),
            created_at=str(payload.get("createdAt", "")),
            retry_of=_optional_str(payload, "retryOf"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "taskId": self.task_id,
            "createdAt": self.created_at,
            "retryOf": self.retry_of,
        }


@dataclass(frozen=True)
class JobResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration: int = 0

    def __post_init__(self) -> None:
        if self.success and self.error:
            raise ValueError("A successful result cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("A failed result must carry an error")
        if self.duration < 0:
            raise ValueError("'duration' must be non-negative")

    @classmethod
    def failure(cls, error: str, data: dict[str, Any] | None = None, duration: int = 0) -> "JobResult":
        return cls(success=False, data=dict(data or {}), error=error, duration=duration)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JobResult":
        success = payload.get("success")
        if not isinstance(success, bool):
            raise ValueError("'success' must be a boolean")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("'data' must be an object")
        duration = payload.get("duration", 0)
        if not isinstance(duration, int) or isinstance(duration, bool):
            raise ValueError("'duration' must be an integer")
        return cls(
            success=success,
            data=data,
            error=_optional_str(payload, "error"),
            duration=duration,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FormField:
    selector: str
    type: str
    label: str = ""
    name: str | None = None
    required: bool = False
    options: list[str] | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FormField":
        options = payload.get("options")
        if options is not None:
            options = _expect_str_list(payload, "options")
        return cls(
            selector=_expect_str(payload, "selector"),
            type=_expect_str(payload, "type"),
            label=str(payload.get("label") or ""),
            name=_optional_str(payload, "name"),
            required=bool(payload.get("required", False)),
            options=options,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "selector": self.selector,
            "type": self.type,
            "label": self.label,
            "name": self.name,
            "required": self.required,
        }
        if self.options is not None:
            out["options"] = list(self.options)
        return out


@dataclass(frozen=True)
class FormStructure:
    url: str
    title: str
    fields: list[FormField]
    form_selector: str | None = None
    submit_button: str | None = None

    @property
    def selectors(self) -> set[str]:
        return {item.selector for item in self.fields}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FormStructure":
        raw_fields = payload.get("fields")
        if not isinstance(raw_fields, list):
            raise ValueError("'fields' must be a list")
        fields = []
        for item in raw_fields:
            if not isinstance(item, dict):
                raise ValueError("'fields' must contain only objects")
            fields.append(FormField.from_dict(item))
        return cls(
            url=_expect_str(payload, "url"),
            title=str(payload.get("title") or ""),
            fields=fields,
            form_selector=_optional_str(payload, "formSelector"),
            submit_button=_optional_str(payload, "submitButton"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "fields": [item.to_dict() for item in self.fields],
            "fieldCount": len(self.fields),
            "formSelector": self.form_selector,
            "submitButton": self.submit_button,
        }


@dataclass(frozen=True)
class FieldMapping:
    selector: str
    value: Any
    confidence: float
    field_type: str
    source: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FieldMapping":
        if "value" not in payload:
            raise ValueError("'value' is required")
        confidence = payload.get("confidence", 1.0)
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            raise ValueError("'confidence' must be a number")
        if not 0.0 <= float(confidence) <= 1.0:
            raise ValueError("'confidence' must be within [0, 1]")
        return cls(
            selector=_expect_str(payload, "selector"),
            value=payload["value"],
            confidence=float(confidence),
            field_type=_expect_str(payload, "fieldType"),
            source=str(payload.get("source") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "selector": self.selector,
            "value": self.value,
            "confidence": self.confidence,
            "fieldType": self.field_type,
            "source": self.source,
        }


@dataclass(frozen=True)
class FailedField:
    selector: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FillVerification:
    all_filled: bool
    filled_count: int
    total_count: int
    empty_fields: list[str]

    @classmethod
    def from_checks(cls, checks: list[tuple[str, bool]]) -> "FillVerification":
        empty = [selector for selector, filled in checks if not filled]
        return cls(
            all_filled=not empty,
            filled_count=len(checks) - len(empty),
            total_count=len(checks),
            empty_fields=empty,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "allFilled": self.all_filled,
            "filledCount": self.filled_count,
            "totalCount": self.total_count,
            "emptyFields": list(self.empty_fields),
        }


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: float = -1
    http_only: bool = False
    secure: bool = False
    same_site: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Cookie":
        expires = payload.get("expires", -1)
        if not isinstance(expires, (int, float)) or isinstance(expires, bool):
            raise ValueError("'expires' must be a number")
        return cls(
            name=_expect_str(payload, "name"),
            value=_expect_str(payload, "value"),
            domain=str(payload.get("domain") or ""),
            path=str(payload.get("path") or "/"),
            expires=float(expires),
            http_only=bool(payload.get("httpOnly", False)),
            secure=bool(payload.get("secure", False)),
            same_site=_optional_str(payload, "sameSite"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires,
            "httpOnly": self.http_only,
            "secure": self.secure,
        }
        if self.same_site is not None:
            out["sameSite"] = self.same_site
        return out


@dataclass(frozen=True)
class SessionBundle:
    cookies: list[Cookie]
    local_storage: dict[str, str]
    session_storage: dict[str, str]
    url: str
    expires_at: int
    field_mappings: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionBundle":
        raw_cookies = payload.get("cookies", [])
        if not isinstance(raw_cookies, list) or any(not isinstance(c, dict) for c in raw_cookies):
            raise ValueError("'cookies' must be a list of objects")
        expires_at = payload.get("expiresAt")
        if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
            raise ValueError("'expiresAt' must be a number of epoch milliseconds")
        mappings = payload.get("fieldMappings", [])
        if not isinstance(mappings, list):
            raise ValueError("'fieldMappings' must be a list")
        return cls(
            cookies=[Cookie.from_dict(item) for item in raw_cookies],
            local_storage=_expect_str_map(payload, "localStorage"),
            session_storage=_expect_str_map(payload, "sessionStorage"),
            url=_expect_str(payload, "url"),
            expires_at=int(expires_at),
            field_mappings=mappings,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cookies": [cookie.to_dict() for cookie in self.cookies],
            "localStorage": self.local_storage,
            "sessionStorage": self.session_storage,
            "url": self.url,
            "expiresAt": self.expires_at,
            "fieldMappings": self.field_mappings,
        }


@dataclass(frozen=True)
class TaskStatus:
    task_id: str
    status: str
    current_step: int = 0
    total_steps: int = 1
    job_ids: list[str] = field(default_factory=list)
    last_job_id: str | None = None
    last_result: dict[str, Any] | None = None
    error: str | None = None
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TASK_TERMINAL_STATES

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TaskStatus":
        job_ids = payload.get("jobIds", [])
        if not isinstance(job_ids, list):
            raise ValueError("'jobIds' must be a list")
        return cls(
            task_id=_expect_str(payload, "taskId"),
            status=_expect_str(payload, "status"),
            current_step=int(payload.get("currentStep", 0)),
            total_steps=int(payload.get("totalSteps", 1)),
            job_ids=[str(item) for item in job_ids],
            last_job_id=_optional_str(payload, "lastJobId"),
            last_result=payload.get("lastResult"),
            error=_optional_str(payload, "error"),
            updated_at=str(payload.get("updatedAt", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "status": self.status,
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
            "jobIds": list(self.job_ids),
            "lastJobId": self.last_job_id,
            "lastResult": self.last_result,
            "error": self.error,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class TaskUpdateEvent:
    task_id: str
    status: str
    timestamp: str
    current_step: int = 0
    total_steps: int = 1
    message: str = ""
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TASK_TERMINAL_STATES

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TaskUpdateEvent":
        return cls(
            task_id=_expect_str(payload, "taskId"),
            status=_expect_str(payload, "status"),
            timestamp=str(payload.get("timestamp", "")),
            current_step=int(payload.get("currentStep", 0)),
            total_steps=int(payload.get("totalSteps", 1)),
            message=str(payload.get("message") or ""),
            result=payload.get("result"),
            error=_optional_str(payload, "error"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "taskId": self.task_id,
            "status": self.status,
            "timestamp": self.timestamp,
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
        }
        if self.message:
            out["message"] = self.message
        if self.result is not None:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error
        return out


def validate_job_payload(job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Check a producer payload for ``job_type`` and return its normalized copy.

    Every job type is a closed variant with its own required fields. Raises
    PayloadError for unknown types and for payloads a worker could not run.
    """
    if job_type not in JOB_TYPES:
        raise PayloadError(f"Unknown job type '{job_type}'. Must be one of {list(JOB_TYPES)}")
    if not isinstance(payload, dict):
        raise PayloadError("Job payload must be an object")
    normalized = dict(payload)
    normalized.pop("type", None)
    normalized.pop("taskId", None)
    _require_url(normalized)

    if job_type == "navigate":
        wait_until = normalized.get("waitUntil")
        if wait_until is not None and wait_until not in NAVIGATION_WAIT_UNTIL:
            raise PayloadError(f"'waitUntil' must be one of {list(NAVIGATION_WAIT_UNTIL)}")
    elif job_type == "click":
        _require_str(normalized, "selector")
    elif job_type == "type":
        _require_str(normalized, "selector")
        if not isinstance(normalized.get("text"), str):
            raise PayloadError("'text' must be a string")
        _optional_non_negative(normalized, "delay")
        key = normalized.get("pressKey")
        if key is not None and key not in PRESS_KEYS:
            raise PayloadError(f"'pressKey' must be one of {list(PRESS_KEYS)}")
    elif job_type == "wait":
        _validate_wait(normalized)
    elif job_type == "upload":
        _require_str(normalized, "selector")
        _validate_upload_sources(normalized)
    elif job_type == "fill_form_auto":
        normalized["phase"] = resolve_form_phase(normalized)
    return normalized


def resolve_form_phase(payload: dict[str, Any]) -> str:
    has_structure = payload.get("formStructure") is not None
    has_mappings = payload.get("mappings") is not None
    phase = payload.get("phase")
    if phase is None:
        if has_structure and has_mappings:
            phase = "fill"
        elif not has_structure and not has_mappings:
            phase = "analyze"
        else:
            raise PayloadError(
                "fill_form_auto needs both 'formStructure' and 'mappings' or neither"
            )
    if phase not in FORM_PHASES:
        raise PayloadError(f"'phase' must be one of {list(FORM_PHASES)}")
    if phase == "analyze" and (has_structure or has_mappings):
        raise PayloadError("analyze phase does not accept 'formStructure' or 'mappings'")
    if phase == "fill":
        if not has_structure or not has_mappings:
            raise PayloadError("fill phase requires 'formStructure' and 'mappings'")
        try:
            FormStructure.from_dict(payload["formStructure"])
            mappings = payload["mappings"]
            if not isinstance(mappings, list):
                raise ValueError("'mappings' must be a list")
            for item in mappings:
                if not isinstance(item, dict):
                    raise ValueError("'mappings' must contain only objects")
                FieldMapping.from_dict(item)
        except (KeyError, ValueError) as exc:
            raise PayloadError(f"Invalid fill payload: {exc}") from exc
    return phase


def _validate_wait(payload: dict[str, Any]) -> None:
    wait_type = payload.get("waitType", "timeout")
    if wait_type not in WAIT_TYPES:
        raise PayloadError(f"'waitType' must be one of {list(WAIT_TYPES)}")
    _optional_non_negative(payload, "timeout")
    timeout = payload.get("timeout")
    if wait_type != "timeout" and timeout is not None and timeout <= 0:
        # Playwright reads 0 as "wait forever".
        raise PayloadError(f"'timeout' must be positive for waitType '{wait_type}'")
    if wait_type in {"selector", "state"}:
        _require_str(payload, "selector")
    if wait_type == "text":
        _require_str(payload, "text")
    if wait_type == "function":
        _require_str(payload, "customFunction")
    state = payload.get("state")
    if state is not None and state not in ELEMENT_STATES:
        raise PayloadError(f"'state' must be one of {list(ELEMENT_STATES)}")
    if wait_type == "state" and state is None:
        raise PayloadError("'state' is required for waitType 'state'")


def _validate_upload_sources(payload: dict[str, Any]) -> None:
    files = payload.get("files")
    if files is None:
        entries = [payload]
    elif isinstance(files, list) and files and all(isinstance(item, dict) for item in files):
        entries = files
    else:
        raise PayloadError("'files' must be a non-empty list of objects")
    for entry in entries:
        source = entry.get("fileSource", "s3")
        if source not in FILE_SOURCES:
            raise PayloadError(f"'fileSource' must be one of {list(FILE_SOURCES)}")
        required = {"s3": "s3Key", "url": "fileUrl", "local": "filePath"}[source]
        _require_str(entry, required)


def _require_url(payload: dict[str, Any]) -> None:
    url = payload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise PayloadError("'url' must be a non-empty string")


def _require_str(payload: dict[str, Any], key: str) -> None:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise PayloadError(f"'{key}' must be a non-empty string")


def _optional_non_negative(payload: dict[str, Any], key: str) -> None:
    value = payload.get(key)
    if value is None:
        return
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
        raise PayloadError(f"'{key}' must be a non-negative number")


def _expect_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value


def _expect_str_list(payload: dict[str, Any], key: str) -> list[str]:
    value = payload[key]
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list of strings")
    if any(not isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' must contain only strings")
    return value


def _expect_str_map(payload: dict[str, Any], key: str) -> dict[str, str]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' must be an object")
    if any(not isinstance(k, str) or not isinstance(v, str) for k, v in value.items()):
        raise ValueError(f"'{key}' must map strings to strings")
    return value
