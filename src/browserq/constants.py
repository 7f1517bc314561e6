"""Shared vocabularies for job payloads, field types and task states."""

JOB_TYPES = (
    "navigate",
    "screenshot",
    "click",
    "type",
    "wait",
    "upload",
    "fill_form_auto",
)

WAIT_TYPES = ("selector", "text", "state", "networkidle", "timeout", "function")

ELEMENT_STATES = ("visible", "hidden", "attached", "detached")

NAVIGATION_WAIT_UNTIL = ("load", "domcontentloaded", "networkidle", "commit")

FILE_SOURCES = ("s3", "url", "local")

PRESS_KEYS = ("Enter", "Tab", "Escape", "ArrowDown", "ArrowUp")

FORM_PHASES = ("analyze", "fill")

TEXT_FIELD_TYPES = frozenset(
    {"text", "email", "tel", "number", "url", "password", "search", "textarea"}
)

TEMPORAL_FIELD_TYPES = frozenset({"date", "datetime-local", "time", "week", "month"})

CHOICE_FIELD_TYPES = frozenset({"select", "checkbox", "radio"})

FIELD_TYPES = TEXT_FIELD_TYPES | TEMPORAL_FIELD_TYPES | CHOICE_FIELD_TYPES | {"file"}

TRUTHY_VALUES = frozenset({"true", "yes", "y", "on", "1", "checked"})

# Task lifecycle. Cancellation resolves a task as FAILED with error "cancelled".
TASK_PENDING = "PENDING"
TASK_RUNNING = "RUNNING"
TASK_SUCCEEDED = "SUCCEEDED"
TASK_FAILED = "FAILED"
TASK_TERMINAL_STATES = frozenset({TASK_SUCCEEDED, TASK_FAILED})

# Job states as seen through the queue.
JOB_PENDING = "pending"
JOB_CLAIMED = "claimed"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"

CANCELLED_ERROR = "cancelled"

DEFAULT_HOME = "runs/browserq"
DEFAULT_LEASE_SECONDS = 60.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_POLL_INTERVAL_MS = 250
DEFAULT_WORKER_CONCURRENCY = 2
DEFAULT_NAV_TIMEOUT_MS = 30000
DEFAULT_ELEMENT_TIMEOUT_MS = 10000
DEFAULT_WAIT_TIMEOUT_MS = 30000
DEFAULT_FIELD_TIMEOUT_MS = 5000
DEFAULT_SESSION_TTL_SECONDS = 3600
DEFAULT_MAX_FILE_BYTES = 100 * 1024 * 1024
DEFAULT_SERVER_PORT = 4000
