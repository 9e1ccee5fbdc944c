from enum import Enum
from typing import Final


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"
    REVIEW = "review"
    BLOCKED = "blocked"

    @classmethod
    def from_string(cls, value: str) -> "TaskStatus":
        return cls(normalize_task_status(value))


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_string(cls, value: str) -> "Priority":
        return cls(normalize_priority(value))


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


_STATUS_ALIASES: Final[dict] = {
    "todo": "pending",
    "in_progress": "in-progress",
    "inprogress": "in-progress",
    "active": "in-progress",
    "completed": "done",
    "complete": "done",
    "canceled": "cancelled",
}

_CANONICAL_STATUSES: Final[frozenset] = frozenset(s.value for s in TaskStatus)
_CANONICAL_PRIORITIES: Final[frozenset] = frozenset(p.value for p in Priority)


def normalize_task_status(value: str, *, allow_unknown: bool = False) -> str:
    """Normalize task status input to the canonical lowercase token.

    Accepts common aliases (``todo``, ``in_progress``, ``completed``...).
    When allow_unknown=True, returns the normalized token even if it is not
    a known status.
    """
    token = (value.value if isinstance(value, Enum) else (value or "")).strip().lower().replace(" ", "-")
    if not token:
        if allow_unknown:
            return token
        raise ValueError(f"Invalid task status: {value!r}")
    token = _STATUS_ALIASES.get(token, token)
    if token in _CANONICAL_STATUSES or allow_unknown:
        return token
    raise ValueError(f"Invalid task status: {value!r}")


def normalize_priority(value: str) -> str:
    token = (value.value if isinstance(value, Enum) else (value or "")).strip().lower()
    if token in _CANONICAL_PRIORITIES:
        return token
    raise ValueError(f"Invalid priority: {value!r}")
