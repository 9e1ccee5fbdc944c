"""Typed lifecycle events emitted after a write is committed.

Events carry enough context for downstream consumers (auto-sync, audit
logs, UIs) without giving them access to the router itself.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# Event types
EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_STATUS = "status_changed"
EVENT_DELETED = "deleted"
EVENT_SUBTASK_CREATED = "subtask_created"
EVENT_SUBTASK_UPDATED = "subtask_updated"
EVENT_SUBTASK_DELETED = "subtask_deleted"
EVENT_SAVED = "saved"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TaskEvent:
    """A single lifecycle notification.

    Attributes:
        task_id: canonical id string ("7" or "7.2"), empty for batch events
        backends: names of the backends that accepted the write
        timestamp: ISO 8601 timestamp of the commit
    """

    task_id: str
    backends: tuple = ()
    timestamp: str = field(default_factory=_now_iso)

    event_type = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "event_type": self.event_type,
            "task_id": self.task_id,
            "backends": list(self.backends),
            "timestamp": self.timestamp,
        }
        data.update(self._payload())
        return data

    def _payload(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class TaskCreated(TaskEvent):
    task: Optional[Dict[str, Any]] = None

    event_type = EVENT_CREATED

    def _payload(self) -> Dict[str, Any]:
        return {"task": self.task}


@dataclass(frozen=True)
class TaskUpdated(TaskEvent):
    changed_fields: tuple = ()

    event_type = EVENT_UPDATED

    def _payload(self) -> Dict[str, Any]:
        return {"changed_fields": list(self.changed_fields)}


@dataclass(frozen=True)
class TaskStatusChanged(TaskEvent):
    old_status: str = ""
    new_status: str = ""

    event_type = EVENT_STATUS

    def _payload(self) -> Dict[str, Any]:
        return {"old": self.old_status, "new": self.new_status}


@dataclass(frozen=True)
class TaskDeleted(TaskEvent):
    event_type = EVENT_DELETED


@dataclass(frozen=True)
class SubtaskCreated(TaskEvent):
    subtask: Optional[Dict[str, Any]] = None

    event_type = EVENT_SUBTASK_CREATED

    def _payload(self) -> Dict[str, Any]:
        return {"subtask": self.subtask}


@dataclass(frozen=True)
class SubtaskUpdated(TaskEvent):
    changed_fields: tuple = ()

    event_type = EVENT_SUBTASK_UPDATED

    def _payload(self) -> Dict[str, Any]:
        return {"changed_fields": list(self.changed_fields)}


@dataclass(frozen=True)
class SubtaskDeleted(TaskEvent):
    event_type = EVENT_SUBTASK_DELETED


@dataclass(frozen=True)
class TasksSaved(TaskEvent):
    count: int = 0

    event_type = EVENT_SAVED

    def _payload(self) -> Dict[str, Any]:
        return {"count": self.count}


def events_to_timeline(events: List[TaskEvent]) -> List[Dict[str, Any]]:
    """Serialize events oldest-first."""
    return [e.to_dict() for e in sorted(events, key=lambda e: e.timestamp)]


__all__ = [
    "TaskEvent",
    "TaskCreated",
    "TaskUpdated",
    "TaskStatusChanged",
    "TaskDeleted",
    "SubtaskCreated",
    "SubtaskUpdated",
    "SubtaskDeleted",
    "TasksSaved",
    "events_to_timeline",
    "EVENT_CREATED",
    "EVENT_UPDATED",
    "EVENT_STATUS",
    "EVENT_DELETED",
    "EVENT_SUBTASK_CREATED",
    "EVENT_SUBTASK_UPDATED",
    "EVENT_SUBTASK_DELETED",
    "EVENT_SAVED",
]
