"""Task and subtask records as stored in the task document."""

import copy
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from .status import Priority, SyncStatus, TaskStatus, normalize_priority, normalize_task_status
from .task_id import Sub, TaskId, TopLevel, parse_task_id

DEFAULT_TITLE = "Untitled Task"

# Keys owned by the dataclasses below; anything else is preserved in ``extra``.
_TASK_KEYS = {
    "id",
    "title",
    "description",
    "status",
    "priority",
    "dependencies",
    "details",
    "testStrategy",
    "subtasks",
    "taskType",
    "complexityScore",
    "remoteItemId",
    "syncStatus",
    "syncError",
    "lastSyncedAt",
    "lastModifiedAt",
    "remoteUpdatedAt",
}

# Any of these marks a record as having sync metadata.
_SYNC_DICT_KEYS = ("remoteItemId", "syncStatus", "syncError", "lastSyncedAt", "remoteUpdatedAt")

# Patch keys accepted from callers, mapped to dataclass attribute names.
PATCH_FIELDS = {
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "dependencies": "dependencies",
    "details": "details",
    "testStrategy": "test_strategy",
    "test_strategy": "test_strategy",
    "taskType": "task_type",
    "task_type": "task_type",
    "complexityScore": "complexity_score",
    "complexity_score": "complexity_score",
}


@dataclass
class SyncMetadata:
    remote_item_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: Optional[str] = None
    last_synced_at: Optional[str] = None
    # local edit time and the board item's own clock as last seen
    last_modified_at: Optional[str] = None
    remote_updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "remoteItemId": self.remote_item_id,
            "syncStatus": self.sync_status.value,
            "syncError": self.sync_error,
            "lastSyncedAt": self.last_synced_at,
        }
        if self.last_modified_at:
            data["lastModifiedAt"] = self.last_modified_at
        if self.remote_updated_at:
            data["remoteUpdatedAt"] = self.remote_updated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["SyncMetadata"]:
        if not any(key in data for key in _SYNC_DICT_KEYS):
            return None
        raw_status = data.get("syncStatus") or SyncStatus.PENDING.value
        try:
            status = SyncStatus(raw_status)
        except ValueError:
            status = SyncStatus.PENDING
        remote_id = data.get("remoteItemId")
        return cls(
            remote_item_id=str(remote_id) if remote_id not in (None, "") else None,
            sync_status=status,
            sync_error=data.get("syncError"),
            last_synced_at=data.get("lastSyncedAt"),
            last_modified_at=data.get("lastModifiedAt"),
            remote_updated_at=data.get("remoteUpdatedAt"),
        )


def _coerce_status(value: Any) -> str:
    try:
        return normalize_task_status(value)
    except ValueError:
        return TaskStatus.PENDING.value


def _coerce_priority(value: Any) -> str:
    try:
        return normalize_priority(value)
    except ValueError:
        return Priority.MEDIUM.value


def _coerce_score(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Subtask:
    id: int
    parent_id: int
    title: str = DEFAULT_TITLE
    description: str = ""
    status: str = TaskStatus.PENDING.value
    priority: str = Priority.MEDIUM.value
    dependencies: List[Any] = field(default_factory=list)
    details: str = ""
    test_strategy: str = ""
    task_type: Optional[str] = None
    complexity_score: Optional[int] = None
    sync: Optional[SyncMetadata] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> TaskId:
        return Sub(self.parent_id, self.id)

    def copy(self) -> "Subtask":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(_common_to_dict(self))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], parent_id: int) -> "Subtask":
        raw_id = data.get("id")
        if isinstance(raw_id, str) and "." in raw_id:
            sid = parse_task_id(raw_id)
            child = sid.id  # type: ignore[union-attr]
        else:
            child = int(raw_id)
        return cls(id=child, parent_id=parent_id, **_common_from_dict(data))


@dataclass
class Task:
    id: int
    title: str = DEFAULT_TITLE
    description: str = ""
    status: str = TaskStatus.PENDING.value
    priority: str = Priority.MEDIUM.value
    dependencies: List[Any] = field(default_factory=list)
    details: str = ""
    test_strategy: str = ""
    subtasks: List[Subtask] = field(default_factory=list)
    task_type: Optional[str] = None
    complexity_score: Optional[int] = None
    sync: Optional[SyncMetadata] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> TaskId:
        return TopLevel(self.id)

    def copy(self) -> "Task":
        return copy.deepcopy(self)

    def find_subtask(self, subtask_id: int) -> Optional[Subtask]:
        for sub in self.subtasks:
            if sub.id == subtask_id:
                return sub
        return None

    def next_subtask_id(self) -> int:
        return max((s.id for s in self.subtasks), default=0) + 1

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(_common_to_dict(self))
        data["subtasks"] = [s.to_dict() for s in self.subtasks]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        task_id = parse_task_id(data.get("id"))
        if not isinstance(task_id, TopLevel):
            raise ValueError(f"Top-level task cannot use subtask id {task_id}")
        task = cls(id=task_id.id, **_common_from_dict(data))
        task.subtasks = [Subtask.from_dict(s, task.id) for s in data.get("subtasks") or [] if isinstance(s, dict)]
        return task


def _common_to_dict(record: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "status": record.status,
        "priority": record.priority,
        "dependencies": list(record.dependencies),
        "details": record.details,
        "testStrategy": record.test_strategy,
    }
    if record.task_type is not None:
        data["taskType"] = record.task_type
    if record.complexity_score is not None:
        data["complexityScore"] = record.complexity_score
    if record.sync is not None:
        data.update(record.sync.to_dict())
    return data


def _common_from_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": str(data.get("title") or DEFAULT_TITLE),
        "description": str(data.get("description") or ""),
        "status": _coerce_status(data.get("status")),
        "priority": _coerce_priority(data.get("priority")),
        "dependencies": list(data.get("dependencies") or []),
        "details": str(data.get("details") or ""),
        "test_strategy": str(data.get("testStrategy") or ""),
        "task_type": data.get("taskType"),
        "complexity_score": _coerce_score(data.get("complexityScore")),
        "sync": SyncMetadata.from_dict(data),
        "extra": {k: v for k, v in data.items() if k not in _TASK_KEYS},
    }


def apply_patch(record: Any, patch: Dict[str, Any]) -> List[str]:
    """Apply caller-supplied fields to a Task/Subtask in place.

    Returns the attribute names that actually changed. Unknown keys raise.
    """
    changed: List[str] = []
    known = {f.name for f in fields(record)}
    for key, value in patch.items():
        attr = PATCH_FIELDS.get(key)
        if attr is None or attr not in known:
            raise ValueError(f"Unknown task field: {key}")
        if attr == "status":
            value = normalize_task_status(value)
        elif attr == "priority":
            value = normalize_priority(value)
        elif attr == "dependencies":
            value = list(value or [])
        elif attr == "complexity_score":
            value = _coerce_score(value)
        elif attr in ("title",):
            value = str(value or DEFAULT_TITLE)
        elif attr in ("description", "details", "test_strategy"):
            value = str(value or "")
        if getattr(record, attr) != value:
            setattr(record, attr, value)
            changed.append(attr)
    return changed


def clone_tasks(tasks: List[Task]) -> List[Task]:
    return [t.copy() for t in tasks]


def find_record(tasks: List[Task], task_id: TaskId) -> Optional[Any]:
    """Locate a task or subtask by normalized id."""
    if isinstance(task_id, Sub):
        for task in tasks:
            if task.id == task_id.parent_id:
                return task.find_subtask(task_id.id)
        return None
    for task in tasks:
        if task.id == task_id.id:
            return task
    return None


def next_task_id(tasks: List[Task]) -> int:
    return max((t.id for t in tasks), default=0) + 1


__all__ = [
    "DEFAULT_TITLE",
    "PATCH_FIELDS",
    "SyncMetadata",
    "Subtask",
    "Task",
    "apply_patch",
    "clone_tasks",
    "find_record",
    "next_task_id",
]
