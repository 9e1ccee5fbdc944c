"""Task <-> remote column mapping.

Pure, stateless functions. The remote service stores one item per task or
subtask; item fields live in columns whose identifiers come from the column
mapping (``field -> column id``). Column values are plain strings.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from config import DEFAULT_COLUMN_MAPPING, DEFAULT_GROUP_MAPPING
from core.models import DEFAULT_TITLE, Subtask, SyncMetadata, Task
from core.status import Priority, SyncStatus, TaskStatus
from core.task_id import Sub, TaskId, TopLevel, try_parse_task_id

STATUS_CODES: Dict[str, str] = {
    TaskStatus.PENDING.value: "1",
    TaskStatus.IN_PROGRESS.value: "2",
    TaskStatus.DONE.value: "3",
    TaskStatus.DEFERRED.value: "4",
    TaskStatus.CANCELLED.value: "5",
    TaskStatus.REVIEW.value: "6",
    TaskStatus.BLOCKED.value: "7",
}
PRIORITY_CODES: Dict[str, str] = {
    Priority.LOW.value: "1",
    Priority.MEDIUM.value: "2",
    Priority.HIGH.value: "3",
    Priority.CRITICAL.value: "4",
}
_STATUS_BY_CODE = {code: name for name, code in STATUS_CODES.items()}
_PRIORITY_BY_CODE = {code: name for name, code in PRIORITY_CODES.items()}

# status -> group key (group keys are translated through the group mapping)
STATUS_GROUPS: Dict[str, str] = {
    TaskStatus.PENDING.value: "pending",
    TaskStatus.IN_PROGRESS.value: "in_progress",
    TaskStatus.REVIEW.value: "in_progress",
    TaskStatus.DONE.value: "completed",
    TaskStatus.DEFERRED.value: "blocked",
    TaskStatus.CANCELLED.value: "blocked",
    TaskStatus.BLOCKED.value: "blocked",
}
SUBTASK_GROUP = "subtasks"

MIN_COMPLEXITY = 1
MAX_COMPLEXITY = 10


@dataclass(frozen=True)
class RemoteRecord:
    """Column representation of one task or subtask."""

    task_id: str
    item_name: str
    group_id: str
    columns: Dict[str, str] = field(default_factory=dict)


@dataclass
class DecodeResult:
    tasks: List[Task] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)  # (item id, reason)


def encode_status(status: str) -> str:
    return STATUS_CODES.get(status, STATUS_CODES[TaskStatus.PENDING.value])


def decode_status(value: Optional[str]) -> str:
    token = (value or "").strip()
    if token in _STATUS_BY_CODE:
        return _STATUS_BY_CODE[token]
    if token.lower() in STATUS_CODES:
        return token.lower()
    return TaskStatus.PENDING.value


def encode_priority(priority: str) -> str:
    return PRIORITY_CODES.get(priority, PRIORITY_CODES[Priority.MEDIUM.value])


def decode_priority(value: Optional[str]) -> str:
    token = (value or "").strip()
    if token in _PRIORITY_BY_CODE:
        return _PRIORITY_BY_CODE[token]
    if token.lower() in PRIORITY_CODES:
        return token.lower()
    return Priority.MEDIUM.value


def clamp_complexity(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        score = int(float(value))
    except (TypeError, ValueError):
        return None
    return max(MIN_COMPLEXITY, min(MAX_COMPLEXITY, score))


def encode_dependencies(record: Union[Task, Subtask]) -> str:
    """Comma-joined canonical ids; sibling shorthand is expanded to dotted form."""
    scope = record.parent_id if isinstance(record, Subtask) else None
    tokens = []
    for raw in record.dependencies:
        parsed = try_parse_task_id(raw, sibling_of=scope)
        tokens.append(str(parsed) if parsed is not None else str(raw))
    return ",".join(tokens)


def decode_dependencies(value: Optional[str], for_subtask: bool) -> List[Any]:
    deps: List[Any] = []
    for token in (value or "").split(","):
        token = token.strip()
        if not token:
            continue
        parsed = try_parse_task_id(token)
        if isinstance(parsed, TopLevel) and not for_subtask:
            deps.append(parsed.id)
        else:
            # strings stay strings inside subtasks so they never read as sibling shorthand
            deps.append(str(parsed) if parsed is not None else token)
    return deps


def group_key_for(record: Union[Task, Subtask]) -> str:
    if isinstance(record, Subtask):
        return SUBTASK_GROUP
    return STATUS_GROUPS.get(record.status, "pending")


def task_to_record(
    record: Union[Task, Subtask],
    column_mapping: Optional[Dict[str, str]] = None,
    group_mapping: Optional[Dict[str, str]] = None,
) -> RemoteRecord:
    columns_map = {**DEFAULT_COLUMN_MAPPING, **(column_mapping or {})}
    groups_map = {**DEFAULT_GROUP_MAPPING, **(group_mapping or {})}
    values: Dict[str, str] = {
        "task_id": str(record.task_id),
        "description": record.description or "",
        "status": encode_status(record.status),
        "priority": encode_priority(record.priority),
        "dependencies": encode_dependencies(record),
        "parent_task": str(record.parent_id) if isinstance(record, Subtask) else "",
        "details": record.details or "",
        "test_strategy": record.test_strategy or "",
    }
    if record.task_type:
        values["task_type"] = str(record.task_type)
    score = clamp_complexity(record.complexity_score)
    if score is not None:
        values["complexity_score"] = str(score)

    columns: Dict[str, str] = {}
    for field_name, value in values.items():
        column_id = columns_map.get(field_name)
        if column_id:
            columns[column_id] = value
    group_key = group_key_for(record)
    return RemoteRecord(
        task_id=str(record.task_id),
        item_name=(record.title or DEFAULT_TITLE).strip() or DEFAULT_TITLE,
        group_id=groups_map.get(group_key, group_key),
        columns=columns,
    )


def item_columns(item: Dict[str, Any]) -> Dict[str, str]:
    """Column id -> text for an item; accepts list or mapping shapes."""
    raw = item.get("column_values") or {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    result: Dict[str, str] = {}
    for entry in raw:
        if not isinstance(entry, dict) or "id" not in entry:
            continue
        value = entry.get("text")
        if value is None:
            value = entry.get("value")
        result[str(entry["id"])] = "" if value is None else str(value)
    return result


def item_task_id(item: Dict[str, Any], column_mapping: Optional[Dict[str, str]] = None) -> Optional[TaskId]:
    columns_map = {**DEFAULT_COLUMN_MAPPING, **(column_mapping or {})}
    return try_parse_task_id(item_columns(item).get(columns_map["task_id"], ""))


def item_to_record(item: Dict[str, Any], column_mapping: Optional[Dict[str, str]] = None) -> Union[Task, Subtask]:
    """Decode one remote item.

    Raises:
        ValueError: when the item carries no readable task id
    """
    columns_map = {**DEFAULT_COLUMN_MAPPING, **(column_mapping or {})}
    columns = item_columns(item)

    def col(name: str) -> str:
        column_id = columns_map.get(name)
        return columns.get(column_id, "") if column_id else ""

    task_id = try_parse_task_id(col("task_id"))
    if task_id is None:
        raise ValueError(f"item {item.get('id')!r} has no task id")
    is_sub = isinstance(task_id, Sub)
    common = dict(
        title=str(item.get("name") or DEFAULT_TITLE),
        description=col("description"),
        status=decode_status(col("status")),
        priority=decode_priority(col("priority")),
        dependencies=decode_dependencies(col("dependencies"), for_subtask=is_sub),
        details=col("details"),
        test_strategy=col("test_strategy"),
        task_type=col("task_type") or None,
        complexity_score=clamp_complexity(col("complexity_score")),
        sync=SyncMetadata(
            remote_item_id=str(item["id"]) if item.get("id") is not None else None,
            sync_status=SyncStatus.SYNCED,
            remote_updated_at=str(item["updated_at"]) if item.get("updated_at") else None,
        ),
    )
    if is_sub:
        return Subtask(id=task_id.id, parent_id=task_id.parent_id, **common)
    return Task(id=task_id.id, **common)


def items_to_tasks(items: List[Dict[str, Any]], column_mapping: Optional[Dict[str, str]] = None) -> DecodeResult:
    """Decode a board into tasks sorted by id, subtasks attached to parents."""
    result = DecodeResult()
    parents: Dict[int, Task] = {}
    subtasks: List[Subtask] = []
    for item in items:
        try:
            record = item_to_record(item, column_mapping)
        except ValueError as exc:
            result.errors.append((str(item.get("id")), str(exc)))
            continue
        if isinstance(record, Subtask):
            subtasks.append(record)
        elif record.id in parents:
            result.errors.append((str(item.get("id")), f"duplicate task id {record.id}"))
        else:
            parents[record.id] = record
    for sub in sorted(subtasks, key=lambda s: (s.parent_id, s.id)):
        parent = parents.get(sub.parent_id)
        if parent is None:
            result.errors.append((str(sub.sync.remote_item_id if sub.sync else ""), f"orphan subtask {sub.task_id}"))
            continue
        if parent.find_subtask(sub.id) is not None:
            result.errors.append((str(sub.sync.remote_item_id if sub.sync else ""), f"duplicate subtask {sub.task_id}"))
            continue
        parent.subtasks.append(sub)
    result.tasks = [parents[key] for key in sorted(parents)]
    return result


def validate_record(record: RemoteRecord, column_mapping: Optional[Dict[str, str]] = None) -> List[str]:
    columns_map = {**DEFAULT_COLUMN_MAPPING, **(column_mapping or {})}
    errors: List[str] = []
    if not record.item_name.strip():
        errors.append("item name is empty")
    if try_parse_task_id(record.columns.get(columns_map["task_id"], "")) is None:
        errors.append("task id column missing or unreadable")
    status_col = columns_map.get("status")
    if status_col and record.columns.get(status_col) not in _STATUS_BY_CODE:
        errors.append("status column holds an unknown code")
    priority_col = columns_map.get("priority")
    if priority_col and record.columns.get(priority_col) not in _PRIORITY_BY_CODE:
        errors.append("priority column holds an unknown code")
    if not record.group_id:
        errors.append("group is empty")
    return errors


_COMPARED_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "details",
    "test_strategy",
    "task_type",
    "complexity_score",
)


def compare_tasks(left: Union[Task, Subtask], right: Union[Task, Subtask]) -> List[str]:
    """Names of content fields that differ (sync metadata is ignored).

    Dependencies are compared after normalization.
    """
    changed = [name for name in _COMPARED_FIELDS if getattr(left, name) != getattr(right, name)]
    if encode_dependencies(left) != encode_dependencies(right):
        changed.append("dependencies")
    return changed


__all__ = [
    "STATUS_CODES",
    "PRIORITY_CODES",
    "STATUS_GROUPS",
    "SUBTASK_GROUP",
    "RemoteRecord",
    "DecodeResult",
    "encode_status",
    "decode_status",
    "encode_priority",
    "decode_priority",
    "clamp_complexity",
    "encode_dependencies",
    "decode_dependencies",
    "group_key_for",
    "task_to_record",
    "item_columns",
    "item_task_id",
    "item_to_record",
    "items_to_tasks",
    "validate_record",
    "compare_tasks",
]
