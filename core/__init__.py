from .status import Priority, SyncStatus, TaskStatus
from .task_id import Sub, TaskId, TopLevel, parse_task_id
from .models import SyncMetadata, Subtask, Task
from .errors import (
    AuthError,
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    RateLimited,
    StorageError,
    TaskStoreError,
    TransientNetworkError,
    ValidationError,
)
from .task_event import (
    TaskEvent,
    TaskCreated,
    TaskUpdated,
    TaskStatusChanged,
    TaskDeleted,
    SubtaskCreated,
    SubtaskUpdated,
    SubtaskDeleted,
    TasksSaved,
)
from .dependency_validator import (
    DependencyIssue,
    RepairResult,
    ValidationReport,
    repair_dependencies,
    validate_dependencies,
)

__all__ = [
    "Priority",
    "SyncStatus",
    "TaskStatus",
    # Identifiers
    "Sub",
    "TaskId",
    "TopLevel",
    "parse_task_id",
    # Records
    "SyncMetadata",
    "Subtask",
    "Task",
    # Errors
    "AuthError",
    "ConfigurationError",
    "NotFoundError",
    "PersistenceError",
    "RateLimited",
    "StorageError",
    "TaskStoreError",
    "TransientNetworkError",
    "ValidationError",
    # Events
    "TaskEvent",
    "TaskCreated",
    "TaskUpdated",
    "TaskStatusChanged",
    "TaskDeleted",
    "SubtaskCreated",
    "SubtaskUpdated",
    "SubtaskDeleted",
    "TasksSaved",
    # Dependencies
    "DependencyIssue",
    "RepairResult",
    "ValidationReport",
    "repair_dependencies",
    "validate_dependencies",
]
