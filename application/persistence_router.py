"""Single entry point for task persistence.

The router owns the active mode (local, remote or hybrid) and turns every
caller operation into a mutation of the in-memory task collection. The same
mutation can then be committed to whichever backends the mode selects, and
re-applied to the local store when the remote side fails. Dependency
validation happens before any backend is touched.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from config import (
    PERSISTENCE_MODES,
    ProjectConfig,
    load_project_config,
    validate_remote_config,
)
from core import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    StorageError,
    Subtask,
    SubtaskCreated,
    SubtaskDeleted,
    SubtaskUpdated,
    Task,
    TaskCreated,
    TaskDeleted,
    TaskEvent,
    TasksSaved,
    TaskStatusChanged,
    TaskStoreError,
    TaskUpdated,
    ValidationError,
)
from core.dependency_validator import (
    RepairResult,
    ValidationReport,
    iter_records,
    new_blocking_issues,
    repair_dependencies,
    strip_references,
    validate_dependencies,
)
from core.models import apply_patch, clone_tasks, find_record, next_task_id
from core.sync_metadata import mark_error, mark_pending, remote_item_id
from core.task_id import Sub, TaskId, TopLevel, parse_task_id
from application.events import EventBus
from application.ports import StorageBackend
from application.project_state import (
    MigrationResult,
    ProjectState,
    classify_project,
    inspect_project,
    migrate_project,
)
from application.sync_service import ReconciliationService, SyncReport
from infrastructure.json_task_store import LocalTaskStore
from infrastructure.remote_api import RateLimiter, RemoteApiClient, SchemaCache
from infrastructure.remote_backend import RemoteTaskBackend

logger = logging.getLogger("tasksync.router")

MODE_LOCAL = "local"
MODE_REMOTE = "remote"
MODE_HYBRID = "hybrid"

PROJECT_ROOT_ENV = "TASKSYNC_PROJECT_ROOT"
SCHEMA_CACHE_PATH = Path(".tasksync") / "schema_cache.yaml"

_SYNC_KEYS = ("remoteItemId", "syncStatus", "syncError", "lastSyncedAt", "lastModifiedAt", "remoteUpdatedAt")
# Keys accepted by create_task/create_subtask besides the patchable fields.
_CREATE_IGNORED = ("id", "subtasks", "parentId") + _SYNC_KEYS


# --- results ---


@dataclass
class TaskQuery:
    """Read filter; every criterion left as None matches everything."""

    statuses: Optional[List[str]] = None
    ids: Optional[List[Any]] = None
    search: Optional[str] = None
    with_subtasks: bool = True

    def matches(self, task: Task, wanted: Optional[Set[TaskId]] = None) -> bool:
        if self.statuses is not None and task.status not in self.statuses:
            return False
        if self.ids is not None:
            if wanted is None:
                wanted = self.wanted_ids()
            if task.task_id not in wanted:
                return False
        if self.search:
            needle = self.search.lower()
            haystack = " ".join((task.title, task.description, task.details)).lower()
            if needle not in haystack:
                return False
        return True

    def wanted_ids(self) -> Set[TaskId]:
        """Normalized ``ids``; unreadable ids raise ValidationError."""
        return {_parse_id(i) for i in self.ids or []}

    def apply(self, tasks: List[Task]) -> List[Task]:
        wanted = self.wanted_ids() if self.ids is not None else None
        selected = [t for t in tasks if self.matches(t, wanted)]
        if not self.with_subtasks:
            for task in selected:
                task.subtasks = []
        return selected


@dataclass
class BackendOutcome:
    backend: str
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"backend": self.backend, "ok": self.ok, "error": self.error}


@dataclass
class WriteOutcome:
    """What happened to one logical write on each backend it touched."""

    operation: str
    backends: List[BackendOutcome] = field(default_factory=list)
    fallback_used: bool = False
    count: int = 0

    @property
    def success(self) -> bool:
        return any(b.ok for b in self.backends)

    @property
    def partial(self) -> bool:
        return self.success and not all(b.ok for b in self.backends)

    @property
    def accepted_by(self) -> Tuple[str, ...]:
        return tuple(b.backend for b in self.backends if b.ok)

    def backend(self, name: str) -> Optional[BackendOutcome]:
        return next((b for b in self.backends if b.backend == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "partial": self.partial,
            "fallbackUsed": self.fallback_used,
            "count": self.count,
            "backends": [b.to_dict() for b in self.backends],
        }


@dataclass
class InitResult:
    mode: str
    fallback_active: bool
    project_state: ProjectState
    migration: Optional[MigrationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "fallbackActive": self.fallback_active,
            "projectState": self.project_state.value,
            "migration": self.migration.to_dict() if self.migration else None,
        }


@dataclass
class RouterStatus:
    mode: Optional[str]
    fallback_active: bool
    remote_ready: bool
    initialized: bool
    project_state: Optional[ProjectState] = None
    project_root: Optional[Path] = None
    config_warnings: List[str] = field(default_factory=list)
    last_outcome: Optional[WriteOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "fallbackActive": self.fallback_active,
            "remoteReady": self.remote_ready,
            "initialized": self.initialized,
            "projectState": self.project_state.value if self.project_state else None,
            "projectRoot": str(self.project_root) if self.project_root else None,
            "configWarnings": list(self.config_warnings),
            "lastOutcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }


# --- mutations ---


@dataclass
class _Change:
    kind: str  # create | update | delete
    task_id: TaskId
    record: Any = None


@dataclass
class _Mutation:
    tasks: List[Task]
    changes: List[_Change] = field(default_factory=list)
    events: List[TaskEvent] = field(default_factory=list)
    result: Any = None
    check_dependencies: bool = False
    # the target record was not in the collection the mutation ran against
    missing_target: bool = False


Mutator = Callable[[List[Task]], _Mutation]
RemoteFactory = Callable[[ProjectConfig, Dict[str, Any]], StorageBackend]


def build_remote_backend(config: ProjectConfig, session_context: Dict[str, Any]) -> RemoteTaskBackend:
    """Wire client, limiter and schema cache from the project config.

    ``session_context`` may carry ``token`` (overrides the configured
    credential reference), ``session`` (a requests session) and ``rate_limiter``.
    """
    remote = config.remote
    override = session_context.get("token")

    def token() -> str:
        return override or remote.credential()

    client = RemoteApiClient(
        remote.endpoint,
        session_context.get("session"),
        token,
        rate_limiter=session_context.get("rate_limiter") or RateLimiter(),
        timeout=remote.timeout_seconds,
        max_attempts=remote.retry_attempts,
    )
    cache = SchemaCache(config.project_root / SCHEMA_CACHE_PATH, token_getter=token) if remote.cache_enabled else None
    return RemoteTaskBackend(client, remote.board_id, remote.column_mapping, remote.group_mapping, cache)


def _content(record: Any) -> Dict[str, Any]:
    data = record.to_dict()
    data.pop("subtasks", None)
    for key in _SYNC_KEYS:
        data.pop(key, None)
    return data


def _coerce_tasks(tasks: Iterable[Any]) -> List[Task]:
    coerced: List[Task] = []
    for item in tasks:
        if isinstance(item, Task):
            coerced.append(item.copy())
        elif isinstance(item, dict):
            try:
                coerced.append(Task.from_dict(item))
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid task: {exc}") from exc
        else:
            raise ValidationError(f"Invalid task: {item!r}")
    return coerced


def _patch(record: Any, patch: Dict[str, Any]) -> List[str]:
    try:
        return apply_patch(record, patch)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _require(tasks: List[Task], task_id: TaskId) -> Any:
    record = find_record(tasks, task_id)
    if record is None:
        kind = "Subtask" if isinstance(task_id, Sub) else "Task"
        raise NotFoundError(f"{kind} {task_id} not found")
    return record


def _parse_id(value: Any) -> TaskId:
    try:
        return parse_task_id(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


class PersistenceRouter:
    """Routes task operations to the local store, the remote board, or both.

    * local: every operation goes to the local task document.
    * remote: operations go to the remote board; when a remote call fails
      (after the client's own retries) the same operation is re-applied to
      the local document and ``fallback_active`` is set until the remote
      side succeeds again.
    * hybrid: the local document is the base; every write is pushed to the
      remote board record by record and then saved locally together with
      the per-record sync status. One successful backend is enough.

    Operations are serialized: one logical operation completes before the
    next one starts.
    """

    def __init__(
        self,
        local: Optional[StorageBackend] = None,
        remote: Optional[StorageBackend] = None,
        remote_factory: RemoteFactory = build_remote_backend,
        event_bus: Optional[EventBus] = None,
        auto_migrate: bool = True,
        backup_on_migrate: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._injected_local = local
        self._injected_remote = remote
        self.remote_factory = remote_factory
        self.events = event_bus or EventBus()
        self.auto_migrate = auto_migrate
        self.backup_on_migrate = backup_on_migrate
        self.clock = clock
        self._lock = threading.RLock()
        self._clear_state()

    def _clear_state(self) -> None:
        self.local: Optional[StorageBackend] = self._injected_local
        self.remote: Optional[StorageBackend] = self._injected_remote
        self.config: Optional[ProjectConfig] = None
        self.project_root: Optional[Path] = None
        self.project_state: Optional[ProjectState] = None
        self.mode: Optional[str] = None
        self.fallback_active = False
        self.remote_ready = False
        self.initialized = False
        self.config_warnings: List[str] = []
        self.last_outcome: Optional[WriteOutcome] = None
        self._session_context: Dict[str, Any] = {}
        self._init_result: Optional[InitResult] = None
        self._warned: set = set()
        self._last_sync: Optional[float] = None

    # --- lifecycle ---

    def initialize(
        self, project_root: Optional[Path] = None, session_context: Optional[Dict[str, Any]] = None
    ) -> InitResult:
        """Classify/migrate the project, load config and connect backends.

        Calling it again returns the first result without side effects.

        Raises:
            ConfigurationError: an unreadable project file, invalid mode
                settings or a remote mode without a board id
        """
        with self._lock:
            if self.initialized and self._init_result is not None:
                return self._init_result

            root = Path(project_root or os.getenv(PROJECT_ROOT_ENV) or Path.cwd()).resolve()
            migration: Optional[MigrationResult] = None
            inspection = inspect_project(root)
            if inspection.needs_migration and self.auto_migrate:
                migration = migrate_project(root, backup=self.backup_on_migrate)
                if not migration.success:
                    logger.warning("automatic migration of %s failed: %s", root, migration.error)
                inspection = inspect_project(root)

            config = load_project_config(root)
            if config.error:
                raise ConfigurationError(config.error)
            report = validate_remote_config(config.remote, check_credential=False)
            if not report.valid:
                raise ConfigurationError("; ".join(report.errors))
            for warning in report.warnings:
                logger.warning("%s", warning)

            mode = config.persistence_mode
            if mode not in PERSISTENCE_MODES:
                raise ConfigurationError(f"Unknown persistence mode {mode!r}")
            if mode != MODE_LOCAL and not config.remote.enabled:
                mode = MODE_LOCAL

            self.project_root = root
            self.config = config
            self.config_warnings = list(report.warnings)
            self._session_context = dict(session_context or {})
            self.local = self._injected_local or LocalTaskStore(root, config.tasks_path)
            self.local.initialize()

            self.mode = mode
            self.remote = self._injected_remote
            self.remote_ready = False
            if mode != MODE_LOCAL:
                if self.remote is None:
                    self.remote = self.remote_factory(config, self._session_context)
                self._connect_remote("initialize")

            self.project_state = inspection.state
            self.initialized = True
            logger.info("persistence initialized for %s in %s mode", root, mode)

            if mode == MODE_HYBRID and config.remote.auto_sync and self.remote_ready:
                try:
                    self.reconcile()
                except TaskStoreError as exc:
                    logger.warning("startup sync failed: %s", exc)

            self._init_result = InitResult(
                mode=mode,
                fallback_active=self.fallback_active,
                project_state=inspection.state,
                migration=migration,
            )
            return self._init_result

    def reset(self) -> None:
        """Forget all state; the next call must initialize again."""
        with self._lock:
            self._clear_state()

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise ConfigurationError("Persistence router is not initialized")

    # --- remote health ---

    def _connect_remote(self, operation: str) -> bool:
        try:
            self.remote.initialize()
        except TaskStoreError as exc:
            self.remote_ready = False
            self._remote_failed(operation, exc)
            return False
        self.remote_ready = True
        return True

    def _remote_available(self, operation: str) -> bool:
        if self.remote is None:
            return False
        if self.remote_ready:
            return True
        return self._connect_remote(operation)

    def _remote_failed(self, operation: str, exc: Exception) -> None:
        if not self._may_fall_back():
            logger.warning("remote %s failed: %s", operation, exc)
            return
        if not self.fallback_active:
            logger.warning("remote %s failed, falling back to local: %s", operation, exc)
        else:
            key = (operation, type(exc).__name__)
            if key not in self._warned:
                self._warned.add(key)
                logger.warning("remote %s still failing: %s", operation, exc)
        self.fallback_active = True

    def _remote_succeeded(self) -> None:
        if self.fallback_active:
            logger.info("remote backend reachable again; fallback cleared")
        self.fallback_active = False
        self._warned.clear()

    # --- reads ---

    def _read(self, operation: str) -> List[Task]:
        attempted: List[Tuple[str, str]] = []
        if self.mode in (MODE_REMOTE, MODE_HYBRID) and self._remote_available(operation):
            try:
                tasks = self.remote.load_tasks()
            except TaskStoreError as exc:
                self._remote_failed(operation, exc)
                attempted.append((self.remote.name, str(exc)))
            else:
                self._remote_succeeded()
                return tasks
        elif self.mode != MODE_LOCAL:
            attempted.append(("remote", "not connected"))
        if attempted and not self._may_fall_back():
            raise PersistenceError(f"{operation} failed", attempted)
        try:
            return self.local.load_tasks()
        except StorageError as exc:
            attempted.append((self.local.name, str(exc)))
            raise PersistenceError(f"{operation} failed", attempted) from exc

    def _may_fall_back(self) -> bool:
        return self.mode == MODE_HYBRID or self.config is None or self.config.remote.fallback_to_local

    def get_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        with self._lock:
            self._require_initialized()
            tasks = self._read("get_tasks")
            return query.apply(tasks) if query else tasks

    def get_task(self, task_id: Any) -> Optional[Any]:
        """Task (or subtask for a dotted id), None when absent."""
        with self._lock:
            self._require_initialized()
            key = _parse_id(task_id)
            return find_record(self._read("get_task"), key)

    def get_subtasks(self, parent_id: Any) -> List[Subtask]:
        with self._lock:
            self._require_initialized()
            key = _parse_id(parent_id)
            parent = _require(self._read("get_subtasks"), TopLevel(key.parent or key.id))
            return list(parent.subtasks)

    # --- writes ---

    def create_task(self, data: Dict[str, Any]) -> Task:
        fields = {k: v for k, v in (data or {}).items() if k not in _CREATE_IGNORED}
        raw_subtasks = list((data or {}).get("subtasks") or [])

        def mutate(tasks: List[Task]) -> _Mutation:
            task = Task(id=next_task_id(tasks))
            _patch(task, fields)
            for index, raw in enumerate(raw_subtasks, start=1):
                sub = Subtask(id=index, parent_id=task.id)
                _patch(sub, {k: v for k, v in dict(raw).items() if k not in _CREATE_IGNORED})
                task.subtasks.append(sub)
            tasks.append(task)
            return _Mutation(
                tasks=tasks,
                changes=[_Change("create", task.task_id, task)],
                events=[TaskCreated(str(task.task_id), task=task.to_dict())],
                result=task,
                check_dependencies=any(r.dependencies for r in iter_records([task])),
            )

        return self._write("create_task", mutate)

    def update_task(self, task_id: Any, patch: Dict[str, Any]) -> Any:
        """Patch a task, or a subtask when given a dotted id."""
        key = _parse_id(task_id)

        def mutate(tasks: List[Task]) -> _Mutation:
            record = _require(tasks, key)
            old_status = record.status
            changed = _patch(record, patch or {})
            mutation = _Mutation(tasks=tasks, result=record, check_dependencies="dependencies" in changed)
            if not changed:
                return mutation
            mutation.changes.append(_Change("update", key, record))
            if isinstance(key, Sub):
                mutation.events.append(SubtaskUpdated(str(key), changed_fields=tuple(changed)))
            else:
                mutation.events.append(TaskUpdated(str(key), changed_fields=tuple(changed)))
            if "status" in changed:
                mutation.events.append(TaskStatusChanged(str(key), old_status=old_status, new_status=record.status))
            return mutation

        return self._write("update_task", mutate)

    def delete_task(self, task_id: Any) -> bool:
        """Delete a task (or subtask) and drop references to it; False if absent."""
        key = _parse_id(task_id)

        def mutate(tasks: List[Task]) -> _Mutation:
            record = find_record(tasks, key)
            if record is None:
                return _Mutation(tasks=tasks, result=False, missing_target=True)
            if isinstance(key, Sub):
                parent = find_record(tasks, TopLevel(key.parent_id))
                parent.subtasks = [s for s in parent.subtasks if s.id != key.id]
                gone = {key}
                event: TaskEvent = SubtaskDeleted(str(key))
            else:
                tasks[:] = [t for t in tasks if t.id != key.id]
                gone = {key} | {s.task_id for s in record.subtasks}
                event = TaskDeleted(str(key))
            changes = [_Change("delete", key)]
            changes.extend(_Change("update", r.task_id, r) for r in strip_references(tasks, gone))
            return _Mutation(tasks=tasks, changes=changes, events=[event], result=True)

        return self._write("delete_task", mutate)

    def create_subtask(self, parent_id: Any, data: Dict[str, Any]) -> Subtask:
        key = _parse_id(parent_id)
        if isinstance(key, Sub):
            raise ValidationError(f"Subtasks cannot be nested under {key}")
        fields = {k: v for k, v in (data or {}).items() if k not in _CREATE_IGNORED}

        def mutate(tasks: List[Task]) -> _Mutation:
            parent = _require(tasks, key)
            sub = Subtask(id=parent.next_subtask_id(), parent_id=parent.id)
            _patch(sub, fields)
            parent.subtasks.append(sub)
            return _Mutation(
                tasks=tasks,
                changes=[_Change("create", sub.task_id, sub)],
                events=[SubtaskCreated(str(sub.task_id), subtask=sub.to_dict())],
                result=sub,
                check_dependencies=bool(sub.dependencies),
            )

        return self._write("create_subtask", mutate)

    def save_tasks(self, tasks: Iterable[Any]) -> WriteOutcome:
        """Replace the whole collection.

        Locally the document is rewritten. On the remote board changed and
        new records are upserted in input order; items for records missing
        from ``tasks`` are left in place.
        """
        incoming = _coerce_tasks(tasks)

        def mutate(current: List[Task]) -> _Mutation:
            saved = clone_tasks(incoming)
            changes: List[_Change] = []
            for task in saved:
                before = find_record(current, task.task_id)
                if before is None:
                    changes.append(_Change("create", task.task_id, task))
                    continue
                if _content(before) != _content(task):
                    changes.append(_Change("update", task.task_id, task))
                for sub in task.subtasks:
                    old_sub = before.find_subtask(sub.id)
                    if old_sub is None:
                        changes.append(_Change("create", sub.task_id, sub))
                    elif _content(old_sub) != _content(sub):
                        changes.append(_Change("update", sub.task_id, sub))
            return _Mutation(
                tasks=saved,
                changes=changes,
                events=[TasksSaved("", count=len(saved))],
                result=len(saved),
                check_dependencies=True,
            )

        self._write("save_tasks", mutate, always_commit=True)
        return self.last_outcome

    # --- commit ---

    def _prepare(self, base: List[Task], mutate: Mutator) -> _Mutation:
        before = clone_tasks(base)
        mutation = mutate(clone_tasks(base))
        if mutation.check_dependencies:
            issues = new_blocking_issues(before, mutation.tasks)
            if issues:
                raise ValidationError(
                    "Dependency check failed: " + "; ".join(i.message for i in issues), issues
                )
        for change in mutation.changes:
            if change.kind != "delete":
                for record in _touched(change):
                    mark_pending(record)
        return mutation

    def _write(self, operation: str, mutate: Mutator, always_commit: bool = False) -> Any:
        with self._lock:
            self._require_initialized()
            if self.mode == MODE_REMOTE:
                mutation, outcome = self._commit_remote(operation, mutate, always_commit)
            elif self.mode == MODE_HYBRID:
                mutation, outcome = self._commit_hybrid(operation, mutate, always_commit)
            else:
                mutation, outcome = self._commit_local(operation, mutate, [], always_commit)
            if outcome is None:
                return mutation.result
            outcome.count = len(mutation.changes)
            self.last_outcome = outcome
            for event in mutation.events:
                self.events.publish(_stamp(event, outcome.accepted_by))
            if self.mode == MODE_HYBRID:
                self._sync_when_due()
            return mutation.result

    def _commit_local(
        self,
        operation: str,
        mutate: Mutator,
        prior: List[Tuple[str, str]],
        always_commit: bool,
    ) -> Tuple[_Mutation, Optional[WriteOutcome]]:
        try:
            base = self.local.load_tasks()
        except StorageError as exc:
            raise PersistenceError(f"{operation} failed", prior + [(self.local.name, str(exc))]) from exc
        mutation = self._prepare(base, mutate)
        if not mutation.changes and not always_commit:
            return mutation, None
        try:
            self.local.save_tasks(mutation.tasks)
        except StorageError as exc:
            raise PersistenceError(f"{operation} failed", prior + [(self.local.name, str(exc))]) from exc
        outcome = WriteOutcome(operation, fallback_used=bool(prior))
        outcome.backends.extend(BackendOutcome(name, False, reason) for name, reason in prior)
        outcome.backends.append(BackendOutcome(self.local.name, True))
        return mutation, outcome

    def _commit_remote(
        self, operation: str, mutate: Mutator, always_commit: bool
    ) -> Tuple[_Mutation, Optional[WriteOutcome]]:
        if not self._remote_available(operation):
            return self._fall_back(operation, mutate, "remote backend not connected", always_commit)
        try:
            base = self.remote.load_tasks()
        except TaskStoreError as exc:
            self._remote_failed(operation, exc)
            return self._fall_back(operation, mutate, str(exc), always_commit)
        try:
            mutation = self._prepare(base, mutate)
        except NotFoundError as exc:
            return self._local_only_target(operation, mutate, exc, always_commit)
        if mutation.missing_target:
            return self._local_only_target(operation, mutate, None, always_commit)
        if not mutation.changes and not always_commit:
            self._remote_succeeded()
            return mutation, None
        try:
            for change in mutation.changes:
                self._apply_change(self.remote, change)
        except TaskStoreError as exc:
            self._remote_failed(operation, exc)
            return self._fall_back(operation, mutate, str(exc), always_commit)
        self._remote_succeeded()
        return mutation, WriteOutcome(operation, [BackendOutcome(self.remote.name, True)])

    def _fall_back(
        self, operation: str, mutate: Mutator, reason: str, always_commit: bool
    ) -> Tuple[_Mutation, Optional[WriteOutcome]]:
        prior = [("remote", reason)]
        if not self._may_fall_back():
            raise PersistenceError(f"{operation} failed", prior)
        return self._commit_local(operation, mutate, prior, always_commit)

    def _local_only_target(
        self, operation: str, mutate: Mutator, exc: Optional[NotFoundError], always_commit: bool
    ) -> Tuple[_Mutation, Optional[WriteOutcome]]:
        """Retry against the local store when the remote board lacks the target.

        Records written while the remote side was unavailable exist only
        locally. The lookup stays terminal when the local store lacks the
        record too.
        """
        reason = str(exc) if exc is not None else "target not on remote board"
        if not self._may_fall_back():
            if exc is not None:
                raise exc
            return _Mutation(tasks=[], result=False), None
        mutation, outcome = self._commit_local(operation, mutate, [("remote", reason)], always_commit)
        if mutation.missing_target:
            return mutation, outcome
        self._remote_failed(operation, exc or NotFoundError(reason))
        return mutation, outcome

    def _commit_hybrid(
        self, operation: str, mutate: Mutator, always_commit: bool
    ) -> Tuple[_Mutation, Optional[WriteOutcome]]:
        attempted: List[Tuple[str, str]] = []
        try:
            base = self.local.load_tasks()
            local_readable = True
        except StorageError as exc:
            attempted.append((self.local.name, str(exc)))
            local_readable = False
            if not self._remote_available(operation):
                raise PersistenceError(f"{operation} failed", attempted + [("remote", "not connected")]) from exc
            try:
                base = self.remote.load_tasks()
            except TaskStoreError as remote_exc:
                self._remote_failed(operation, remote_exc)
                raise PersistenceError(f"{operation} failed", attempted + [("remote", str(remote_exc))]) from remote_exc

        mutation = self._prepare(base, mutate)
        if not mutation.changes and not always_commit:
            return mutation, None

        remote_outcome = self._push_changes(operation, mutation.changes)
        local_outcome = BackendOutcome(self.local.name, False, attempted[0][1] if attempted else None)
        if local_readable:
            try:
                self.local.save_tasks(mutation.tasks)
                local_outcome = BackendOutcome(self.local.name, True)
            except StorageError as exc:
                local_outcome = BackendOutcome(self.local.name, False, str(exc))

        outcome = WriteOutcome(operation, [local_outcome, remote_outcome])
        if not outcome.success:
            raise PersistenceError(
                f"{operation} failed", [(b.backend, b.error or "failed") for b in outcome.backends]
            )
        if outcome.partial:
            failed = next(b for b in outcome.backends if not b.ok)
            logger.warning("%s only partially persisted; %s failed: %s", operation, failed.backend, failed.error)
        return mutation, outcome

    def _push_changes(self, operation: str, changes: List[_Change]) -> BackendOutcome:
        """Push each change to the remote board, stamping per-record sync status."""
        if not changes:
            return BackendOutcome("remote", True)
        if not self._remote_available(operation):
            reason = "remote backend not connected"
            for change in changes:
                if change.kind != "delete":
                    _mark_all(change, reason)
            return BackendOutcome("remote", False, reason)
        failure: Optional[str] = None
        for change in changes:
            if failure is not None:
                if change.kind != "delete":
                    _mark_all(change, failure)
                continue
            try:
                self._apply_change(self.remote, change, upsert=True)
            except TaskStoreError as exc:
                failure = str(exc)
                self._remote_failed(operation, exc)
                if change.kind != "delete":
                    _mark_all(change, failure)
                else:
                    logger.warning("remote delete of %s not applied: %s", change.task_id, exc)
        if failure is None:
            self._remote_succeeded()
            return BackendOutcome(self.remote.name, True)
        return BackendOutcome(self.remote.name, False, failure)

    @staticmethod
    def _apply_change(backend: StorageBackend, change: _Change, upsert: bool = False) -> None:
        key = change.task_id
        if change.kind == "delete":
            if isinstance(key, Sub):
                backend.delete_subtask(key.parent_id, key.id)
            else:
                backend.delete_task(key.id)
            return
        # records never pushed before have no remote item yet
        create = change.kind == "create" or (upsert and not remote_item_id(change.record))
        if isinstance(key, Sub):
            if create:
                backend.create_subtask(change.record)
            else:
                backend.update_subtask(change.record)
        elif create:
            backend.create_task(change.record)
        else:
            backend.update_task(change.record)

    # --- status & diagnostics ---

    def get_status(self) -> RouterStatus:
        with self._lock:
            return RouterStatus(
                mode=self.mode,
                fallback_active=self.fallback_active,
                remote_ready=self.remote_ready,
                initialized=self.initialized,
                project_state=self.project_state,
                project_root=self.project_root,
                config_warnings=list(self.config_warnings),
                last_outcome=self.last_outcome,
            )

    def test_mode(self, mode: str) -> Dict[str, Any]:
        """Check whether ``mode`` would work right now; changes nothing."""
        if mode not in PERSISTENCE_MODES:
            raise ValidationError(f"Unknown persistence mode {mode!r}")
        with self._lock:
            root = self.project_root or Path(os.getenv(PROJECT_ROOT_ENV) or Path.cwd()).resolve()
            config = self.config or load_project_config(root)
            probes: Dict[str, Any] = {}
            local = self.local or LocalTaskStore(root, config.tasks_path)
            probes["local"] = local.probe()
            if mode != MODE_LOCAL:
                probes["remote"] = self._probe_remote(config)
            available = all(p.get("available") for p in probes.values())
            if mode == MODE_HYBRID:
                available = any(p.get("available") for p in probes.values())
            return {"mode": mode, "available": available, "backends": probes}

    def _probe_remote(self, config: ProjectConfig) -> Dict[str, Any]:
        if self.remote is not None:
            return self.remote.probe()
        try:
            backend = self.remote_factory(config, self._session_context)
        except ConfigurationError as exc:
            return {"backend": "remote", "available": False, "error": str(exc)}
        return backend.probe()

    def describe_backends(self) -> List[Dict[str, Any]]:
        with self._lock:
            described = []
            for backend, role in ((self.local, MODE_LOCAL), (self.remote, MODE_REMOTE)):
                if backend is None:
                    continue
                info = backend.describe()
                info["active"] = self.mode in (role, MODE_HYBRID) or (role == MODE_LOCAL and self.fallback_active)
                described.append(info)
            return described

    # --- dependencies ---

    def validate_dependencies(self, tasks: Optional[Iterable[Any]] = None) -> ValidationReport:
        with self._lock:
            if tasks is None:
                self._require_initialized()
                current = self._read("validate_dependencies")
            else:
                current = _coerce_tasks(tasks)
            return validate_dependencies(current)

    def repair_dependencies(self, tasks: Optional[Iterable[Any]] = None, apply: bool = False) -> RepairResult:
        """Repair a copy of the collection; ``apply`` saves the result when it changed."""
        with self._lock:
            if tasks is None:
                self._require_initialized()
                current = self._read("repair_dependencies")
            else:
                current = _coerce_tasks(tasks)
            result = repair_dependencies(current)
            if apply and result.changed:
                self.save_tasks(result.tasks)
            return result

    # --- project lifecycle ---

    def classify_project(self, project_root: Optional[Path] = None) -> ProjectState:
        return classify_project(self._root(project_root))

    def migrate_project(
        self, project_root: Optional[Path] = None, dry_run: bool = False, backup: bool = True
    ) -> MigrationResult:
        with self._lock:
            result = migrate_project(self._root(project_root), dry_run=dry_run, backup=backup)
            if result.success and not dry_run and self.initialized:
                self.project_state = result.state_after
            return result

    def _root(self, project_root: Optional[Path]) -> Path:
        if project_root is not None:
            return Path(project_root)
        if self.project_root is not None:
            return self.project_root
        return Path(os.getenv(PROJECT_ROOT_ENV) or Path.cwd())

    def reconcile(self, limit: Optional[int] = None) -> SyncReport:
        """Push local records still pending or failed to the remote board.

        In hybrid mode board changes are pulled into the local document
        first, with conflicts settled by ``remote.conflict_resolution``.
        """
        with self._lock:
            self._require_initialized()
            if self.mode == MODE_LOCAL or not self._remote_available("reconcile"):
                return SyncReport()
            service = ReconciliationService(
                self.local,
                self.remote,
                conflict_resolution=self.config.remote.conflict_resolution,
                pull=self.mode == MODE_HYBRID,
            )
            self._last_sync = self.clock()
            report = service.sweep(limit=limit)
            if report.synced and report.success:
                self._remote_succeeded()
            return report

    def sync_if_due(self) -> Optional[SyncReport]:
        """Reconcile when auto_sync is on and ``sync_interval`` seconds have passed."""
        with self._lock:
            self._require_initialized()
            if self.mode != MODE_HYBRID or not self.config.remote.auto_sync:
                return None
            if self._last_sync is not None and self.clock() - self._last_sync < self.config.remote.sync_interval:
                return None
            return self.reconcile()

    def _sync_when_due(self) -> None:
        try:
            report = self.sync_if_due()
        except TaskStoreError as exc:
            logger.warning("periodic sync failed: %s", exc)
            return
        if report is not None and report.unresolved:
            logger.warning("periodic sync left %d conflicts unresolved", len(report.unresolved))


def _touched(change: _Change) -> List[Any]:
    """Records a change writes; a created task brings its subtasks along."""
    if change.kind == "create" and isinstance(change.record, Task):
        return list(iter_records([change.record]))
    return [change.record]


def _mark_all(change: _Change, message: str) -> None:
    for record in _touched(change):
        mark_error(record, message)


def _stamp(event: TaskEvent, backends: Tuple[str, ...]) -> TaskEvent:
    return replace(event, backends=backends)
