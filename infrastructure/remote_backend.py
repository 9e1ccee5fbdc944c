import logging
import time
from typing import Any, Dict, List, Optional

from application.ports import StorageBackend
from config import DEFAULT_COLUMN_MAPPING, DEFAULT_GROUP_MAPPING
from core import ConfigurationError, NotFoundError, Subtask, Task, TaskStoreError
from core.sync_metadata import mark_synced, remote_item_id
from core.task_id import Sub, TaskId, TopLevel
from infrastructure.data_transformer import item_task_id, items_to_tasks, task_to_record
from infrastructure.remote_api.api_client import RemoteApiClient
from infrastructure.remote_api.schema_cache import SchemaCache

logger = logging.getLogger("tasksync.remote")

ITEM_CACHE_TTL = 300.0


class RemoteTaskBackend(StorageBackend):
    """Tasks stored as items on a remote board.

    Each task and subtask is one item; subtasks live in the subtasks group
    and point at their parent through the parent column. Item ids are looked
    up through the task id column and kept in a short-lived index.
    """

    name = "remote"
    version = "1.0.0"
    capabilities = ("read", "write", "subtasks", "groups")

    def __init__(
        self,
        client: RemoteApiClient,
        board_id: str,
        column_mapping: Optional[Dict[str, str]] = None,
        group_mapping: Optional[Dict[str, str]] = None,
        schema_cache: Optional[SchemaCache] = None,
        cache_ttl: float = ITEM_CACHE_TTL,
    ) -> None:
        if not board_id:
            raise ConfigurationError("Remote backend requires a board id")
        self.client = client
        self.board_id = str(board_id)
        self.column_mapping = {**DEFAULT_COLUMN_MAPPING, **(column_mapping or {})}
        self.group_mapping = {**DEFAULT_GROUP_MAPPING, **(group_mapping or {})}
        self.schema_cache = schema_cache
        self.cache_ttl = cache_ttl
        self.schema: Dict[str, Any] = {}
        self.initialized = False
        self._index: Dict[TaskId, str] = {}
        self._index_ts = 0.0
        self._tasks_cache: Optional[List[Task]] = None

    def initialize(self) -> None:
        self.client.verify_credentials()
        self.schema = self._load_schema()
        missing = self.missing_columns()
        if missing:
            logger.warning("board %s lacks mapped columns: %s", self.board_id, ", ".join(missing))
        self.initialized = True

    def _load_schema(self) -> Dict[str, Any]:
        if self.schema_cache is not None:
            cached = self.schema_cache.get(self.board_id)
            if cached:
                return cached
        schema = self.client.get_board_schema(self.board_id)
        if self.schema_cache is not None:
            self.schema_cache.set(self.board_id, schema)
            try:
                self.schema_cache.persist()
            except OSError as exc:
                logger.debug("schema cache not persisted: %s", exc)
        return schema

    def missing_columns(self) -> List[str]:
        columns = {str(c.get("id")) for c in self.schema.get("columns") or [] if isinstance(c, dict)}
        if not columns:
            return []
        wanted = [cid for key, cid in self.column_mapping.items() if key != "title" and cid]
        return sorted(cid for cid in wanted if cid not in columns)

    # --- item index ---

    def invalidate(self) -> None:
        self._index = {}
        self._index_ts = 0.0
        self._tasks_cache = None

    def _fresh(self) -> bool:
        return self._index_ts > 0 and time.time() - self._index_ts < self.cache_ttl

    def _refresh(self) -> List[Task]:
        items = self.client.list_items(self.board_id)
        decoded = items_to_tasks(items, self.column_mapping)
        for item_id, reason in decoded.errors:
            logger.warning("skipping remote item %s: %s", item_id, reason)
        index: Dict[TaskId, str] = {}
        for item in items:
            task_id = item_task_id(item, self.column_mapping)
            if task_id is not None and item.get("id") is not None:
                index.setdefault(task_id, str(item["id"]))
        self._index = index
        self._index_ts = time.time()
        self._tasks_cache = decoded.tasks
        return decoded.tasks

    def _item_id(self, task_id: TaskId, record: Any = None) -> Optional[str]:
        known = remote_item_id(record) if record is not None else None
        if known:
            return known
        if not self._fresh():
            self._refresh()
        return self._index.get(task_id)

    def _remember(self, task_id: TaskId, item_id: str) -> None:
        self._index[task_id] = item_id
        self._tasks_cache = None

    def _forget(self, task_id: TaskId) -> None:
        self._index.pop(task_id, None)
        self._tasks_cache = None

    # --- StorageBackend ---

    def load_tasks(self) -> List[Task]:
        if self._tasks_cache is None or not self._fresh():
            return [t.copy() for t in self._refresh()]
        return [t.copy() for t in self._tasks_cache or []]

    def get_task(self, task_id: int) -> Optional[Task]:
        for task in self.load_tasks():
            if task.id == task_id:
                return task
        return None

    def _upsert(self, record: Any) -> Any:
        payload = task_to_record(record, self.column_mapping, self.group_mapping)
        item_id = self._item_id(record.task_id, record)
        if item_id:
            written = self.client.update_item(self.board_id, item_id, payload.columns)
            self.client.move_item_to_group(item_id, payload.group_id)
        else:
            written = self.client.create_item(self.board_id, payload.item_name, payload.columns, payload.group_id)
            item_id = str(written.get("id") or "")
            if not item_id:
                raise NotFoundError(f"remote create for {record.task_id} returned no item id")
        self._remember(record.task_id, item_id)
        mark_synced(record, item_id, remote_updated_at=(written or {}).get("updated_at"))
        return record

    def create_task(self, task: Task) -> Task:
        self._upsert(task)
        for sub in task.subtasks:
            self._upsert(sub)
        return task

    def update_task(self, task: Task) -> Task:
        if not self._item_id(task.task_id, task):
            raise NotFoundError(f"Task {task.id} not found on board {self.board_id}")
        return self._upsert(task)

    def delete_task(self, task_id: int) -> bool:
        ids: List[TaskId] = [TopLevel(task_id)]
        if not self._fresh():
            self._refresh()
        ids.extend(key for key in list(self._index) if isinstance(key, Sub) and key.parent_id == task_id)
        deleted = False
        for key in ids:
            item_id = self._index.get(key)
            if not item_id:
                continue
            self.client.delete_item(item_id)
            self._forget(key)
            deleted = True
        return deleted

    def get_subtasks(self, parent_id: int) -> List[Subtask]:
        parent = self.get_task(parent_id)
        if parent is None:
            raise NotFoundError(f"Task {parent_id} not found on board {self.board_id}")
        return list(parent.subtasks)

    def create_subtask(self, subtask: Subtask) -> Subtask:
        return self._upsert(subtask)

    def update_subtask(self, subtask: Subtask) -> Subtask:
        if not self._item_id(subtask.task_id, subtask):
            raise NotFoundError(f"Subtask {subtask.task_id} not found on board {self.board_id}")
        return self._upsert(subtask)

    def delete_subtask(self, parent_id: int, subtask_id: int) -> bool:
        key = Sub(parent_id, subtask_id)
        item_id = self._item_id(key)
        if not item_id:
            return False
        self.client.delete_item(item_id)
        self._forget(key)
        return True

    def save_tasks(self, tasks: List[Task]) -> None:
        """Upsert every record in input order; items absent from ``tasks`` are left alone."""
        for task in tasks:
            self._upsert(task)
            for sub in task.subtasks:
                self._upsert(sub)

    def push_record(self, record: Any) -> Any:
        """Upsert a single task or subtask (used by reconciliation)."""
        return self._upsert(record)

    def add_note(self, task_id: TaskId, body: str) -> bool:
        item_id = self._item_id(task_id)
        if not item_id:
            return False
        self.client.create_update(item_id, body)
        return True

    # --- diagnostics ---

    def probe(self) -> Dict[str, Any]:
        """Connectivity and credential check without touching items."""
        started = time.time()
        try:
            found = self.client.probe(self.board_id)
        except TaskStoreError as exc:
            return {"backend": self.name, "available": False, "error": str(exc)}
        user, schema = found["user"], found["schema"]
        return {
            "backend": self.name,
            "available": True,
            "error": None,
            "user": user.get("name") or user.get("id"),
            "columns": len(schema.get("columns") or []),
            "groups": len(schema.get("groups") or []),
            "latency_ms": int((time.time() - started) * 1000),
        }

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "capabilities": list(self.capabilities),
            "initialized": self.initialized,
            "board_id": self.board_id,
            "authenticated": self.client.authenticated,
        }
