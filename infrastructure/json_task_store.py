import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from core import NotFoundError, StorageError, Subtask, Task
from core.dependency_validator import strip_references
from core.task_id import Sub, TopLevel
from application.ports import StorageBackend

logger = logging.getLogger("tasksync.local")

DEFAULT_TASKS_PATH = Path("tasks") / "tasks.json"
LEGACY_TASKS_PATH = Path("tasks.json")
REQUIRED_KEYS = ("id", "title", "status")


class LocalTaskStore(StorageBackend):
    """The local task document ``{"tasks": [...]}``.

    Every call reads the whole document and mutating calls write it back
    whole. When the primary file is missing the legacy root-level file is
    read instead; writes always go to the primary path.
    """

    name = "local"
    version = "1.0.0"
    capabilities = ("read", "write", "subtasks")

    def __init__(self, project_root: Path, tasks_path: Optional[Path] = None):
        self.project_root = Path(project_root)
        relative = Path(tasks_path) if tasks_path else DEFAULT_TASKS_PATH
        self.path = self._resolve_path(relative)
        self.legacy_path = self.project_root / LEGACY_TASKS_PATH
        self.initialized = False
        self._extra: Dict[str, Any] = {}

    def _resolve_path(self, relative: Path) -> Path:
        root = self.project_root.resolve()
        resolved = (root / relative).resolve() if not relative.is_absolute() else relative.resolve()
        # SEC: the task document must stay inside the project
        if not resolved.is_relative_to(root):
            raise StorageError(f"Path traversal detected: {resolved} is outside {root}")
        return resolved

    @property
    def source_path(self) -> Optional[Path]:
        if self.path.exists():
            return self.path
        if self.legacy_path.exists():
            return self.legacy_path
        return None

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.initialized = True

    # --- document I/O ---

    def _read_document(self) -> Dict[str, Any]:
        source = self.source_path
        if source is None:
            return {"tasks": []}
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read {source}: {exc}") from exc
        if isinstance(data, list):
            data = {"tasks": data}
        if not isinstance(data, dict) or not isinstance(data.get("tasks", []), list):
            raise StorageError(f"{source} is not a task document")
        return data

    def _write_document(self, document: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, indent=2, ensure_ascii=False) + "\n"
        try:
            fd, tmp = tempfile.mkstemp(prefix=".tasks-", suffix=".json", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}") from exc

    def load_tasks(self) -> List[Task]:
        document = self._read_document()
        self._extra = {k: v for k, v in document.items() if k != "tasks"}
        tasks: List[Task] = []
        for index, raw in enumerate(document.get("tasks") or []):
            problems = validate_task_data(raw)
            if problems:
                raise StorageError(f"Invalid task at index {index}: {', '.join(problems)}")
            try:
                tasks.append(Task.from_dict(raw))
            except (TypeError, ValueError) as exc:
                raise StorageError(f"Invalid task at index {index}: {exc}") from exc
        return tasks

    def save_tasks(self, tasks: List[Task]) -> None:
        if not self._extra and self.source_path is not None:
            try:
                self._extra = {k: v for k, v in self._read_document().items() if k != "tasks"}
            except StorageError:
                self._extra = {}
        document = dict(self._extra)
        document["tasks"] = [t.to_dict() for t in tasks]
        self._write_document(document)
        logger.debug("wrote %d tasks to %s", len(tasks), self.path)

    # --- record operations ---

    def get_task(self, task_id: int) -> Optional[Task]:
        for task in self.load_tasks():
            if task.id == task_id:
                return task
        return None

    def create_task(self, task: Task) -> Task:
        tasks = self.load_tasks()
        if any(t.id == task.id for t in tasks):
            raise StorageError(f"Task {task.id} already exists")
        tasks.append(task.copy())
        self.save_tasks(tasks)
        return task

    def update_task(self, task: Task) -> Task:
        tasks = self.load_tasks()
        for index, existing in enumerate(tasks):
            if existing.id == task.id:
                tasks[index] = task.copy()
                self.save_tasks(tasks)
                return task
        raise NotFoundError(f"Task {task.id} not found")

    def delete_task(self, task_id: int, skip_dependency_cleanup: bool = False) -> bool:
        tasks = self.load_tasks()
        remaining = [t for t in tasks if t.id != task_id]
        if len(remaining) == len(tasks):
            return False
        if not skip_dependency_cleanup:
            removed = next(t for t in tasks if t.id == task_id)
            gone = {TopLevel(task_id)} | {Sub(task_id, s.id) for s in removed.subtasks}
            strip_references(remaining, gone)
        self.save_tasks(remaining)
        return True

    def get_subtasks(self, parent_id: int) -> List[Subtask]:
        parent = self.get_task(parent_id)
        if parent is None:
            raise NotFoundError(f"Task {parent_id} not found")
        return list(parent.subtasks)

    def create_subtask(self, subtask: Subtask) -> Subtask:
        tasks = self.load_tasks()
        parent = _require_parent(tasks, subtask.parent_id)
        if parent.find_subtask(subtask.id) is not None:
            raise StorageError(f"Subtask {subtask.task_id} already exists")
        parent.subtasks.append(subtask.copy())
        self.save_tasks(tasks)
        return subtask

    def update_subtask(self, subtask: Subtask) -> Subtask:
        tasks = self.load_tasks()
        parent = _require_parent(tasks, subtask.parent_id)
        for index, existing in enumerate(parent.subtasks):
            if existing.id == subtask.id:
                parent.subtasks[index] = subtask.copy()
                self.save_tasks(tasks)
                return subtask
        raise NotFoundError(f"Subtask {subtask.task_id} not found")

    def delete_subtask(self, parent_id: int, subtask_id: int, skip_dependency_cleanup: bool = False) -> bool:
        tasks = self.load_tasks()
        parent = _require_parent(tasks, parent_id)
        remaining = [s for s in parent.subtasks if s.id != subtask_id]
        if len(remaining) == len(parent.subtasks):
            return False
        parent.subtasks = remaining
        if not skip_dependency_cleanup:
            strip_references(tasks, {Sub(parent_id, subtask_id)})
        self.save_tasks(tasks)
        return True

    # --- diagnostics ---

    def probe(self) -> Dict[str, Any]:
        """Read-only availability check."""
        try:
            count = len(self.load_tasks())
        except StorageError as exc:
            return {"backend": self.name, "available": False, "error": str(exc)}
        directory = self.path.parent if self.path.parent.exists() else self.project_root
        writable = os.access(directory, os.W_OK)
        return {
            "backend": self.name,
            "available": writable,
            "error": None if writable else f"{directory} is not writable",
            "tasks": count,
            "path": str(self.source_path or self.path),
        }

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "capabilities": list(self.capabilities),
            "initialized": self.initialized,
            "path": str(self.path),
        }


def _require_parent(tasks: List[Task], parent_id: int) -> Task:
    for task in tasks:
        if task.id == parent_id:
            return task
    raise NotFoundError(f"Task {parent_id} not found")


def validate_task_data(raw: Any) -> List[str]:
    """Structural problems with one raw task entry (empty when valid)."""
    if not isinstance(raw, dict):
        return ["not an object"]
    problems = [f"missing '{key}'" for key in REQUIRED_KEYS if raw.get(key) in (None, "")]
    for sub in raw.get("subtasks") or []:
        if not isinstance(sub, dict) or sub.get("id") in (None, ""):
            problems.append("subtask without id")
            break
    return problems
