from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from core import Subtask, Task


@runtime_checkable
class StorageBackend(Protocol):
    """Capability set every persistence backend provides.

    Backends store fully-formed records; id assignment, dependency
    validation and sync bookkeeping happen in the router.
    """

    name: str

    def initialize(self) -> None:
        ...

    def load_tasks(self) -> List[Task]:
        ...

    def get_task(self, task_id: int) -> Optional[Task]:
        ...

    def create_task(self, task: Task) -> Task:
        ...

    def update_task(self, task: Task) -> Task:
        ...

    def delete_task(self, task_id: int) -> bool:
        ...

    def get_subtasks(self, parent_id: int) -> List[Subtask]:
        ...

    def create_subtask(self, subtask: Subtask) -> Subtask:
        ...

    def update_subtask(self, subtask: Subtask) -> Subtask:
        ...

    def delete_subtask(self, parent_id: int, subtask_id: int) -> bool:
        ...

    def save_tasks(self, tasks: List[Task]) -> None:
        ...

    def probe(self) -> Dict[str, Any]:
        ...

    def describe(self) -> Dict[str, Any]:
        ...
