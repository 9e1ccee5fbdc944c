from pathlib import Path

import pytest

from core import ConfigurationError, NotFoundError, Subtask, Task, TransientNetworkError
from core.status import SyncStatus
from infrastructure.remote_api.schema_cache import SchemaCache
from infrastructure.remote_backend import RemoteTaskBackend


class FakeBoardClient:
    """In-memory stand-in for RemoteApiClient."""

    def __init__(self, items=None):
        self.items = {item["id"]: item for item in items or []}
        self.calls = []
        self.next_id = 100
        self.ticks = 0
        self.authenticated = False
        self.error = None

    def _call(self, name):
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    def verify_credentials(self):
        self._call("verify")
        self.authenticated = True
        return {"id": "u1", "name": "Robot"}

    def get_board_schema(self, board_id):
        self._call("schema")
        return {"columns": [{"id": "task_id"}, {"id": "status"}], "groups": [{"id": "pending"}]}

    def probe(self, board_id):
        self._call("probe")
        return {"user": {"name": "Robot"}, "schema": {"columns": [{"id": "task_id"}], "groups": []}}

    def list_items(self, board_id):
        self._call("list")
        return [dict(item) for item in self.items.values()]

    def create_item(self, board_id, name, columns, group_id=None):
        self._call("create")
        self.next_id += 1
        item_id = f"i{self.next_id}"
        self.items[item_id] = {"id": item_id, "name": name, "column_values": dict(columns), "group": {"id": group_id}}
        return {"id": item_id}

    def update_item(self, board_id, item_id, columns):
        self._call("update")
        self.ticks += 1
        stamp = f"2025-01-01T00:00:{self.ticks:02d}Z"
        self.items[item_id]["column_values"].update(columns)
        self.items[item_id]["updated_at"] = stamp
        return {"id": item_id, "updated_at": stamp}

    def move_item_to_group(self, item_id, group_id):
        self._call("move")
        self.items[item_id]["group"] = {"id": group_id}
        return {"id": item_id}

    def delete_item(self, item_id):
        self._call("delete")
        self.items.pop(item_id, None)
        return {"id": item_id}

    def create_update(self, item_id, body):
        self._call("note")
        return {"id": "u9"}


def _backend(client=None, tmp_path=None):
    cache = SchemaCache(tmp_path / "schema.yaml", token_getter=lambda: "tok") if tmp_path else None
    return RemoteTaskBackend(client or FakeBoardClient(), "board-1", schema_cache=cache)


def test_board_id_is_required():
    with pytest.raises(ConfigurationError):
        RemoteTaskBackend(FakeBoardClient(), "")


def test_initialize_caches_schema(tmp_path: Path):
    client = FakeBoardClient()
    backend = _backend(client, tmp_path)
    backend.initialize()
    assert backend.initialized
    assert "description" in backend.missing_columns()

    again = _backend(client, tmp_path)
    again.initialize()
    assert client.calls.count("schema") == 1


def test_create_marks_records_synced():
    client = FakeBoardClient()
    backend = _backend(client)
    task = Task(id=1, title="Parent", subtasks=[Subtask(id=1, parent_id=1, title="Child")])

    backend.create_task(task)

    assert task.sync.sync_status == SyncStatus.SYNCED
    assert task.sync.remote_item_id == "i101"
    assert task.subtasks[0].sync.remote_item_id == "i102"
    loaded = backend.load_tasks()
    assert [t.title for t in loaded] == ["Parent"]
    assert loaded[0].subtasks[0].title == "Child"
    assert client.items["i102"]["group"] == {"id": "subtasks"}


def test_update_moves_item_between_groups():
    client = FakeBoardClient()
    backend = _backend(client)
    task = Task(id=1, title="Parent")
    backend.create_task(task)

    task.status = "done"
    backend.update_task(task)

    assert client.calls[-2:] == ["update", "move"]
    assert client.items["i101"]["group"] == {"id": "completed"}
    assert backend.get_task(1).status == "done"
    assert task.sync.remote_updated_at == "2025-01-01T00:00:01Z"
    assert backend.get_task(1).sync.remote_updated_at == "2025-01-01T00:00:01Z"


def test_update_unknown_task_raises():
    with pytest.raises(NotFoundError):
        _backend().update_task(Task(id=7))


def test_delete_task_removes_subtask_items():
    client = FakeBoardClient()
    backend = _backend(client)
    backend.create_task(Task(id=1, subtasks=[Subtask(id=1, parent_id=1), Subtask(id=2, parent_id=1)]))
    backend.create_task(Task(id=2))

    assert backend.delete_task(1) is True
    assert [t.id for t in backend.load_tasks()] == [2]
    assert len(client.items) == 1
    assert backend.delete_subtask(2, 5) is False


def test_save_tasks_leaves_unknown_items_alone():
    foreign = {"id": "x1", "name": "Someone else's", "column_values": {"task_id": "50"}}
    client = FakeBoardClient([foreign])
    backend = _backend(client)

    backend.save_tasks([Task(id=1, title="Mine")])

    assert "x1" in client.items
    assert [t.id for t in backend.load_tasks()] == [1, 50]


def test_probe_reports_failures():
    client = FakeBoardClient()
    backend = _backend(client)
    assert backend.probe()["available"] is True

    client.error = TransientNetworkError("offline")
    probe = backend.probe()
    assert probe["available"] is False
    assert "offline" in probe["error"]
    assert not client.authenticated


def test_add_note():
    client = FakeBoardClient()
    backend = _backend(client)
    task = Task(id=1)
    backend.create_task(task)
    assert backend.add_note(task.task_id, "deployed") is True
    assert client.calls[-1] == "note"
