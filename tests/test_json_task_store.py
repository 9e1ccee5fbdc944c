import json
from pathlib import Path

import pytest

from core import NotFoundError, StorageError, Subtask, Task
from infrastructure.json_task_store import LocalTaskStore, validate_task_data


def _write(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_missing_document_reads_empty(tmp_path: Path):
    store = LocalTaskStore(tmp_path)
    assert store.load_tasks() == []
    assert store.source_path is None


def test_roundtrip_preserves_unknown_keys(tmp_path: Path):
    doc = {
        "meta": {"projectName": "demo"},
        "tasks": [
            {
                "id": 1,
                "title": "Build",
                "status": "pending",
                "customField": {"a": 1},
                "subtasks": [{"id": 1, "title": "Part", "status": "done", "dependencies": []}],
            }
        ],
    }
    _write(tmp_path / "tasks" / "tasks.json", doc)
    store = LocalTaskStore(tmp_path)

    tasks = store.load_tasks()
    tasks[0].title = "Build it"
    store.save_tasks(tasks)

    saved = json.loads((tmp_path / "tasks" / "tasks.json").read_text(encoding="utf-8"))
    assert saved["meta"] == {"projectName": "demo"}
    assert saved["tasks"][0]["customField"] == {"a": 1}
    assert saved["tasks"][0]["title"] == "Build it"
    assert saved["tasks"][0]["subtasks"][0]["status"] == "done"


def test_legacy_file_is_read_and_primary_written(tmp_path: Path):
    _write(tmp_path / "tasks.json", [{"id": 4, "title": "Old", "status": "todo"}])
    store = LocalTaskStore(tmp_path)

    tasks = store.load_tasks()
    assert tasks[0].status == "pending"
    assert store.source_path == tmp_path / "tasks.json"

    store.save_tasks(tasks)
    assert (tmp_path / "tasks" / "tasks.json").exists()
    assert store.source_path == (tmp_path / "tasks" / "tasks.json").resolve()


def test_unreadable_document_raises(tmp_path: Path):
    path = tmp_path / "tasks" / "tasks.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageError):
        LocalTaskStore(tmp_path).load_tasks()


def test_structurally_invalid_task_raises(tmp_path: Path):
    _write(tmp_path / "tasks" / "tasks.json", {"tasks": [{"id": 1, "status": "pending"}]})
    with pytest.raises(StorageError, match="missing 'title'"):
        LocalTaskStore(tmp_path).load_tasks()


def test_path_traversal_rejected(tmp_path: Path):
    with pytest.raises(StorageError, match="Path traversal"):
        LocalTaskStore(tmp_path / "project", Path("../outside.json"))


def test_record_operations(tmp_path: Path):
    store = LocalTaskStore(tmp_path)
    store.initialize()
    store.create_task(Task(id=1, title="One"))
    store.create_task(Task(id=2, title="Two", dependencies=[1]))
    store.create_subtask(Subtask(id=1, parent_id=2, title="Child", dependencies=["1"]))

    with pytest.raises(StorageError):
        store.create_task(Task(id=1))
    with pytest.raises(NotFoundError):
        store.create_subtask(Subtask(id=1, parent_id=9))

    child = store.get_subtasks(2)[0]
    child.title = "Renamed"
    store.update_subtask(child)
    assert store.get_task(2).subtasks[0].title == "Renamed"

    assert store.delete_task(1) is True
    remaining = store.get_task(2)
    assert remaining.dependencies == []
    assert remaining.subtasks[0].dependencies == []
    assert store.delete_task(1) is False
    assert store.delete_subtask(2, 1) is True
    assert store.get_subtasks(2) == []


def test_update_missing_task_raises(tmp_path: Path):
    with pytest.raises(NotFoundError):
        LocalTaskStore(tmp_path).update_task(Task(id=5))


def test_probe_and_describe(tmp_path: Path):
    store = LocalTaskStore(tmp_path)
    store.initialize()
    probe = store.probe()
    assert probe["available"] is True
    assert probe["tasks"] == 0
    assert store.describe()["initialized"] is True


def test_validate_task_data():
    assert validate_task_data({"id": 1, "title": "x", "status": "pending"}) == []
    assert validate_task_data("nope") == ["not an object"]
    assert "subtask without id" in validate_task_data(
        {"id": 1, "title": "x", "status": "pending", "subtasks": [{"title": "y"}]}
    )
