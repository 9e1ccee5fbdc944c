from core.models import Subtask, Task
from core.status import SyncStatus
from core.task_id import Sub, TopLevel
from infrastructure.data_transformer import (
    clamp_complexity,
    compare_tasks,
    decode_dependencies,
    item_task_id,
    item_to_record,
    items_to_tasks,
    task_to_record,
    validate_record,
)


def _item(item_id, name, columns, group="pending"):
    return {
        "id": item_id,
        "name": name,
        "group": {"id": group},
        "column_values": [{"id": key, "text": value} for key, value in columns.items()],
    }


def _as_item(record, item_id="i1"):
    return {"id": item_id, "name": record.item_name, "column_values": dict(record.columns)}


def test_task_columns_and_group():
    task = Task(id=3, title="Ship it", status="done", priority="high", dependencies=[1, "2.1"], complexity_score=14)
    record = task_to_record(task)

    assert record.task_id == "3"
    assert record.item_name == "Ship it"
    assert record.group_id == "completed"
    assert record.columns["status"] == "3"
    assert record.columns["priority"] == "3"
    assert record.columns["dependencies"] == "1,2.1"
    assert record.columns["parent_task"] == ""
    assert record.columns["complexity_score"] == "10"
    assert validate_record(record) == []


def test_subtask_shorthand_is_expanded():
    sub = Subtask(id=2, parent_id=5, title="Child", dependencies=[1, "4"])
    record = task_to_record(sub)

    assert record.task_id == "5.2"
    assert record.group_id == "subtasks"
    assert record.columns["parent_task"] == "5"
    assert record.columns["dependencies"] == "5.1,4"


def test_custom_mappings_are_applied():
    task = Task(id=1, status="in-progress")
    record = task_to_record(task, {"status": "col_state"}, {"in_progress": "grp_doing"})

    assert record.columns["col_state"] == "2"
    assert "status" not in record.columns
    assert record.group_id == "grp_doing"


def test_item_decoding():
    item = _item("i7", "Write docs", {"task_id": "4", "status": "2", "priority": "4", "dependencies": "1, 2.3"})
    task = item_to_record(item)

    assert isinstance(task, Task)
    assert task.id == 4
    assert task.status == "in-progress"
    assert task.priority == "critical"
    assert task.dependencies == [1, "2.3"]
    assert task.sync.remote_item_id == "i7"
    assert task.sync.sync_status == SyncStatus.SYNCED
    assert task.sync.remote_updated_at is None

    item["updated_at"] = "2025-03-01T10:00:00Z"
    assert item_to_record(item).sync.remote_updated_at == "2025-03-01T10:00:00Z"


def test_unknown_codes_fall_back_to_defaults():
    task = item_to_record(_item("i1", "", {"task_id": "1", "status": "99", "priority": ""}))
    assert task.status == "pending"
    assert task.priority == "medium"
    assert task.title == "Untitled Task"


def test_subtask_dependencies_stay_strings():
    assert decode_dependencies("1,2.1", for_subtask=False) == [1, "2.1"]
    assert decode_dependencies("1,2.1", for_subtask=True) == ["1", "2.1"]
    assert decode_dependencies("", for_subtask=True) == []


def test_board_decoding_orders_and_reports_problems():
    items = [
        _item("a", "Second", {"task_id": "2"}),
        _item("b", "Child", {"task_id": "1.1", "parent_task": "1"}, group="subtasks"),
        _item("c", "First", {"task_id": "1"}),
        _item("d", "Orphan", {"task_id": "9.1"}, group="subtasks"),
        _item("e", "No id", {"status": "1"}),
        _item("f", "Copy", {"task_id": "2"}),
    ]
    result = items_to_tasks(items)

    assert [t.id for t in result.tasks] == [1, 2]
    assert [s.task_id for s in result.tasks[0].subtasks] == [Sub(1, 1)]
    assert result.tasks[1].title == "Second"
    reasons = dict(result.errors)
    assert "orphan" in reasons["d"]
    assert "no task id" in reasons["e"]
    assert "duplicate" in reasons["f"]


def test_item_task_id():
    assert item_task_id(_item("x", "t", {"task_id": "3.2"})) == Sub(3, 2)
    assert item_task_id(_item("x", "t", {"task_id": "3"})) == TopLevel(3)
    assert item_task_id(_item("x", "t", {})) is None


def test_rich_task_survives_the_board():
    task = Task(
        id=8,
        title="Migrate storage",
        description="move to the new store",
        status="review",
        priority="low",
        dependencies=[3],
        details="see notes",
        test_strategy="integration",
        task_type="feature",
        complexity_score=5,
    )
    sub = Subtask(id=1, parent_id=8, title="Copy data", dependencies=[2])

    decoded_task = item_to_record(_as_item(task_to_record(task)))
    decoded_sub = item_to_record(_as_item(task_to_record(sub), "i2"))

    assert compare_tasks(task, decoded_task) == []
    assert compare_tasks(sub, decoded_sub) == []
    assert decoded_sub.dependencies == ["8.2"]


def test_compare_reports_changed_fields():
    left = Task(id=1, title="A", dependencies=[2])
    right = Task(id=1, title="B", dependencies=["2"])
    assert compare_tasks(left, right) == ["title"]


def test_clamp_complexity():
    assert clamp_complexity(None) is None
    assert clamp_complexity("abc") is None
    assert clamp_complexity(0) == 1
    assert clamp_complexity("7.6") == 7
    assert clamp_complexity(50) == 10
