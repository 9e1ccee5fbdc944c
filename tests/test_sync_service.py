from pathlib import Path

import pytest

from application.sync_service import ReconciliationService
from core import AuthError, Subtask, Task, TransientNetworkError
from core.models import SyncMetadata
from core.status import SyncStatus
from core.sync_metadata import mark_pending, mark_synced
from infrastructure.json_task_store import LocalTaskStore


class PushRecorder:
    def __init__(self, failures=None, board=None):
        self.failures = dict(failures or {})
        self.board = [t.copy() for t in board or []]
        self.pushed = []

    def load_tasks(self):
        return [t.copy() for t in self.board]

    def push_record(self, record):
        error = self.failures.get(str(record.task_id))
        if error is not None:
            raise error
        self.pushed.append(str(record.task_id))
        mark_synced(record, f"item-{record.task_id}")
        return record


def _store(tmp_path: Path) -> LocalTaskStore:
    store = LocalTaskStore(tmp_path)
    done = Task(id=1, title="Synced")
    mark_synced(done, "item-1")
    fresh = Task(id=2, title="Fresh", subtasks=[Subtask(id=1, parent_id=2, title="Child")])
    store.save_tasks([done, fresh, Task(id=3, title="Third")])
    return store


def test_sweep_pushes_only_stale_records(tmp_path: Path):
    store = _store(tmp_path)
    remote = PushRecorder()

    report = ReconciliationService(store, remote).sweep()

    assert remote.pushed == ["2", "2.1", "3"]
    assert report.to_dict() == {
        "attempted": 3,
        "synced": 3,
        "failed": 0,
        "pulled": 0,
        "errors": [],
        "conflicts": [],
    }
    tasks = store.load_tasks()
    assert tasks[1].subtasks[0].sync.remote_item_id == "item-2.1"
    assert all(t.sync.sync_status == SyncStatus.SYNCED for t in tasks)


def test_failures_are_recorded_per_record(tmp_path: Path):
    store = _store(tmp_path)
    remote = PushRecorder({"2.1": TransientNetworkError("flaky")})

    report = ReconciliationService(store, remote).sweep()

    assert not report.success
    assert report.failed == 1
    assert remote.pushed == ["2", "3"]
    child = store.load_tasks()[1].subtasks[0]
    assert child.sync.sync_status == SyncStatus.ERROR
    assert child.sync.sync_error == "flaky"


def test_auth_failure_stops_the_sweep(tmp_path: Path):
    store = _store(tmp_path)
    remote = PushRecorder({"2": AuthError("revoked")})

    report = ReconciliationService(store, remote).sweep()

    assert report.attempted == 1
    assert remote.pushed == []


def test_limit_and_nothing_pending(tmp_path: Path):
    store = _store(tmp_path)
    remote = PushRecorder()
    service = ReconciliationService(store, remote)

    assert service.sweep(limit=1).synced == 1
    service.sweep()
    assert service.sweep().attempted == 0


def _board_task(task_id, title, updated_at, subtasks=None):
    meta = SyncMetadata(remote_item_id=f"item-{task_id}", sync_status=SyncStatus.SYNCED, remote_updated_at=updated_at)
    return Task(id=task_id, title=title, subtasks=list(subtasks or []), sync=meta)


def test_pull_adopts_board_records_and_board_edits(tmp_path: Path):
    store = LocalTaskStore(tmp_path)
    known = Task(id=1, title="Before")
    mark_synced(known, "item-1", remote_updated_at="2025-01-01T00:00:00Z")
    store.save_tasks([known])
    board = [
        _board_task(1, "Renamed on board", "2025-02-01T00:00:00Z"),
        _board_task(4, "Board only", "2025-02-01T00:00:00Z", [Subtask(id=1, parent_id=4, title="Board child")]),
    ]
    remote = PushRecorder(board=board)

    report = ReconciliationService(store, remote).sweep()

    assert report.pulled == 3
    assert report.conflicts == []
    assert remote.pushed == []
    tasks = store.load_tasks()
    assert [t.title for t in tasks] == ["Renamed on board", "Board only"]
    assert [s.title for s in tasks[1].subtasks] == ["Board child"]
    assert tasks[0].sync.remote_updated_at == "2025-02-01T00:00:00Z"
    assert all(t.sync.sync_status == SyncStatus.SYNCED for t in tasks)


def test_local_edit_on_quiet_board_is_pushed(tmp_path: Path):
    store = LocalTaskStore(tmp_path)
    task = Task(id=1, title="Local edit")
    mark_synced(task, "item-1", remote_updated_at="2025-01-01T00:00:00Z")
    mark_pending(task)
    store.save_tasks([task])
    remote = PushRecorder(board=[_board_task(1, "Before", "2025-01-01T00:00:00Z")])

    report = ReconciliationService(store, remote).sweep()

    assert report.conflicts == []
    assert remote.pushed == ["1"]
    assert store.load_tasks()[0].title == "Local edit"


@pytest.mark.parametrize(
    "strategy, board_time, title, pushed, resolution",
    [
        ("prompt", "2025-06-01T00:00:00Z", "Local edit", [], None),
        ("local", "2025-06-01T00:00:00Z", "Local edit", ["1"], "local"),
        ("remote", "2025-06-01T00:00:00Z", "Board edit", [], "remote"),
        ("newest", "2025-06-01T00:00:00Z", "Board edit", [], "remote"),
        ("newest", "2024-06-01T00:00:00Z", "Local edit", ["1"], "local"),
    ],
)
def test_edits_on_both_sides_follow_conflict_resolution(tmp_path, strategy, board_time, title, pushed, resolution):
    store = LocalTaskStore(tmp_path)
    task = Task(id=1, title="Local edit")
    mark_synced(task, "item-1", timestamp="2024-01-01T00:00:00+00:00", remote_updated_at="2024-01-01T00:00:00Z")
    mark_pending(task)
    task.sync.last_modified_at = "2025-01-01T00:00:00+00:00"
    store.save_tasks([task])
    remote = PushRecorder(board=[_board_task(1, "Board edit", board_time)])

    report = ReconciliationService(store, remote, conflict_resolution=strategy).sweep()

    assert report.conflicts == [{"taskId": "1", "fields": ["title"], "resolution": resolution}]
    assert remote.pushed == pushed
    stored = store.load_tasks()[0]
    assert stored.title == title
    if resolution is None:
        assert len(report.unresolved) == 1
        assert stored.sync.sync_status == SyncStatus.PENDING
    else:
        assert report.unresolved == []
        assert stored.sync.sync_status == SyncStatus.SYNCED


def test_push_only_sweep_leaves_board_records_alone(tmp_path: Path):
    store = _store(tmp_path)
    remote = PushRecorder(board=[_board_task(9, "Foreign", "2025-01-01T00:00:00Z")])

    report = ReconciliationService(store, remote, pull=False).sweep()

    assert report.pulled == 0
    assert [t.id for t in store.load_tasks()] == [1, 2, 3]
