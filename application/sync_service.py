import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from core import AuthError, Subtask, Task, TaskStoreError
from core.dependency_validator import iter_records
from core.models import find_record
from core.sync_metadata import ensure_sync, mark_error, mark_synced, needs_sync
from core.task_id import TaskId, TopLevel
from infrastructure.data_transformer import compare_tasks

logger = logging.getLogger("tasksync.sync")

RESOLVE_PROMPT = "prompt"
RESOLVE_LOCAL = "local"
RESOLVE_REMOTE = "remote"
RESOLVE_NEWEST = "newest"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class SyncReport:
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    pulled: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    @property
    def unresolved(self) -> List[Dict[str, Any]]:
        return [c for c in self.conflicts if c["resolution"] is None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "synced": self.synced,
            "failed": self.failed,
            "pulled": self.pulled,
            "errors": list(self.errors),
            "conflicts": list(self.conflicts),
        }


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return _EPOCH
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return _EPOCH
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def remote_changed(local: Any, remote: Any) -> bool:
    """Whether the board item moved on since this record was last synced.

    Boards that report no item clock count as unchanged.
    """
    current = remote.sync.remote_updated_at if remote.sync is not None else None
    if not current:
        return False
    meta = local.sync
    if meta is None or not meta.last_synced_at:
        return True
    if meta.remote_updated_at:
        return _parse_time(current) != _parse_time(meta.remote_updated_at)
    return _parse_time(current) > _parse_time(meta.last_synced_at)


def _synced_from(local: Any, remote: Any) -> None:
    meta = remote.sync
    mark_synced(
        local,
        meta.remote_item_id if meta is not None else None,
        remote_updated_at=meta.remote_updated_at if meta is not None else None,
    )


def _take_remote(local: Any, remote: Any, changed: List[str]) -> None:
    for name in changed:
        setattr(local, name, list(remote.dependencies) if name == "dependencies" else getattr(remote, name))
    _synced_from(local, remote)


class ReconciliationService:
    """Brings the local document and the remote board back in line.

    A sweep first pulls: records only on the board are added locally and
    board edits to records unchanged locally are copied in. Records edited
    on both sides are conflicts, settled by ``conflict_resolution``:

    * ``local``: the local copy is pushed over the board item.
    * ``remote``: the board item replaces the local copy.
    * ``newest``: the later edit wins; ties go to the local copy.
    * ``prompt``: nothing changes; the conflict is reported and the record
      is held back from the push.

    It then pushes local records whose remote copy is stale, in document
    order (task, then its subtasks). With ``pull`` off only the push runs.
    Each push overwrites only that record's sync metadata, so a sweep can
    be interrupted and re-run safely.
    """

    def __init__(self, local, remote, conflict_resolution: str = RESOLVE_PROMPT, pull: bool = True) -> None:
        self.local = local
        self.remote = remote
        self.conflict_resolution = conflict_resolution
        self.pull_enabled = pull

    def pending_records(self, tasks) -> List[Any]:
        return [record for record in iter_records(tasks) if needs_sync(record)]

    def _resolve(self, local: Any, remote: Any) -> Optional[str]:
        strategy = self.conflict_resolution
        if strategy in (RESOLVE_LOCAL, RESOLVE_REMOTE):
            return strategy
        if strategy == RESOLVE_NEWEST:
            local_time = _parse_time(local.sync.last_modified_at if local.sync else None)
            remote_time = _parse_time(remote.sync.remote_updated_at if remote.sync else None)
            return RESOLVE_LOCAL if local_time >= remote_time else RESOLVE_REMOTE
        return None

    def pull(self, tasks: List[Task], report: SyncReport) -> Set[TaskId]:
        """Merge board state into ``tasks`` in place; returns ids held back from the push."""
        held: Set[TaskId] = set()
        for remote in iter_records(self.remote.load_tasks()):
            local = find_record(tasks, remote.task_id)
            if local is None:
                if self._adopt(tasks, remote):
                    report.pulled += 1
                continue
            changed = compare_tasks(local, remote)
            if not changed:
                if remote.sync is not None and remote.sync.remote_updated_at and not needs_sync(local):
                    ensure_sync(local).remote_updated_at = remote.sync.remote_updated_at
                continue
            if not needs_sync(local):
                _take_remote(local, remote, changed)
                report.pulled += 1
                continue
            if not remote_changed(local, remote):
                # only the local side moved; the push carries it
                continue
            resolution = self._resolve(local, remote)
            report.conflicts.append(
                {"taskId": str(remote.task_id), "fields": changed, "resolution": resolution}
            )
            if resolution is None:
                held.add(remote.task_id)
                logger.warning("sync conflict on %s (%s); left for manual resolution", remote.task_id, ", ".join(changed))
            elif resolution == RESOLVE_REMOTE:
                _take_remote(local, remote, changed)
                report.pulled += 1
        return held

    def _adopt(self, tasks: List[Task], remote: Any) -> bool:
        adopted = remote.copy()
        _synced_from(adopted, remote)
        if isinstance(remote, Subtask):
            parent = find_record(tasks, TopLevel(remote.parent_id))
            if parent is None:
                return False
            parent.subtasks.append(adopted)
            parent.subtasks.sort(key=lambda s: s.id)
            return True
        # subtasks arrive as records of their own
        adopted.subtasks = []
        tasks.append(adopted)
        tasks.sort(key=lambda t: t.id)
        return True

    def sweep(self, limit: Optional[int] = None) -> SyncReport:
        report = SyncReport()
        tasks = self.local.load_tasks()
        held = self.pull(tasks, report) if self.pull_enabled else set()
        pending = [r for r in self.pending_records(tasks) if r.task_id not in held]
        if limit is not None:
            pending = pending[:limit]
        for record in pending:
            report.attempted += 1
            try:
                self.remote.push_record(record)
                report.synced += 1
            except TaskStoreError as exc:
                mark_error(record, str(exc))
                report.failed += 1
                report.errors.append({"taskId": str(record.task_id), "error": str(exc)})
                logger.warning("sync of %s failed: %s", record.task_id, exc)
                if isinstance(exc, AuthError):
                    # every remaining push would be refused too
                    break
        if report.attempted or report.pulled:
            self.local.save_tasks(tasks)
            logger.info(
                "sync sweep: %d pulled, %d synced, %d failed, %d conflicts",
                report.pulled,
                report.synced,
                report.failed,
                len(report.conflicts),
            )
        return report
