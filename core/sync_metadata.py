"""Per-record remote sync bookkeeping.

pending -> synced after a confirmed remote write, pending -> error on remote
failure, and back to pending on any further local mutation. Each helper
overwrites only the metadata of the record it is given.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from .models import SyncMetadata
from .status import SyncStatus


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_sync(record: Any) -> SyncMetadata:
    if record.sync is None:
        record.sync = SyncMetadata()
    return record.sync


def mark_pending(record: Any) -> Any:
    """Invalidate any prior sync; keeps the known remote item id."""
    meta = ensure_sync(record)
    meta.sync_status = SyncStatus.PENDING
    meta.sync_error = None
    meta.last_modified_at = _now_iso()
    return record


def mark_synced(
    record: Any,
    remote_item_id: Optional[str] = None,
    timestamp: Optional[str] = None,
    remote_updated_at: Optional[str] = None,
) -> Any:
    meta = ensure_sync(record)
    if remote_item_id:
        meta.remote_item_id = str(remote_item_id)
    if remote_updated_at:
        meta.remote_updated_at = str(remote_updated_at)
    meta.sync_status = SyncStatus.SYNCED
    meta.sync_error = None
    meta.last_synced_at = timestamp or _now_iso()
    return record


def mark_error(record: Any, message: str) -> Any:
    meta = ensure_sync(record)
    meta.sync_status = SyncStatus.ERROR
    meta.sync_error = message or "unknown error"
    return record


def needs_sync(record: Any) -> bool:
    """True for records never synced, pending, or failed last time."""
    if record.sync is None:
        return True
    return record.sync.sync_status in (SyncStatus.PENDING, SyncStatus.ERROR)


def remote_item_id(record: Any) -> Optional[str]:
    return record.sync.remote_item_id if record.sync is not None else None


__all__ = ["ensure_sync", "mark_pending", "mark_synced", "mark_error", "needs_sync", "remote_item_id"]
