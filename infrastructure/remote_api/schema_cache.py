import hashlib
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional

import yaml

logger = logging.getLogger("tasksync.remote.schema")

DEFAULT_TTL_SECONDS = int(os.getenv("TASKSYNC_SCHEMA_TTL_SECONDS", "86400"))
CACHE_FORMAT = 1


@dataclass
class _Entry:
    schema: Dict[str, Any]
    stored_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"storedAt": self.stored_at, "schema": self.schema}


class SchemaCache:
    """Board schemas (columns and groups) kept on disk between runs.

    The file remembers a digest of the credential it was written with; a
    different credential discards everything. Entries older than the TTL
    are dropped on load and on lookup.
    """

    def __init__(
        self,
        path: Path,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        token_getter: Callable[[], Optional[str]] = lambda: None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self.token_getter = token_getter
        self.clock = clock
        self._boards: Dict[str, _Entry] = {}
        self._lock = Lock()
        self._loaded = False

    def _credential_digest(self) -> str:
        token = self.token_getter() or ""
        return hashlib.sha256(token.encode()).hexdigest()[:16] if token else ""

    def _expired(self, entry: _Entry, ttl: float) -> bool:
        return self.clock() - entry.stored_at > ttl

    def _read_file(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            logger.debug("ignoring unreadable schema cache %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict) or raw.get("format") != CACHE_FORMAT:
            return {}
        return raw

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        raw = self._read_file()
        if not raw:
            return
        stored = raw.get("credential") or ""
        current = self._credential_digest()
        if stored and current and stored != current:
            logger.info("credential changed; discarding schema cache %s", self.path)
            self.path.unlink(missing_ok=True)
            return
        ttl = raw.get("ttlSeconds")
        ttl = float(ttl) if isinstance(ttl, (int, float)) and ttl > 0 else self.ttl_seconds
        for board_id, value in (raw.get("boards") or {}).items():
            if not isinstance(value, dict) or not isinstance(value.get("schema"), dict):
                continue
            try:
                entry = _Entry(value["schema"], float(value.get("storedAt")))
            except (TypeError, ValueError):
                continue
            if not self._expired(entry, ttl):
                self._boards[str(board_id)] = entry

    def get(self, board_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_loaded()
            entry = self._boards.get(str(board_id))
            if entry is None:
                return None
            if self._expired(entry, self.ttl_seconds):
                del self._boards[str(board_id)]
                return None
            return dict(entry.schema)

    def set(self, board_id: str, schema: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_loaded()
            self._boards[str(board_id)] = _Entry(dict(schema), self.clock())

    def invalidate(self, board_id: Optional[str] = None) -> None:
        with self._lock:
            self._ensure_loaded()
            if board_id is None:
                self._boards.clear()
            else:
                self._boards.pop(str(board_id), None)

    def persist(self) -> None:
        """Write the cache file; an empty cache removes it."""
        with self._lock:
            self._ensure_loaded()
            if not self._boards:
                self.path.unlink(missing_ok=True)
                return
            document = {
                "format": CACHE_FORMAT,
                "credential": self._credential_digest(),
                "ttlSeconds": self.ttl_seconds,
                "boards": {board_id: entry.to_dict() for board_id, entry in self._boards.items()},
            }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(yaml.safe_dump(document, allow_unicode=True, sort_keys=False), encoding="utf-8")
