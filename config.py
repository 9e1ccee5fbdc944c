from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import ConfigurationError

USER_CONFIG_PATH = Path.home() / ".tasksync_config.yaml"
PROJECT_CONFIG_NAME = ".tasksync.yaml"
REMOTE_SECTION = "remote"
CONFIG_VERSION = "2.0.0"
TOKEN_ENV = "TASKSYNC_API_TOKEN"
DEFAULT_ENDPOINT = "https://api.tasksync.invalid/v1"

PERSISTENCE_MODES = ("local", "remote", "hybrid")
CONFLICT_RESOLUTIONS = ("prompt", "local", "remote", "newest")

DEFAULT_COLUMN_MAPPING: Dict[str, str] = {
    "task_id": "task_id",
    "title": "name",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "dependencies": "dependencies",
    "parent_task": "parent_task",
    "details": "details",
    "test_strategy": "test_strategy",
    "task_type": "task_type",
    "complexity_score": "complexity_score",
    "created_by": "created_by",
    "assigned_to": "assigned_to",
}

DEFAULT_GROUP_MAPPING: Dict[str, str] = {
    "pending": "pending",
    "in_progress": "in_progress",
    "completed": "completed",
    "blocked": "blocked",
    "subtasks": "subtasks",
}

REMOTE_DEFAULTS: Dict[str, Any] = {
    "enabled": False,
    "board_id": None,
    "workspace_id": None,
    "persistence_mode": "local",
    "credential_ref": None,
    "auto_sync": False,
    "sync_interval": 300,
    "conflict_resolution": "prompt",
    "fallback_to_local": True,
    "cache_enabled": True,
    "retry_attempts": 3,
    "timeout_ms": 30000,
    "endpoint": DEFAULT_ENDPOINT,
    "column_mapping": DEFAULT_COLUMN_MAPPING,
    "group_mapping": DEFAULT_GROUP_MAPPING,
    "config_version": CONFIG_VERSION,
}


# --- user-level config (credential store) ---


def _load_config() -> Dict[str, Any]:
    if not USER_CONFIG_PATH.exists():
        return {}
    try:
        return yaml.safe_load(USER_CONFIG_PATH.read_text()) or {}
    except (OSError, yaml.YAMLError):
        return {}


def _save_config(data: Dict[str, Any]) -> None:
    if not data:
        if USER_CONFIG_PATH.exists():
            USER_CONFIG_PATH.unlink()
        return
    USER_CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    USER_CONFIG_PATH.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")


def get_user_token() -> str:
    return _load_config().get("token", "")


def set_user_token(value: str) -> None:
    data = _load_config()
    value = value.strip()
    if value:
        data["token"] = value
    else:
        data.pop("token", None)
    _save_config(data)


def resolve_credential(ref: Optional[str]) -> str:
    """Resolve a credential reference to a token ("" when unavailable).

    ``env:NAME`` reads an environment variable, ``user`` reads the
    user-level config. Without a reference, TASKSYNC_API_TOKEN wins over the
    user-level token.
    """
    ref = (ref or "").strip()
    if ref.startswith("env:"):
        return os.getenv(ref[4:].strip(), "").strip()
    if ref == "user":
        return get_user_token().strip()
    if ref:
        return ""
    return (os.getenv(TOKEN_ENV) or get_user_token() or "").strip()


# --- project config ---


def project_config_path(project_root: Path) -> Path:
    return Path(project_root) / PROJECT_CONFIG_NAME


def read_project_file(project_root: Path, strict: bool = False) -> Optional[Dict[str, Any]]:
    """Raw project config, or None when the file does not exist.

    A file that exists but cannot be parsed reads as an empty mapping, or
    raises ConfigurationError when ``strict`` is set.
    """
    path = project_config_path(project_root)
    if not path.exists():
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        if strict:
            raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        if strict:
            raise ConfigurationError(f"{path} is not a mapping")
        return {}
    return data


def write_project_file(project_root: Path, data: Dict[str, Any]) -> Path:
    path = project_config_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, allow_unicode=True, sort_keys=False), encoding="utf-8")
    return path


def default_remote_section() -> Dict[str, Any]:
    return copy.deepcopy(REMOTE_DEFAULTS)


def merge_remote_defaults(section: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fill missing keys from the defaults without overwriting existing values."""
    merged = default_remote_section()
    for key, value in (section or {}).items():
        if key in ("column_mapping", "group_mapping") and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


@dataclass
class RemoteConfig:
    enabled: bool = False
    board_id: Optional[str] = None
    workspace_id: Optional[str] = None
    persistence_mode: str = "local"
    credential_ref: Optional[str] = None
    auto_sync: bool = False
    sync_interval: int = 300
    conflict_resolution: str = "prompt"
    fallback_to_local: bool = True
    cache_enabled: bool = True
    retry_attempts: int = 3
    timeout_ms: int = 30000
    endpoint: str = DEFAULT_ENDPOINT
    column_mapping: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COLUMN_MAPPING))
    group_mapping: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_GROUP_MAPPING))
    config_version: str = CONFIG_VERSION

    @property
    def timeout_seconds(self) -> float:
        return max(self.timeout_ms, 1) / 1000.0

    def credential(self) -> str:
        return resolve_credential(self.credential_ref)


@dataclass
class ProjectConfig:
    project_root: Path
    remote: RemoteConfig
    tasks_path: Optional[str] = None
    exists: bool = False
    has_remote_section: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)
    # set when the file exists but could not be parsed
    error: Optional[str] = None

    @property
    def persistence_mode(self) -> str:
        return self.remote.persistence_mode


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _remote_from_dict(section: Dict[str, Any]) -> RemoteConfig:
    merged = merge_remote_defaults(section)
    board = merged.get("board_id")
    workspace = merged.get("workspace_id")
    return RemoteConfig(
        enabled=_as_bool(merged.get("enabled"), False),
        board_id=str(board) if board not in (None, "") else None,
        workspace_id=str(workspace) if workspace not in (None, "") else None,
        persistence_mode=str(merged.get("persistence_mode") or "local").strip().lower(),
        credential_ref=merged.get("credential_ref") or None,
        auto_sync=_as_bool(merged.get("auto_sync"), False),
        sync_interval=_as_int(merged.get("sync_interval"), 300),
        conflict_resolution=str(merged.get("conflict_resolution") or "prompt").strip().lower(),
        fallback_to_local=_as_bool(merged.get("fallback_to_local"), True),
        cache_enabled=_as_bool(merged.get("cache_enabled"), True),
        retry_attempts=_as_int(merged.get("retry_attempts"), 3),
        timeout_ms=_as_int(merged.get("timeout_ms"), 30000),
        endpoint=str(merged.get("endpoint") or DEFAULT_ENDPOINT),
        column_mapping={str(k): str(v) for k, v in (merged.get("column_mapping") or {}).items()},
        group_mapping={str(k): str(v) for k, v in (merged.get("group_mapping") or {}).items()},
        config_version=str(merged.get("config_version") or CONFIG_VERSION),
    )


def load_project_config(project_root: Path) -> ProjectConfig:
    root = Path(project_root)
    try:
        raw = read_project_file(root, strict=True)
    except ConfigurationError as exc:
        return ProjectConfig(project_root=root, remote=RemoteConfig(), exists=True, error=str(exc))
    if raw is None:
        return ProjectConfig(project_root=root, remote=RemoteConfig())
    section = raw.get(REMOTE_SECTION)
    storage = raw.get("storage") if isinstance(raw.get("storage"), dict) else {}
    return ProjectConfig(
        project_root=root,
        remote=_remote_from_dict(section if isinstance(section, dict) else {}),
        tasks_path=storage.get("tasks_path") or None,
        exists=True,
        has_remote_section=isinstance(section, dict),
        raw=raw,
    )


@dataclass
class ConfigReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_remote_config(cfg: RemoteConfig, check_credential: bool = True) -> ConfigReport:
    report = ConfigReport()
    if cfg.persistence_mode not in PERSISTENCE_MODES:
        report.errors.append(
            f"Invalid persistence_mode {cfg.persistence_mode!r}; expected one of {', '.join(PERSISTENCE_MODES)}"
        )
    if cfg.conflict_resolution not in CONFLICT_RESOLUTIONS:
        report.errors.append(
            f"Invalid conflict_resolution {cfg.conflict_resolution!r}; expected one of {', '.join(CONFLICT_RESOLUTIONS)}"
        )
    if cfg.enabled and cfg.persistence_mode != "local":
        if not cfg.board_id:
            report.errors.append("board_id is required when remote persistence is enabled")
        if check_credential and not cfg.credential():
            report.errors.append("No API credential found for remote persistence")
    if cfg.persistence_mode != "local" and not cfg.enabled:
        report.warnings.append(f"persistence_mode is {cfg.persistence_mode!r} but remote integration is disabled")
    if cfg.sync_interval < 60:
        report.warnings.append("sync_interval below 60 seconds may hit remote rate limits")
    if cfg.timeout_ms < 5000:
        report.warnings.append("timeout_ms below 5000 may cause spurious request failures")
    if cfg.retry_attempts > 10:
        report.warnings.append("retry_attempts above 10 may cause long delays")
    if cfg.retry_attempts < 1:
        report.errors.append("retry_attempts must be at least 1")
    return report
