"""Project classification and one-shot configuration migration.

The state is always derived from what is on disk, never stored:

    config file | remote section | task file | state
    ------------+----------------+-----------+--------------------
    no          | -              | yes       | legacy
    no          | -              | no        | unconfigured
    yes         | no             | -         | needs-migration
    yes         | yes            | -         | configured-<mode>

Migration only adds: it writes the remote section with zero-impact
defaults (local mode, integration off) and keeps every existing value.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import (
    CONFIG_VERSION,
    REMOTE_SECTION,
    default_remote_section,
    load_project_config,
    merge_remote_defaults,
    project_config_path,
    read_project_file,
    write_project_file,
)
from core.errors import ConfigurationError
from infrastructure.json_task_store import DEFAULT_TASKS_PATH, LEGACY_TASKS_PATH

logger = logging.getLogger("tasksync.migration")

BACKUP_DIR_NAME = ".tasksync-backups"


class ProjectState(str, Enum):
    LEGACY = "legacy"
    NEEDS_MIGRATION = "needs-migration"
    CONFIGURED_LOCAL = "configured-local"
    CONFIGURED_REMOTE = "configured-remote"
    CONFIGURED_HYBRID = "configured-hybrid"
    UNCONFIGURED = "unconfigured"

    @property
    def configured(self) -> bool:
        return self.value.startswith("configured-")


_CONFIGURED_BY_MODE = {
    "local": ProjectState.CONFIGURED_LOCAL,
    "remote": ProjectState.CONFIGURED_REMOTE,
    "hybrid": ProjectState.CONFIGURED_HYBRID,
}

RECOMMENDATIONS: Dict[ProjectState, List[str]] = {
    ProjectState.LEGACY: [
        "Run migrate to add a project configuration; existing tasks stay untouched",
        "Remote persistence stays off until you enable it explicitly",
    ],
    ProjectState.NEEDS_MIGRATION: [
        "Run migrate to add the remote integration section with safe defaults",
    ],
    ProjectState.CONFIGURED_LOCAL: [
        "Set remote.persistence_mode to 'hybrid' to mirror tasks to the remote board",
    ],
    ProjectState.CONFIGURED_REMOTE: [
        "Keep fallback_to_local enabled so writes survive remote outages",
    ],
    ProjectState.CONFIGURED_HYBRID: [
        "Enable auto_sync to retry failed remote writes on startup",
    ],
    ProjectState.UNCONFIGURED: [
        "Create the first task; a local task file is created on demand",
    ],
}

UNREADABLE_CONFIG_ADVICE = "Fix the unreadable project configuration; migration will not rewrite it"

MIGRATION_PATHS: Dict[ProjectState, List[str]] = {
    ProjectState.LEGACY: ["backup", "write configuration with remote defaults"],
    ProjectState.NEEDS_MIGRATION: ["backup", "add remote section to existing configuration"],
    ProjectState.UNCONFIGURED: [],
    ProjectState.CONFIGURED_LOCAL: [],
    ProjectState.CONFIGURED_REMOTE: [],
    ProjectState.CONFIGURED_HYBRID: [],
}


@dataclass
class ProjectInspection:
    project_root: Path
    state: ProjectState
    has_config: bool
    has_remote_section: bool
    has_tasks_file: bool
    has_legacy_tasks_file: bool
    persistence_mode: Optional[str] = None
    recommendations: List[str] = field(default_factory=list)
    migration_path: List[str] = field(default_factory=list)
    config_error: Optional[str] = None

    @property
    def needs_migration(self) -> bool:
        if self.config_error:
            return False
        return self.state in (ProjectState.LEGACY, ProjectState.NEEDS_MIGRATION)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectRoot": str(self.project_root),
            "state": self.state.value,
            "hasConfig": self.has_config,
            "hasRemoteSection": self.has_remote_section,
            "hasTasksFile": self.has_tasks_file,
            "hasLegacyTasksFile": self.has_legacy_tasks_file,
            "persistenceMode": self.persistence_mode,
            "recommendations": list(self.recommendations),
            "migrationPath": list(self.migration_path),
            "configError": self.config_error,
        }


@dataclass
class MigrationResult:
    success: bool
    state_before: ProjectState
    state_after: ProjectState
    changes: List[str] = field(default_factory=list)
    dry_run: bool = False
    backup_path: Optional[Path] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stateBefore": self.state_before.value,
            "stateAfter": self.state_after.value,
            "changes": list(self.changes),
            "dryRun": self.dry_run,
            "backupPath": str(self.backup_path) if self.backup_path else None,
            "error": self.error,
        }


def _tasks_path(root: Path, raw_config: Optional[Dict[str, Any]]) -> Path:
    storage = (raw_config or {}).get("storage")
    if isinstance(storage, dict) and storage.get("tasks_path"):
        return root / str(storage["tasks_path"])
    return root / DEFAULT_TASKS_PATH


def inspect_project(project_root: Path) -> ProjectInspection:
    root = Path(project_root)
    config_error: Optional[str] = None
    try:
        raw = read_project_file(root, strict=True)
    except ConfigurationError as exc:
        raw, config_error = {}, str(exc)
    has_config = raw is not None
    has_remote = has_config and isinstance(raw.get(REMOTE_SECTION), dict)
    has_tasks = _tasks_path(root, raw).exists()
    has_legacy = (root / LEGACY_TASKS_PATH).exists()
    mode: Optional[str] = None

    if not has_config:
        state = ProjectState.LEGACY if (has_tasks or has_legacy) else ProjectState.UNCONFIGURED
    elif not has_remote:
        state = ProjectState.NEEDS_MIGRATION
    else:
        mode = load_project_config(root).persistence_mode
        # unknown modes are reported by config validation, not re-migrated
        state = _CONFIGURED_BY_MODE.get(mode, ProjectState.CONFIGURED_LOCAL)

    return ProjectInspection(
        project_root=root,
        state=state,
        has_config=has_config,
        has_remote_section=has_remote,
        has_tasks_file=has_tasks,
        has_legacy_tasks_file=has_legacy,
        persistence_mode=mode,
        recommendations=[UNREADABLE_CONFIG_ADVICE] if config_error else list(RECOMMENDATIONS[state]),
        migration_path=[] if config_error else list(MIGRATION_PATHS[state]),
        config_error=config_error,
    )


def classify_project(project_root: Path) -> ProjectState:
    return inspect_project(project_root).state


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def create_backup(project_root: Path) -> Path:
    """Copy config, task directory and legacy task file into a timestamped folder."""
    root = Path(project_root)
    raw = read_project_file(root)
    target = root / BACKUP_DIR_NAME / f"backup-{_timestamp()}"
    target.mkdir(parents=True, exist_ok=False)
    config_path = project_config_path(root)
    if config_path.exists():
        shutil.copy2(config_path, target / config_path.name)
    tasks_dir = _tasks_path(root, raw).parent
    if tasks_dir.exists() and tasks_dir != root:
        shutil.copytree(tasks_dir, target / tasks_dir.name)
    legacy = root / LEGACY_TASKS_PATH
    if legacy.exists():
        shutil.copy2(legacy, target / legacy.name)
    logger.info("backup written to %s", target)
    return target


def list_backups(project_root: Path) -> List[Path]:
    base = Path(project_root) / BACKUP_DIR_NAME
    if not base.exists():
        return []
    return sorted(p for p in base.iterdir() if p.is_dir() and p.name.startswith("backup-"))


def _planned_config(inspection: ProjectInspection) -> Optional[Dict[str, Any]]:
    """Configuration the migration would write, or None when nothing changes."""
    if inspection.state == ProjectState.LEGACY:
        return {REMOTE_SECTION: default_remote_section()}
    if inspection.state == ProjectState.NEEDS_MIGRATION:
        raw = dict(read_project_file(inspection.project_root, strict=True) or {})
        raw[REMOTE_SECTION] = merge_remote_defaults(None)
        return raw
    return None


def migrate_project(project_root: Path, dry_run: bool = False, backup: bool = True) -> MigrationResult:
    """Upgrade a legacy or pre-remote project; a no-op for anything else."""
    root = Path(project_root)
    inspection = inspect_project(root)
    if inspection.config_error:
        logger.warning("not migrating %s: %s", root, inspection.config_error)
        return MigrationResult(
            success=False,
            state_before=inspection.state,
            state_after=inspection.state,
            dry_run=dry_run,
            error=inspection.config_error,
        )
    planned = _planned_config(inspection)
    if planned is None:
        return MigrationResult(
            success=True,
            state_before=inspection.state,
            state_after=inspection.state,
            changes=[],
            dry_run=dry_run,
        )

    changes: List[str] = []
    config_path = project_config_path(root)
    if inspection.state == ProjectState.LEGACY:
        changes.append(f"create {config_path.name} with local persistence defaults")
    else:
        changes.append(f"add '{REMOTE_SECTION}' section to {config_path.name}")
    changes.append(f"set config_version {CONFIG_VERSION}")
    if backup:
        changes.insert(0, f"back up project files to {BACKUP_DIR_NAME}/")

    if dry_run:
        return MigrationResult(
            success=True,
            state_before=inspection.state,
            state_after=ProjectState.CONFIGURED_LOCAL,
            changes=changes,
            dry_run=True,
        )

    backup_path: Optional[Path] = None
    try:
        if backup:
            backup_path = create_backup(root)
        write_project_file(root, planned)
    except OSError as exc:
        logger.warning("migration of %s failed: %s", root, exc)
        return MigrationResult(
            success=False,
            state_before=inspection.state,
            state_after=classify_project(root),
            changes=[],
            backup_path=backup_path,
            error=str(exc),
        )
    after = classify_project(root)
    logger.info("migrated %s: %s -> %s", root, inspection.state.value, after.value)
    return MigrationResult(
        success=True,
        state_before=inspection.state,
        state_after=after,
        changes=changes,
        backup_path=backup_path,
    )


def ensure_backward_compatibility(project_root: Path, auto_migrate: bool = True, backup: bool = True) -> Dict[str, Any]:
    """Inspect the project and migrate it when allowed."""
    inspection = inspect_project(project_root)
    result: Dict[str, Any] = {"inspection": inspection.to_dict(), "migration": None}
    if inspection.needs_migration and auto_migrate:
        result["migration"] = migrate_project(project_root, dry_run=False, backup=backup).to_dict()
    if inspection.config_error:
        result["compatible"] = False
    else:
        result["compatible"] = not inspection.needs_migration or bool(
            result["migration"] and result["migration"]["success"]
        )
    return result
