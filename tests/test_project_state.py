import json
from pathlib import Path

import yaml

from application.project_state import (
    ProjectState,
    classify_project,
    ensure_backward_compatibility,
    inspect_project,
    list_backups,
    migrate_project,
)
from config import PROJECT_CONFIG_NAME, write_project_file


def _tasks_file(root: Path, legacy: bool = False) -> Path:
    path = root / "tasks.json" if legacy else root / "tasks" / "tasks.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"tasks": [{"id": 1, "title": "A", "status": "pending"}]}), encoding="utf-8")
    return path


def _config(root: Path) -> dict:
    return yaml.safe_load((root / PROJECT_CONFIG_NAME).read_text(encoding="utf-8"))


def test_classification_table(tmp_path: Path):
    assert classify_project(tmp_path) == ProjectState.UNCONFIGURED

    _tasks_file(tmp_path, legacy=True)
    assert classify_project(tmp_path) == ProjectState.LEGACY

    write_project_file(tmp_path, {"project": {"name": "demo"}})
    assert classify_project(tmp_path) == ProjectState.NEEDS_MIGRATION

    write_project_file(tmp_path, {"remote": {"persistence_mode": "hybrid"}})
    assert classify_project(tmp_path) == ProjectState.CONFIGURED_HYBRID

    write_project_file(tmp_path, {"remote": {"persistence_mode": "sideways"}})
    assert classify_project(tmp_path) == ProjectState.CONFIGURED_LOCAL


def test_inspection_lists_recommendations(tmp_path: Path):
    _tasks_file(tmp_path)
    inspection = inspect_project(tmp_path)

    assert inspection.state == ProjectState.LEGACY
    assert inspection.needs_migration
    assert inspection.has_tasks_file and not inspection.has_legacy_tasks_file
    assert inspection.recommendations
    assert inspection.to_dict()["migrationPath"][0] == "backup"


def test_legacy_migration_writes_safe_defaults(tmp_path: Path):
    _tasks_file(tmp_path)

    result = migrate_project(tmp_path)

    assert result.success
    assert result.state_before == ProjectState.LEGACY
    assert result.state_after == ProjectState.CONFIGURED_LOCAL
    remote = _config(tmp_path)["remote"]
    assert remote["enabled"] is False
    assert remote["persistence_mode"] == "local"
    assert remote["fallback_to_local"] is True
    backups = list_backups(tmp_path)
    assert len(backups) == 1
    assert (backups[0] / "tasks" / "tasks.json").exists()


def test_migration_keeps_existing_settings(tmp_path: Path):
    write_project_file(tmp_path, {"project": {"name": "demo"}, "models": {"main": "x"}})

    result = migrate_project(tmp_path, backup=False)

    config = _config(tmp_path)
    assert result.state_after == ProjectState.CONFIGURED_LOCAL
    assert config["project"] == {"name": "demo"}
    assert config["models"] == {"main": "x"}
    assert config["remote"]["board_id"] is None
    assert list_backups(tmp_path) == []


def test_migration_is_idempotent(tmp_path: Path):
    _tasks_file(tmp_path, legacy=True)
    migrate_project(tmp_path)
    before = (tmp_path / PROJECT_CONFIG_NAME).read_text(encoding="utf-8")

    again = migrate_project(tmp_path)

    assert again.success
    assert again.changes == []
    assert again.state_before == again.state_after == ProjectState.CONFIGURED_LOCAL
    assert (tmp_path / PROJECT_CONFIG_NAME).read_text(encoding="utf-8") == before
    assert len(list_backups(tmp_path)) == 1


def test_dry_run_changes_nothing(tmp_path: Path):
    _tasks_file(tmp_path)

    result = migrate_project(tmp_path, dry_run=True)

    assert result.dry_run
    assert result.changes
    assert not (tmp_path / PROJECT_CONFIG_NAME).exists()
    assert list_backups(tmp_path) == []
    assert classify_project(tmp_path) == ProjectState.LEGACY


def test_unconfigured_project_is_left_alone(tmp_path: Path):
    result = migrate_project(tmp_path)
    assert result.success
    assert result.changes == []
    assert not (tmp_path / PROJECT_CONFIG_NAME).exists()


def test_ensure_backward_compatibility(tmp_path: Path):
    _tasks_file(tmp_path)

    report = ensure_backward_compatibility(tmp_path, auto_migrate=False)
    assert report["compatible"] is False
    assert report["migration"] is None

    report = ensure_backward_compatibility(tmp_path, backup=False)
    assert report["compatible"] is True
    assert report["migration"]["stateAfter"] == "configured-local"


def test_unreadable_config_is_never_rewritten(tmp_path: Path):
    path = tmp_path / PROJECT_CONFIG_NAME
    original = "storage:\n  tasks_path: custom/tasks.json\nremote: [unclosed\n"
    path.write_text(original, encoding="utf-8")

    inspection = inspect_project(tmp_path)
    assert inspection.config_error
    assert inspection.needs_migration is False
    assert inspection.migration_path == []

    result = migrate_project(tmp_path)
    assert result.success is False
    assert result.error == inspection.config_error
    assert result.changes == []

    report = ensure_backward_compatibility(tmp_path)
    assert report["compatible"] is False
    assert report["migration"] is None
    assert report["inspection"]["configError"]

    assert path.read_text(encoding="utf-8") == original
    assert list_backups(tmp_path) == []
