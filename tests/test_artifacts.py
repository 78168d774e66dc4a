import os
from pathlib import Path
from typing import Any

import pytest
import yaml

from specloop.artifacts import (
    ArtifactReader,
    SpecWorkspace,
    TaskStatus,
    get_all_tasks,
    get_phase_info,
    get_task_by_id,
    get_task_stats,
    load_yaml_mapping,
    normalize_status,
)
from specloop.errors import ArtifactError, SpecNotFoundError, TaskNotFoundError


def _write_tasks(spec_dir: Path, phases: list[dict[str, Any]]) -> Path:
    spec_dir.mkdir(parents=True, exist_ok=True)
    path = spec_dir / "tasks.yaml"
    document = {"tasks": {"branch": spec_dir.name}, "summary": {}, "phases": phases}
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


def _task(task_id: str, status: str = "Pending", deps: list[str] | None = None) -> dict[str, Any]:
    return {
        "id": task_id,
        "title": f"Task {task_id}",
        "status": status,
        "type": "implementation",
        "dependencies": deps or [],
    }


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Completed", TaskStatus.COMPLETED),
        ("done", TaskStatus.COMPLETED),
        ("COMPLETE", TaskStatus.COMPLETED),
        ("InProgress", TaskStatus.IN_PROGRESS),
        ("in-progress", TaskStatus.IN_PROGRESS),
        ("wip", TaskStatus.IN_PROGRESS),
        ("Blocked", TaskStatus.BLOCKED),
        ("Pending", TaskStatus.PENDING),
        ("someday", TaskStatus.PENDING),
        (None, TaskStatus.PENDING),
    ],
)
def test_normalize_status_aliases(raw: object, expected: TaskStatus) -> None:
    assert normalize_status(raw) is expected


def test_get_all_tasks_flattens_phases_in_order(tmp_path: Path) -> None:
    path = _write_tasks(
        tmp_path / "001-auth",
        [
            {"number": 1, "title": "Setup", "tasks": [_task("T001", "Completed")]},
            {
                "number": 2,
                "title": "Core",
                "tasks": [_task("T002", deps=["T001"]), _task("T003", "Blocked")],
            },
        ],
    )

    tasks = get_all_tasks(path)

    assert [task.id for task in tasks] == ["T001", "T002", "T003"]
    assert [task.phase for task in tasks] == [1, 2, 2]
    assert tasks[1].dependencies == ("T001",)
    assert tasks[0].is_completed
    assert tasks[2].is_blocked


def test_get_task_by_id_raises_for_unknown_id(tmp_path: Path) -> None:
    path = _write_tasks(tmp_path / "001-auth", [{"number": 1, "title": "A", "tasks": [_task("T001")]}])
    tasks = get_all_tasks(path)

    assert get_task_by_id(tasks, "T001").title == "Task T001"
    with pytest.raises(TaskNotFoundError, match="T999"):
        get_task_by_id(tasks, "T999")


def test_phase_info_counts_completed_and_blocked(tmp_path: Path) -> None:
    path = _write_tasks(
        tmp_path / "001-auth",
        [
            {
                "number": 1,
                "title": "Setup",
                "purpose": "scaffolding",
                "tasks": [_task("T001", "Completed"), _task("T002", "Blocked")],
            },
            {"number": 2, "title": "Core", "tasks": [_task("T003", "Completed")]},
        ],
    )

    first, second = get_phase_info(path)

    assert first.purpose == "scaffolding"
    assert (first.total_tasks, first.completed_tasks, first.blocked_tasks) == (2, 1, 1)
    assert first.is_settled is True
    assert first.is_complete is False
    assert second.is_complete is True


def test_task_stats_summary(tmp_path: Path) -> None:
    path = _write_tasks(
        tmp_path / "001-auth",
        [
            {
                "number": 1,
                "title": "Setup",
                "tasks": [
                    _task("T001", "Completed"),
                    _task("T002", "InProgress"),
                    _task("T003", "Blocked"),
                    _task("T004"),
                ],
            }
        ],
    )

    stats = get_task_stats(path)

    assert (stats.completed_tasks, stats.in_progress_tasks, stats.blocked_tasks) == (1, 1, 1)
    assert stats.pending_tasks == 1
    assert stats.remaining_tasks == 3
    assert stats.completion_percentage() == 25.0
    assert stats.is_complete() is False
    assert "1/4 tasks completed (25%)" in stats.summary()
    assert "1 blocked" in stats.summary()


def test_load_yaml_mapping_errors(tmp_path: Path) -> None:
    with pytest.raises(ArtifactError, match="not found"):
        load_yaml_mapping(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("phases: [unterminated", encoding="utf-8")
    with pytest.raises(ArtifactError, match="failed to parse"):
        load_yaml_mapping(broken)

    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ArtifactError, match="mapping"):
        load_yaml_mapping(listing)


def test_artifact_reader_resolves_paths_per_spec(tmp_path: Path) -> None:
    specs = tmp_path / "specs"
    _write_tasks(specs / "001-auth", [{"number": 1, "title": "A", "tasks": [_task("T001")]}])
    reader = ArtifactReader(SpecWorkspace(specs, tmp_path))

    assert reader.tasks_path("001-auth") == specs / "001-auth" / "tasks.yaml"
    assert reader.get_task_by_id("001-auth", "T001").status == "Pending"
    assert reader.get_task_stats("001-auth").total_tasks == 1


def test_detect_current_spec_picks_newest_directory(tmp_path: Path) -> None:
    specs = tmp_path / "specs"
    older = specs / "001-auth"
    newer = specs / "002-billing"
    older.mkdir(parents=True)
    newer.mkdir()
    (specs / "notes").mkdir()
    os.utime(older, (1_000_000, 1_000_000))
    os.utime(newer, (2_000_000, 2_000_000))

    metadata = SpecWorkspace(specs, tmp_path).detect_current_spec()

    assert metadata.spec_name == "002-billing"
    assert metadata.number == "002"
    assert metadata.detection == "newest_directory"


def test_detect_current_spec_without_specs_fails(tmp_path: Path) -> None:
    with pytest.raises(SpecNotFoundError):
        SpecWorkspace(tmp_path / "specs", tmp_path).detect_current_spec()


def test_resolve_spec_name_checks_explicit_name(tmp_path: Path) -> None:
    specs = tmp_path / "specs"
    (specs / "001-auth").mkdir(parents=True)
    workspace = SpecWorkspace(specs, tmp_path)

    assert workspace.resolve_spec_name("001-auth") == "001-auth"
    with pytest.raises(SpecNotFoundError):
        workspace.resolve_spec_name("404-missing")
