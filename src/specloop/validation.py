"""Post-condition checks for the artifacts each stage produces.

Schema validators take a spec directory and raise ``ArtifactValidationError``
listing every violation; completion checks return an error message or None.
Both shapes are accepted by ``StageRunner``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from specloop.artifacts import (
    PLAN_FILE,
    SPEC_FILE,
    TASKS_FILE,
    SpecWorkspace,
    get_all_tasks,
    get_task_by_id,
    get_task_stats,
    is_known_status,
    load_yaml_mapping,
)
from specloop.errors import (
    ArtifactError,
    ArtifactValidationError,
    SpecloopError,
    SpecNotFoundError,
    TaskNotFoundError,
)
from specloop.scheduler import is_phase_settled, validate_task_graph

SPEC_REQUIRED_FIELDS = ("feature", "user_stories", "requirements")
PLAN_REQUIRED_FIELDS = ("plan", "summary", "technical_context")
TASKS_REQUIRED_FIELDS = ("tasks", "summary", "phases")
PHASE_REQUIRED_FIELDS = ("number", "title", "tasks")
TASK_REQUIRED_FIELDS = ("id", "title", "status", "type")
TASK_TYPES = ("setup", "implementation", "test", "documentation", "refactor")


def _missing_fields(node: dict[str, Any], fields: tuple[str, ...], path: str = "") -> list[str]:
    prefix = f"{path}: " if path else ""
    return [f"{prefix}missing required field: {name}" for name in fields if node.get(name) is None]


def _load_for_validation(path: Path) -> dict[str, Any]:
    try:
        return load_yaml_mapping(path)
    except ArtifactError as exc:
        raise ArtifactValidationError(path.name, [str(exc)]) from exc


def _check_required(spec_dir: Path, file_name: str, fields: tuple[str, ...]) -> None:
    document = _load_for_validation(Path(spec_dir) / file_name)
    reasons = _missing_fields(document, fields)
    if reasons:
        raise ArtifactValidationError(file_name, reasons)


def validate_spec_schema(spec_dir: Path) -> None:
    _check_required(spec_dir, SPEC_FILE, SPEC_REQUIRED_FIELDS)


def validate_plan_schema(spec_dir: Path) -> None:
    _check_required(spec_dir, PLAN_FILE, PLAN_REQUIRED_FIELDS)


def _task_reasons(raw_task: Any, path: str) -> list[str]:
    if not isinstance(raw_task, dict):
        return [f"{path}: task must be a mapping"]
    reasons = _missing_fields(raw_task, TASK_REQUIRED_FIELDS, path)
    status = raw_task.get("status")
    if status is not None and not is_known_status(status):
        reasons.append(
            f"{path}.status: invalid value {status!r} "
            "(expected Pending, InProgress, Completed or Blocked)"
        )
    task_type = raw_task.get("type")
    if task_type is not None and str(task_type) not in TASK_TYPES:
        reasons.append(
            f"{path}.type: invalid value {task_type!r} (expected one of {', '.join(TASK_TYPES)})"
        )
    dependencies = raw_task.get("dependencies")
    if dependencies is not None and not isinstance(dependencies, list):
        reasons.append(f"{path}.dependencies: expected array")
    return reasons


def validate_tasks_schema(spec_dir: Path) -> None:
    """Check required fields, enum values and the dependency graph of ``tasks.yaml``."""
    tasks_path = Path(spec_dir) / TASKS_FILE
    document = _load_for_validation(tasks_path)
    reasons = _missing_fields(document, TASKS_REQUIRED_FIELDS)

    phases = document.get("phases")
    if phases is not None and not isinstance(phases, list):
        reasons.append("phases: expected array")
    elif phases:
        for i, phase in enumerate(phases):
            path = f"phases[{i}]"
            if not isinstance(phase, dict):
                reasons.append(f"{path}: phase must be a mapping")
                continue
            reasons.extend(_missing_fields(phase, PHASE_REQUIRED_FIELDS, path))
            raw_tasks = phase.get("tasks") or []
            if not isinstance(raw_tasks, list):
                reasons.append(f"{path}.tasks: expected array")
                continue
            for j, raw_task in enumerate(raw_tasks):
                reasons.extend(_task_reasons(raw_task, f"{path}.tasks[{j}]"))

    # The graph is only meaningful once every task has an id.
    if not reasons:
        try:
            validate_task_graph(get_all_tasks(tasks_path))
        except SpecloopError as exc:
            reasons.append(str(exc))
    if reasons:
        raise ArtifactValidationError(TASKS_FILE, reasons)


def validate_tasks_complete(tasks_path: Path) -> str | None:
    """Return an error message unless every task in ``tasks.yaml`` is completed."""
    stats = get_task_stats(tasks_path)
    if stats.total_tasks == 0 or stats.is_complete():
        return None
    detail = f"{stats.pending_tasks} pending, {stats.in_progress_tasks} in-progress"
    if stats.blocked_tasks:
        detail += f", {stats.blocked_tasks} blocked"
    return f"implementation incomplete: {stats.remaining_tasks} tasks remain ({detail})"


def implement_complete(spec_dir: Path) -> str | None:
    return validate_tasks_complete(Path(spec_dir) / TASKS_FILE)


def phase_settled(phase_number: int):
    """Validator passing once no task in ``phase_number`` is pending or in progress."""

    def _validate(spec_dir: Path) -> str | None:
        tasks = get_all_tasks(Path(spec_dir) / TASKS_FILE)
        if is_phase_settled(phase_number, tasks):
            return None
        open_ids = [
            task.id
            for task in tasks
            if task.phase == phase_number and not (task.is_completed or task.is_blocked)
        ]
        return f"phase {phase_number} has unfinished tasks: {', '.join(open_ids)}"

    return _validate


def task_completed(task_id: str):
    """Validator passing once ``task_id`` is marked completed."""

    def _validate(spec_dir: Path) -> str | None:
        try:
            task = get_task_by_id(get_all_tasks(Path(spec_dir) / TASKS_FILE), task_id)
        except TaskNotFoundError:
            return f"task {task_id} is no longer in {TASKS_FILE}"
        if task.is_completed:
            return None
        return f"task {task_id} not completed (status: {task.status})"

    return _validate


def newest_spec(workspace: SpecWorkspace):
    """Validator for specify: the newest spec directory must carry a valid spec.yaml.

    The ``spec_dir`` argument is the specs root because specify runs before
    the spec has a name.
    """

    def _validate(_: Path) -> str | None:
        try:
            metadata = workspace.detect_current_spec()
        except SpecNotFoundError as exc:
            return f"no spec was created: {exc}"
        validate_spec_schema(metadata.directory)
        return None

    return _validate
