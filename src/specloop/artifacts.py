from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from specloop.errors import ArtifactError, SpecNotFoundError, TaskNotFoundError

SPEC_DIR_PATTERN = re.compile(r"^(\d{3,})-(.+)$")

SPEC_FILE = "spec.yaml"
PLAN_FILE = "plan.yaml"
TASKS_FILE = "tasks.yaml"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


_STATUS_ALIASES = {
    "completed": TaskStatus.COMPLETED,
    "complete": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
    "in_progress": TaskStatus.IN_PROGRESS,
    "inprogress": TaskStatus.IN_PROGRESS,
    "in-progress": TaskStatus.IN_PROGRESS,
    "wip": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.BLOCKED,
    "pending": TaskStatus.PENDING,
}


def normalize_status(raw: object) -> TaskStatus:
    """Map a raw status value onto ``TaskStatus``; unknown values are pending."""
    return _STATUS_ALIASES.get(str(raw or "").strip().lower(), TaskStatus.PENDING)


def is_known_status(raw: object) -> bool:
    return str(raw or "").strip().lower() in _STATUS_ALIASES


@dataclass(frozen=True, slots=True)
class TaskItem:
    id: str
    title: str
    status: str = "Pending"
    dependencies: tuple[str, ...] = ()
    phase: int = 1
    parallel: bool = False
    type: str = ""
    file_path: str = ""
    blocked_reason: str = ""

    @property
    def state(self) -> TaskStatus:
        return normalize_status(self.status)

    @property
    def is_completed(self) -> bool:
        return self.state is TaskStatus.COMPLETED

    @property
    def is_blocked(self) -> bool:
        return self.state is TaskStatus.BLOCKED


@dataclass(frozen=True, slots=True)
class PhaseInfo:
    number: int
    title: str = ""
    purpose: str = ""
    total_tasks: int = 0
    completed_tasks: int = 0
    blocked_tasks: int = 0

    @property
    def actionable_tasks(self) -> int:
        return self.total_tasks - self.completed_tasks - self.blocked_tasks

    @property
    def is_settled(self) -> bool:
        """True when no pending or in-progress task is left in the phase."""
        return self.actionable_tasks == 0

    @property
    def is_complete(self) -> bool:
        return self.total_tasks > 0 and self.completed_tasks == self.total_tasks


@dataclass(slots=True)
class TaskStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    pending_tasks: int = 0
    blocked_tasks: int = 0
    total_phases: int = 0
    completed_phases: int = 0
    phases: list[PhaseInfo] = field(default_factory=list)

    @property
    def remaining_tasks(self) -> int:
        return self.total_tasks - self.completed_tasks

    def completion_percentage(self) -> float:
        if self.total_tasks == 0:
            return 100.0
        return self.completed_tasks / self.total_tasks * 100.0

    def is_complete(self) -> bool:
        return self.total_tasks > 0 and self.completed_tasks == self.total_tasks

    def summary(self) -> str:
        lines = [
            f"  {self.completed_tasks}/{self.total_tasks} tasks completed"
            + (f" ({self.completion_percentage():.0f}%)" if self.total_tasks else ""),
            f"  {self.completed_phases}/{self.total_phases} task phases completed",
        ]
        extras: list[str] = []
        if self.in_progress_tasks:
            extras.append(f"{self.in_progress_tasks} in progress")
        if self.blocked_tasks:
            extras.append(f"{self.blocked_tasks} blocked")
        if extras:
            lines.append(f"  ({', '.join(extras)})")
        return "\n".join(lines) + "\n"


@dataclass(slots=True)
class SpecMetadata:
    number: str
    name: str
    directory: Path
    branch: str | None = None
    detection: str = "explicit"

    @property
    def spec_name(self) -> str:
        return f"{self.number}-{self.name}"


def load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ArtifactError(f"artifact not found: {path}") from exc
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ArtifactError(f"failed to parse {path.name}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ArtifactError(f"{path.name} must contain a mapping at the top level")
    return payload


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _phase_entries(document: dict[str, Any]) -> list[dict[str, Any]]:
    phases = document.get("phases") or []
    if not isinstance(phases, list):
        return []
    return [phase for phase in phases if isinstance(phase, dict)]


def _task_from_dict(payload: dict[str, Any], phase_number: int) -> TaskItem:
    dependencies = payload.get("dependencies") or []
    if isinstance(dependencies, str):
        dependencies = [dependencies]
    return TaskItem(
        id=str(payload.get("id", "")).strip(),
        title=str(payload.get("title", "")),
        status=str(payload.get("status") or "Pending"),
        dependencies=tuple(str(dep).strip() for dep in dependencies if str(dep).strip()),
        phase=phase_number,
        parallel=bool(payload.get("parallel", False)),
        type=str(payload.get("type") or ""),
        file_path=str(payload.get("file_path") or ""),
        blocked_reason=str(payload.get("blocked_reason") or ""),
    )


def get_all_tasks(tasks_path: Path) -> list[TaskItem]:
    """Flatten every phase of ``tasks.yaml`` into one list, in source order."""
    document = load_yaml_mapping(tasks_path)
    tasks: list[TaskItem] = []
    for index, phase in enumerate(_phase_entries(document), start=1):
        phase_number = _as_int(phase.get("number"), index)
        for raw_task in phase.get("tasks") or []:
            if isinstance(raw_task, dict):
                tasks.append(_task_from_dict(raw_task, phase_number))
    return tasks


def get_task_by_id(tasks: list[TaskItem], task_id: str, *, spec_name: str = "") -> TaskItem:
    for task in tasks:
        if task.id == task_id:
            return task
    raise TaskNotFoundError(task_id, spec_name=spec_name)


def get_phase_info(tasks_path: Path) -> list[PhaseInfo]:
    document = load_yaml_mapping(tasks_path)
    phases: list[PhaseInfo] = []
    for index, phase in enumerate(_phase_entries(document), start=1):
        raw_tasks = [task for task in (phase.get("tasks") or []) if isinstance(task, dict)]
        states = [normalize_status(task.get("status")) for task in raw_tasks]
        phases.append(
            PhaseInfo(
                number=_as_int(phase.get("number"), index),
                title=str(phase.get("title") or ""),
                purpose=str(phase.get("purpose") or ""),
                total_tasks=len(raw_tasks),
                completed_tasks=states.count(TaskStatus.COMPLETED),
                blocked_tasks=states.count(TaskStatus.BLOCKED),
            )
        )
    return phases


def get_task_stats(tasks_path: Path) -> TaskStats:
    phases = get_phase_info(tasks_path)
    stats = TaskStats(total_phases=len(phases), phases=phases)
    for task in get_all_tasks(tasks_path):
        stats.total_tasks += 1
        state = task.state
        if state is TaskStatus.COMPLETED:
            stats.completed_tasks += 1
        elif state is TaskStatus.IN_PROGRESS:
            stats.in_progress_tasks += 1
        elif state is TaskStatus.BLOCKED:
            stats.blocked_tasks += 1
        else:
            stats.pending_tasks += 1
    stats.completed_phases = sum(1 for phase in phases if phase.is_complete)
    return stats


class SpecWorkspace:
    """Resolves spec directories and artifact paths under ``specs_dir``."""

    def __init__(self, specs_dir: Path, repo_root: Path | None = None) -> None:
        self.specs_dir = Path(specs_dir)
        self.repo_root = (repo_root or self.specs_dir.parent).resolve()

    def spec_dir(self, spec_name: str) -> Path:
        if not spec_name:
            return self.specs_dir
        return self.specs_dir / spec_name

    def artifact_path(self, spec_name: str, artifact: str) -> Path:
        return self.spec_dir(spec_name) / artifact

    def tasks_path(self, spec_name: str) -> Path:
        return self.artifact_path(spec_name, TASKS_FILE)

    def _current_branch(self) -> str | None:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--abbrev-ref", "HEAD"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return None
        if proc.returncode != 0:
            return None
        branch = proc.stdout.strip()
        return branch or None

    def spec_metadata(self, spec_name: str) -> SpecMetadata:
        directory = self.spec_dir(spec_name)
        if not spec_name or not directory.is_dir():
            raise SpecNotFoundError(f"spec directory not found: {directory}")
        match = SPEC_DIR_PATTERN.match(spec_name)
        if match:
            return SpecMetadata(number=match.group(1), name=match.group(2), directory=directory)
        return SpecMetadata(number="", name=spec_name, directory=directory)

    def detect_current_spec(self) -> SpecMetadata:
        """Pick the spec named by the git branch, else the newest spec directory."""
        branch = self._current_branch()
        if branch:
            match = SPEC_DIR_PATTERN.match(branch)
            if match and (self.specs_dir / branch).is_dir():
                return SpecMetadata(
                    number=match.group(1),
                    name=match.group(2),
                    directory=self.specs_dir / branch,
                    branch=branch,
                    detection="git_branch",
                )

        if not self.specs_dir.is_dir():
            raise SpecNotFoundError(f"no spec directories found in {self.specs_dir}")
        candidates = [
            (path, match)
            for path in self.specs_dir.iterdir()
            if path.is_dir() and (match := SPEC_DIR_PATTERN.match(path.name))
        ]
        if not candidates:
            raise SpecNotFoundError(f"no spec directories found in {self.specs_dir}")
        newest, match = max(
            candidates, key=lambda item: (item[0].stat().st_mtime, item[0].name)
        )
        return SpecMetadata(
            number=match.group(1),
            name=match.group(2),
            directory=newest,
            detection="newest_directory",
        )

    def resolve_spec_name(self, spec_name: str | None) -> str:
        if spec_name:
            self.spec_metadata(spec_name)
            return spec_name
        return self.detect_current_spec().spec_name


class ArtifactReader:
    """Reads task artifacts for named specs; nothing is cached between calls."""

    def __init__(self, workspace: SpecWorkspace) -> None:
        self.workspace = workspace

    def tasks_path(self, spec_name: str) -> Path:
        return self.workspace.tasks_path(spec_name)

    def get_all_tasks(self, spec_name: str) -> list[TaskItem]:
        return get_all_tasks(self.tasks_path(spec_name))

    def get_task_by_id(self, spec_name: str, task_id: str) -> TaskItem:
        return get_task_by_id(self.get_all_tasks(spec_name), task_id, spec_name=spec_name)

    def get_phase_info(self, spec_name: str) -> list[PhaseInfo]:
        return get_phase_info(self.tasks_path(spec_name))

    def get_task_stats(self, spec_name: str) -> TaskStats:
        return get_task_stats(self.tasks_path(spec_name))
