"""Dependency-aware ordering and phase queries over a task set.

Every function here is pure: callers pass the task list they just read from
``tasks.yaml`` and nothing is cached between calls, so external edits to the
artifact are always honored on the next decision.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from specloop.artifacts import PhaseInfo, TaskItem, TaskStatus
from specloop.errors import CycleError, TaskGraphError, UnknownDependencyError


def order_by_dependency(tasks: Sequence[TaskItem], *, spec_name: str = "") -> list[TaskItem]:
    """Return ``tasks`` so that every task comes after all of its dependencies.

    Kahn's algorithm; among tasks that become ready at the same time the
    original relative order is kept, so the result is deterministic.
    """
    index_by_id: dict[str, int] = {}
    for index, task in enumerate(tasks):
        index_by_id.setdefault(task.id, index)

    in_degree = [0] * len(tasks)
    dependents: list[list[int]] = [[] for _ in tasks]
    for index, task in enumerate(tasks):
        for dep_id in dict.fromkeys(task.dependencies):
            dep_index = index_by_id.get(dep_id)
            if dep_index is None:
                raise UnknownDependencyError(task.id, dep_id, spec_name=spec_name)
            in_degree[index] += 1
            dependents[dep_index].append(index)

    ready = [index for index, degree in enumerate(in_degree) if degree == 0]
    ordered: list[TaskItem] = []
    while ready:
        # ``ready`` stays sorted by source position.
        current = ready.pop(0)
        ordered.append(tasks[current])
        released: list[int] = []
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                released.append(dependent)
        if released:
            ready = sorted(ready + released)

    if len(ordered) != len(tasks):
        remaining = [task.id for index, task in enumerate(tasks) if in_degree[index] > 0]
        raise CycleError(remaining, spec_name=spec_name)
    return ordered


def dependencies_met(task: TaskItem, all_tasks: Iterable[TaskItem]) -> tuple[bool, list[str]]:
    if not task.dependencies:
        return True, []
    status_by_id = {item.id: item.state for item in all_tasks}
    unmet: list[str] = []
    for dep_id in task.dependencies:
        state = status_by_id.get(dep_id)
        if state is None:
            unmet.append(f"{dep_id} (not found)")
        elif state is not TaskStatus.COMPLETED:
            unmet.append(dep_id)
    return not unmet, unmet


def tasks_in_phase(phase_number: int, tasks: Iterable[TaskItem]) -> list[TaskItem]:
    return [task for task in tasks if task.phase == phase_number]


def phase_numbers(tasks: Iterable[TaskItem]) -> list[int]:
    return sorted({task.phase for task in tasks})


def total_phases(tasks: Iterable[TaskItem]) -> int:
    return len(phase_numbers(tasks))


def first_incomplete_phase(tasks: Sequence[TaskItem]) -> int:
    """Lowest phase that still has a pending or in-progress task, else 0."""
    for number in phase_numbers(tasks):
        if not is_phase_settled(number, tasks):
            return number
    return 0


def is_phase_complete(phase_number: int, tasks: Iterable[TaskItem]) -> bool:
    """True iff every task in the phase is completed. Blocked tasks do not count."""
    return all(task.is_completed for task in tasks_in_phase(phase_number, tasks))


def is_phase_settled(phase_number: int, tasks: Iterable[TaskItem]) -> bool:
    """True iff every task in the phase is completed or blocked."""
    return all(
        task.is_completed or task.is_blocked for task in tasks_in_phase(phase_number, tasks)
    )


def phase_infos(tasks: Sequence[TaskItem]) -> list[PhaseInfo]:
    infos: list[PhaseInfo] = []
    for number in phase_numbers(tasks):
        members = tasks_in_phase(number, tasks)
        infos.append(
            PhaseInfo(
                number=number,
                total_tasks=len(members),
                completed_tasks=sum(1 for task in members if task.is_completed),
                blocked_tasks=sum(1 for task in members if task.is_blocked),
            )
        )
    return infos


def validate_task_graph(tasks: Sequence[TaskItem], *, spec_name: str = "") -> None:
    """Check ids, phase numbering and the dependency graph; raise on the first problem."""
    seen: set[str] = set()
    for task in tasks:
        if not task.id:
            raise TaskGraphError("task without an id", spec_name=spec_name)
        if task.id in seen:
            raise TaskGraphError(f"duplicate task id: {task.id}", spec_name=spec_name)
        seen.add(task.id)

    numbers = phase_numbers(tasks)
    if numbers and numbers != list(range(1, len(numbers) + 1)):
        raise TaskGraphError(
            "phase numbers must be contiguous from 1, got: "
            + ", ".join(str(number) for number in numbers),
            spec_name=spec_name,
        )

    order_by_dependency(tasks, spec_name=spec_name)
