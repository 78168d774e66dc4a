import random

import pytest

from specloop.artifacts import TaskItem
from specloop.errors import CycleError, SpecloopError, TaskGraphError, UnknownDependencyError
from specloop.scheduler import (
    dependencies_met,
    first_incomplete_phase,
    is_phase_complete,
    is_phase_settled,
    order_by_dependency,
    phase_infos,
    tasks_in_phase,
    total_phases,
    validate_task_graph,
)


def _task(task_id: str, *deps: str, status: str = "Pending", phase: int = 1) -> TaskItem:
    return TaskItem(id=task_id, title=task_id, status=status, dependencies=deps, phase=phase)


def test_fan_out_keeps_siblings_in_source_order() -> None:
    tasks = [_task("T1"), _task("T2", "T1"), _task("T3", "T1")]

    assert [task.id for task in order_by_dependency(tasks)] == ["T1", "T2", "T3"]


def test_dependency_declared_later_is_moved_first() -> None:
    tasks = [_task("T3", "T2"), _task("T1"), _task("T2", "T1")]

    assert [task.id for task in order_by_dependency(tasks)] == ["T1", "T2", "T3"]


def test_random_acyclic_graphs_respect_every_dependency() -> None:
    rng = random.Random(7)
    for _ in range(50):
        size = rng.randint(1, 12)
        ids = [f"T{index:03d}" for index in range(size)]
        tasks = [
            _task(task_id, *rng.sample(ids[:index], rng.randint(0, min(index, 3))))
            for index, task_id in enumerate(ids)
        ]
        rng.shuffle(tasks)

        ordered = order_by_dependency(tasks)
        position = {task.id: index for index, task in enumerate(ordered)}

        assert sorted(position) == sorted(ids)
        for task in ordered:
            for dep in task.dependencies:
                assert position[task.id] > position[dep]


def test_cycle_is_reported_with_every_stuck_task() -> None:
    tasks = [_task("T1"), _task("T2", "T4"), _task("T3", "T2"), _task("T4", "T3"), _task("T5", "T4")]

    with pytest.raises(CycleError) as excinfo:
        order_by_dependency(tasks)

    assert excinfo.value.task_ids == ["T2", "T3", "T4", "T5"]


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CycleError):
        order_by_dependency([_task("T1", "T1")])


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError, match="T9"):
        order_by_dependency([_task("T1", "T9")])


def test_graph_errors_name_the_spec() -> None:
    with pytest.raises(UnknownDependencyError) as excinfo:
        order_by_dependency([_task("T1", "T9")], spec_name="001-auth")
    assert str(excinfo.value) == "001-auth: task T1 depends on unknown task T9"

    with pytest.raises(TaskGraphError, match="^001-auth: duplicate task id: T1$"):
        validate_task_graph([_task("T1"), _task("T1")], spec_name="001-auth")


def test_dependencies_met_lists_unmet_and_missing() -> None:
    tasks = [
        _task("T1", status="Completed"),
        _task("T2", status="InProgress"),
        _task("T3", "T1", "T2", "T404"),
    ]

    assert dependencies_met(tasks[0], tasks) == (True, [])
    assert dependencies_met(tasks[2], tasks) == (False, ["T2", "T404 (not found)"])


def test_blocked_dependency_is_not_met() -> None:
    tasks = [_task("T1", status="Blocked"), _task("T2", "T1")]

    assert dependencies_met(tasks[1], tasks) == (False, ["T1"])


def test_phase_queries_treat_blocked_differently() -> None:
    tasks = [
        _task("T1", status="Completed", phase=1),
        _task("T2", status="Blocked", phase=1),
        _task("T3", status="completed", phase=2),
        _task("T4", phase=3),
    ]

    assert is_phase_settled(1, tasks) is True
    assert is_phase_complete(1, tasks) is False
    assert is_phase_complete(2, tasks) is True
    assert first_incomplete_phase(tasks) == 3
    assert [task.id for task in tasks_in_phase(1, tasks)] == ["T1", "T2"]
    assert total_phases(tasks) == 3


def test_first_incomplete_phase_is_zero_when_everything_settled() -> None:
    tasks = [_task("T1", status="Done", phase=1), _task("T2", status="Blocked", phase=2)]

    assert first_incomplete_phase(tasks) == 0
    assert first_incomplete_phase([]) == 0


def test_phase_infos_are_derived_from_tasks() -> None:
    tasks = [_task("T1", status="Completed"), _task("T2", status="Blocked"), _task("T3", phase=2)]

    first, second = phase_infos(tasks)

    assert (first.number, first.total_tasks, first.completed_tasks, first.blocked_tasks) == (1, 2, 1, 1)
    assert first.is_settled is True
    assert second.actionable_tasks == 1


def test_validate_task_graph_checks_ids_and_phase_numbers() -> None:
    validate_task_graph([_task("T1"), _task("T2", "T1", phase=2)])

    with pytest.raises(SpecloopError, match="duplicate task id: T1"):
        validate_task_graph([_task("T1"), _task("T1")])
    with pytest.raises(SpecloopError, match="contiguous"):
        validate_task_graph([_task("T1", phase=1), _task("T2", phase=3)])
    with pytest.raises(CycleError):
        validate_task_graph([_task("T1", "T2"), _task("T2", "T1")])
