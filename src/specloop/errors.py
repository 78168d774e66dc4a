from __future__ import annotations

from collections.abc import Sequence


class SpecloopError(RuntimeError):
    """Base class for every error raised by the workflow engine."""


class StateError(SpecloopError):
    """Raised when persisted workflow state cannot be read or written."""


class ArtifactError(SpecloopError):
    """Raised when an artifact file is missing or cannot be parsed."""


class ArtifactValidationError(SpecloopError):
    """Raised when an artifact fails its post-condition checks."""

    def __init__(self, artifact: str, reasons: Sequence[str]) -> None:
        self.artifact = artifact
        self.reasons = list(reasons)
        lines = [f"schema validation failed for {artifact}:"]
        lines.extend(f"- {reason}" for reason in self.reasons)
        super().__init__("\n".join(lines))


class SpecNotFoundError(SpecloopError):
    """Raised when no spec directory can be resolved."""


class MissingArtifactError(SpecloopError):
    """Raised when a selected stage needs an artifact that does not exist."""

    def __init__(self, spec_name: str, missing: Sequence[str]) -> None:
        self.spec_name = spec_name
        self.missing = list(missing)
        super().__init__(
            f"spec '{spec_name}' is missing required artifacts: {', '.join(self.missing)}"
        )


def _scoped(spec_name: str, message: str) -> str:
    return f"{spec_name}: {message}" if spec_name else message


class TaskGraphError(SpecloopError):
    """Raised when ``tasks.yaml`` ids, phases or dependencies are inconsistent."""

    def __init__(self, message: str, *, spec_name: str = "") -> None:
        self.spec_name = spec_name
        super().__init__(_scoped(spec_name, message))


class CycleError(TaskGraphError):
    """Raised when the task dependency graph contains a cycle."""

    def __init__(self, task_ids: Sequence[str], *, spec_name: str = "") -> None:
        self.task_ids = list(task_ids)
        super().__init__(
            "circular dependency detected among tasks: " + ", ".join(self.task_ids),
            spec_name=spec_name,
        )


class UnknownDependencyError(TaskGraphError):
    """Raised when a task depends on an id that does not exist."""

    def __init__(self, task_id: str, dependency_id: str, *, spec_name: str = "") -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(
            f"task {task_id} depends on unknown task {dependency_id}", spec_name=spec_name
        )


class PhaseRangeError(SpecloopError):
    def __init__(self, phase: int, total_phases: int, *, spec_name: str = "") -> None:
        self.phase = phase
        self.total_phases = total_phases
        self.spec_name = spec_name
        super().__init__(
            _scoped(spec_name, f"phase {phase} is out of range (valid: 1-{total_phases})")
        )


class TaskNotFoundError(SpecloopError):
    def __init__(self, task_id: str, *, spec_name: str = "") -> None:
        self.task_id = task_id
        self.spec_name = spec_name
        super().__init__(_scoped(spec_name, f"task {task_id} not found"))


class DependencyUnmetError(SpecloopError):
    """Raised when a requested task's prerequisites are not completed."""

    def __init__(self, spec_name: str, task_id: str, unmet: Sequence[str]) -> None:
        self.spec_name = spec_name
        self.task_id = task_id
        self.unmet = list(unmet)
        super().__init__(
            f"{spec_name}: task {task_id} has unmet dependencies: {', '.join(self.unmet)}"
        )


class ResumableError(SpecloopError):
    """An error that tells the user exactly how to continue."""

    def __init__(self, message: str, *, resume_command: str) -> None:
        super().__init__(message)
        self.resume_command = resume_command


class RetryExhaustedError(ResumableError):
    def __init__(
        self,
        *,
        spec_name: str,
        stage: str,
        retry_count: int,
        max_retries: int,
        resume_command: str,
        unit: str | None = None,
        cause: str | None = None,
    ) -> None:
        self.spec_name = spec_name
        self.stage = stage
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.unit = unit
        self.cause = cause
        scope = f"{spec_name or '<new spec>'}:{stage}"
        if unit:
            scope = f"{scope} ({unit})"
        message = f"retry limit exhausted for {scope} ({retry_count}/{max_retries} retries)"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message, resume_command=resume_command)


class PhaseIncompleteError(ResumableError):
    def __init__(self, spec_name: str, phase: int, *, resume_command: str) -> None:
        self.spec_name = spec_name
        self.phase = phase
        super().__init__(
            f"{spec_name}: phase {phase} did not complete all tasks",
            resume_command=resume_command,
        )

