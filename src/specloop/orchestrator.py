from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from specloop.artifacts import (
    PLAN_FILE,
    SPEC_FILE,
    TASKS_FILE,
    ArtifactReader,
    SpecWorkspace,
    TaskItem,
    TaskStats,
    get_task_by_id,
)
from specloop.backends.base import BackendEventHook
from specloop.commands import CommandBuilder, resume_command, shell_quote
from specloop.errors import (
    DependencyUnmetError,
    MissingArtifactError,
    PhaseIncompleteError,
    PhaseRangeError,
    RetryExhaustedError,
    SpecloopError,
    TaskNotFoundError,
)
from specloop.runner import Stage, StageResult, StageRunner, Validator, always_valid
from specloop.scheduler import (
    dependencies_met,
    first_incomplete_phase,
    is_phase_complete,
    is_phase_settled,
    order_by_dependency,
    phase_numbers,
    total_phases,
    validate_task_graph,
)
from specloop.validation import (
    implement_complete,
    newest_spec,
    phase_settled,
    task_completed,
    validate_plan_schema,
    validate_spec_schema,
    validate_tasks_schema,
)


class ExecutionMode(str, Enum):
    DEFAULT = "default"
    ALL_PHASES = "all_phases"
    SINGLE_PHASE = "single_phase"
    FROM_PHASE = "from_phase"
    TASKS = "tasks"


@dataclass(slots=True)
class ImplementOptions:
    prompt: str | None = None
    resume: bool = False
    all_phases: bool = False
    single_phase: int = 0
    from_phase: int = 0
    tasks: bool = False
    from_task: str = ""

    @property
    def mode(self) -> ExecutionMode:
        """First matching flag wins: tasks, all phases, single phase, from phase."""
        if self.tasks or self.from_task:
            return ExecutionMode.TASKS
        if self.all_phases:
            return ExecutionMode.ALL_PHASES
        if self.single_phase > 0:
            return ExecutionMode.SINGLE_PHASE
        if self.from_phase > 0:
            return ExecutionMode.FROM_PHASE
        return ExecutionMode.DEFAULT


@dataclass(slots=True)
class ImplementSummary:
    spec_name: str
    mode: ExecutionMode
    units_run: list[str] = field(default_factory=list)
    units_skipped: list[str] = field(default_factory=list)
    incomplete_phases: list[int] = field(default_factory=list)
    stats: TaskStats | None = None
    nothing_to_do: bool = False


# Artifacts each stage needs before it runs, and the ones it creates.
STAGE_REQUIRES: dict[Stage, tuple[str, ...]] = {
    Stage.CONSTITUTION: (),
    Stage.SPECIFY: (),
    Stage.CLARIFY: (SPEC_FILE,),
    Stage.PLAN: (SPEC_FILE,),
    Stage.TASKS: (PLAN_FILE,),
    Stage.CHECKLIST: (SPEC_FILE,),
    Stage.ANALYZE: (SPEC_FILE, PLAN_FILE, TASKS_FILE),
    Stage.IMPLEMENT: (TASKS_FILE,),
}
STAGE_PRODUCES: dict[Stage, tuple[str, ...]] = {
    Stage.SPECIFY: (SPEC_FILE,),
    Stage.PLAN: (PLAN_FILE,),
    Stage.TASKS: (TASKS_FILE,),
}


@dataclass(slots=True)
class StageSelection:
    stages: set[Stage] = field(default_factory=set)

    @classmethod
    def of(cls, *stages: Stage) -> StageSelection:
        return cls(set(stages))

    @classmethod
    def core(cls) -> StageSelection:
        return cls.of(Stage.SPECIFY, Stage.PLAN, Stage.TASKS, Stage.IMPLEMENT)

    def ordered(self) -> list[Stage]:
        return [stage for stage in Stage if stage in self.stages]

    def missing_artifacts(self, spec_dir: Path | None) -> list[str]:
        """Artifacts the selection needs that neither exist nor come from an earlier stage."""
        produced: set[str] = set()
        missing: list[str] = []
        for stage in self.ordered():
            for artifact in STAGE_REQUIRES[stage]:
                if artifact in produced or artifact in missing:
                    continue
                if spec_dir is None or not (spec_dir / artifact).exists():
                    missing.append(artifact)
            produced.update(STAGE_PRODUCES.get(stage, ()))
        return missing


class WorkflowOrchestrator:
    """Drives stages, phases and tasks through ``StageRunner``.

    Every scheduling decision re-reads ``tasks.yaml``; nothing about the
    task set is kept between units.
    """

    def __init__(
        self,
        runner: StageRunner,
        workspace: SpecWorkspace,
        *,
        commands: CommandBuilder | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.runner = runner
        self.workspace = workspace
        self.reader = ArtifactReader(workspace)
        self.commands = commands or CommandBuilder()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _run_unit(
        self,
        spec_name: str,
        stage: Stage,
        instruction: str,
        validate: Validator,
        *,
        resume_hint: str,
        unit: str | None = None,
    ) -> StageResult:
        result = await self.runner.execute_stage(spec_name, stage, instruction, validate)
        if result.success:
            return result
        if result.exhausted:
            raise RetryExhaustedError(
                spec_name=spec_name,
                stage=stage.value,
                retry_count=result.retry_count,
                max_retries=self.runner.max_retries,
                resume_command=resume_hint,
                unit=unit,
                cause=result.error,
            )
        raise SpecloopError(
            f"{spec_name or '<new spec>'}:{stage.value}"
            + (f" ({unit})" if unit else "")
            + f" failed: {result.error}"
        )

    # Stage-scoped workflows

    async def run_specify(self, feature: str) -> str:
        """Create a new spec from ``feature`` and return its name."""
        if not feature.strip():
            raise ValueError("feature description must not be empty")
        # Every specify run creates a new spec, so it starts with a fresh budget.
        self.runner.reset("", Stage.SPECIFY)
        await self._run_unit(
            "",
            Stage.SPECIFY,
            self.commands.build(Stage.SPECIFY.value, prompt=feature),
            newest_spec(self.workspace),
            resume_hint=f"{resume_command('', Stage.SPECIFY.value)} {shell_quote(feature)}",
        )
        spec_name = self.workspace.detect_current_spec().spec_name
        self._emit({"event": "spec_created", "spec": spec_name})
        return spec_name

    async def _run_stage(
        self,
        spec_name: str | None,
        stage: Stage,
        validate: Validator,
        prompt: str | None = None,
    ) -> str:
        name = self.workspace.resolve_spec_name(spec_name)
        await self._run_unit(
            name,
            stage,
            self.commands.build(stage.value, prompt=prompt),
            validate,
            resume_hint=resume_command(name, stage.value),
        )
        return name

    async def run_plan(self, spec_name: str | None = None, prompt: str | None = None) -> str:
        return await self._run_stage(spec_name, Stage.PLAN, validate_plan_schema, prompt)

    async def run_tasks(self, spec_name: str | None = None, prompt: str | None = None) -> str:
        return await self._run_stage(spec_name, Stage.TASKS, validate_tasks_schema, prompt)

    async def run_clarify(self, spec_name: str | None = None, prompt: str | None = None) -> str:
        return await self._run_stage(spec_name, Stage.CLARIFY, validate_spec_schema, prompt)

    async def run_checklist(self, spec_name: str | None = None, prompt: str | None = None) -> str:
        return await self._run_stage(spec_name, Stage.CHECKLIST, always_valid, prompt)

    async def run_analyze(self, spec_name: str | None = None, prompt: str | None = None) -> str:
        return await self._run_stage(spec_name, Stage.ANALYZE, always_valid, prompt)

    async def run_constitution(self, prompt: str | None = None) -> None:
        await self._run_unit(
            "",
            Stage.CONSTITUTION,
            self.commands.build(Stage.CONSTITUTION.value, prompt=prompt),
            always_valid,
            resume_hint=resume_command("", Stage.CONSTITUTION.value),
        )

    async def run_prep(self, feature: str) -> str:
        spec_name = await self.run_specify(feature)
        await self.run_plan(spec_name)
        await self.run_tasks(spec_name)
        return spec_name

    async def run_full(self, feature: str, options: ImplementOptions | None = None) -> ImplementSummary:
        spec_name = await self.run_prep(feature)
        return await self.run_implement(spec_name, options)

    async def run_stages(
        self,
        selection: StageSelection,
        *,
        feature: str | None = None,
        spec_name: str | None = None,
        options: ImplementOptions | None = None,
    ) -> ImplementSummary | None:
        """Run the selected stages in canonical order.

        Artifact prerequisites are checked up front, before any agent call.
        """
        ordered = selection.ordered()
        if not ordered:
            raise ValueError("no stages selected")
        if Stage.SPECIFY in selection.stages:
            if not feature:
                raise ValueError("the specify stage needs a feature description")
            name = ""
            spec_dir = None
        else:
            needs_spec = any(stage is not Stage.CONSTITUTION for stage in ordered)
            name = self.workspace.resolve_spec_name(spec_name) if needs_spec else ""
            spec_dir = self.workspace.spec_dir(name) if name else None

        missing = selection.missing_artifacts(spec_dir)
        if missing:
            raise MissingArtifactError(name or "<new spec>", missing)

        summary: ImplementSummary | None = None
        for stage in ordered:
            self._emit({"event": "workflow_stage", "spec": name, "stage": stage.value})
            match stage:
                case Stage.CONSTITUTION:
                    await self.run_constitution()
                case Stage.SPECIFY:
                    name = await self.run_specify(feature or "")
                case Stage.CLARIFY:
                    await self.run_clarify(name)
                case Stage.PLAN:
                    await self.run_plan(name)
                case Stage.TASKS:
                    await self.run_tasks(name)
                case Stage.CHECKLIST:
                    await self.run_checklist(name)
                case Stage.ANALYZE:
                    await self.run_analyze(name)
                case Stage.IMPLEMENT:
                    summary = await self.run_implement(name, options)
        return summary

    # Implement

    async def run_implement(
        self, spec_name: str | None = None, options: ImplementOptions | None = None
    ) -> ImplementSummary:
        options = options or ImplementOptions()
        name = self.workspace.resolve_spec_name(spec_name)
        mode = options.mode
        tasks = self.reader.get_all_tasks(name)
        validate_task_graph(tasks, spec_name=name)
        self._emit({"event": "implement_start", "spec": name, "mode": mode.value})
        if not tasks:
            self._emit({"event": "nothing_to_do", "spec": name})
            summary = ImplementSummary(spec_name=name, mode=mode, nothing_to_do=True)
        else:
            match mode:
                case ExecutionMode.TASKS:
                    summary = await self._implement_tasks(name, options, tasks)
                case ExecutionMode.ALL_PHASES:
                    summary = await self._implement_phases(name, options, tasks, start=None)
                case ExecutionMode.SINGLE_PHASE:
                    summary = await self._implement_single_phase(name, options, tasks)
                case ExecutionMode.FROM_PHASE:
                    summary = await self._implement_phases(
                        name, options, tasks, start=options.from_phase
                    )
                case _:
                    summary = await self._implement_default(name, options)
        summary.stats = self.reader.get_task_stats(name)
        self._emit(
            {
                "event": "implement_done",
                "spec": name,
                "mode": mode.value,
                "units_run": list(summary.units_run),
                "nothing_to_do": summary.nothing_to_do,
            }
        )
        return summary

    async def _implement_default(self, spec_name: str, options: ImplementOptions) -> ImplementSummary:
        summary = ImplementSummary(spec_name=spec_name, mode=ExecutionMode.DEFAULT)
        await self._run_unit(
            spec_name,
            Stage.IMPLEMENT,
            self.commands.build(
                Stage.IMPLEMENT.value, prompt=options.prompt, resume=options.resume
            ),
            implement_complete,
            resume_hint=resume_command(spec_name, Stage.IMPLEMENT.value, resume=True),
        )
        summary.units_run.append("implement")
        return summary

    @staticmethod
    def _check_phase_range(spec_name: str, phase: int, tasks: list[TaskItem]) -> None:
        total = total_phases(tasks)
        if phase < 1 or phase > total:
            raise PhaseRangeError(phase, total, spec_name=spec_name)

    async def _run_phase(self, spec_name: str, phase: int, prompt: str | None) -> None:
        await self._run_unit(
            spec_name,
            Stage.IMPLEMENT,
            self.commands.phase(phase, prompt),
            phase_settled(phase),
            resume_hint=resume_command(spec_name, Stage.IMPLEMENT.value, phase=phase),
            unit=f"phase {phase}",
        )

    async def _implement_phases(
        self,
        spec_name: str,
        options: ImplementOptions,
        tasks: list[TaskItem],
        *,
        start: int | None,
    ) -> ImplementSummary:
        mode = ExecutionMode.ALL_PHASES if start is None else ExecutionMode.FROM_PHASE
        summary = ImplementSummary(spec_name=spec_name, mode=mode)
        if start is None:
            start = first_incomplete_phase(tasks)
            if start == 0:
                self._emit({"event": "nothing_to_do", "spec": spec_name})
                summary.nothing_to_do = True
                return summary
        else:
            self._check_phase_range(spec_name, start, tasks)

        for phase in [number for number in phase_numbers(tasks) if number >= start]:
            # Blocked tasks leave nothing for the agent to do in a phase.
            if is_phase_settled(phase, self.reader.get_all_tasks(spec_name)):
                self._emit({"event": "phase_skipped", "spec": spec_name, "phase": phase})
                summary.units_skipped.append(f"phase {phase}")
                continue
            self._emit({"event": "phase_start", "spec": spec_name, "phase": phase})
            await self._run_phase(spec_name, phase, options.prompt)
            summary.units_run.append(f"phase {phase}")
            if not is_phase_complete(phase, self.reader.get_all_tasks(spec_name)):
                raise PhaseIncompleteError(
                    spec_name,
                    phase,
                    resume_command=resume_command(
                        spec_name, Stage.IMPLEMENT.value, phase=phase
                    ),
                )
            self._emit({"event": "phase_complete", "spec": spec_name, "phase": phase})
        return summary

    async def _implement_single_phase(
        self, spec_name: str, options: ImplementOptions, tasks: list[TaskItem]
    ) -> ImplementSummary:
        summary = ImplementSummary(spec_name=spec_name, mode=ExecutionMode.SINGLE_PHASE)
        phase = options.single_phase
        self._check_phase_range(spec_name, phase, tasks)
        self._emit({"event": "phase_start", "spec": spec_name, "phase": phase})
        await self._run_phase(spec_name, phase, options.prompt)
        summary.units_run.append(f"phase {phase}")
        if not is_phase_complete(phase, self.reader.get_all_tasks(spec_name)):
            self._emit({"event": "phase_incomplete", "spec": spec_name, "phase": phase})
            summary.incomplete_phases.append(phase)
        return summary

    async def _implement_tasks(
        self, spec_name: str, options: ImplementOptions, tasks: list[TaskItem]
    ) -> ImplementSummary:
        summary = ImplementSummary(spec_name=spec_name, mode=ExecutionMode.TASKS)
        ordered = order_by_dependency(tasks, spec_name=spec_name)

        start_index = 0
        if options.from_task:
            start_task = get_task_by_id(ordered, options.from_task, spec_name=spec_name)
            met, unmet = dependencies_met(start_task, tasks)
            if not met:
                raise DependencyUnmetError(spec_name, start_task.id, unmet)
            start_index = ordered.index(start_task)

        for planned in ordered[start_index:]:
            current = self.reader.get_all_tasks(spec_name)
            try:
                task = get_task_by_id(current, planned.id)
            except TaskNotFoundError:
                self._emit(
                    {"event": "task_skipped", "spec": spec_name, "task": planned.id, "status": "removed"}
                )
                summary.units_skipped.append(planned.id)
                continue
            if task.is_completed or task.is_blocked:
                self._emit(
                    {"event": "task_skipped", "spec": spec_name, "task": task.id, "status": task.status}
                )
                summary.units_skipped.append(task.id)
                continue
            met, unmet = dependencies_met(task, current)
            if not met:
                self._emit(
                    {"event": "task_dependencies_unmet", "spec": spec_name, "task": task.id, "unmet": unmet}
                )
                summary.units_skipped.append(task.id)
                continue
            self._emit({"event": "task_start", "spec": spec_name, "task": task.id, "title": task.title})
            await self._run_unit(
                spec_name,
                Stage.IMPLEMENT,
                self.commands.task(task.id, options.prompt),
                task_completed(task.id),
                resume_hint=resume_command(spec_name, Stage.IMPLEMENT.value, task_id=task.id),
                unit=f"task {task.id}",
            )
            summary.units_run.append(task.id)
            self._emit({"event": "task_complete", "spec": spec_name, "task": task.id})

        if not summary.units_run:
            summary.nothing_to_do = all(
                item.is_completed or item.is_blocked for item in self.reader.get_all_tasks(spec_name)
            )
        return summary
