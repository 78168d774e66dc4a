from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

import click

from specloop.artifacts import SpecWorkspace
from specloop.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CustomCommandBackend,
)
from specloop.config import BackendName, SpecloopConfig, load_config, save_config
from specloop.errors import ResumableError, SpecloopError
from specloop.orchestrator import (
    ImplementOptions,
    ImplementSummary,
    StageSelection,
    WorkflowOrchestrator,
)
from specloop.runner import Stage, StageRunner
from specloop.state import RetryStateStore

T = TypeVar("T")

DEFAULT_CONFIG = "specloop.toml"

# Events shown without --verbose.
CONCISE_EVENTS = {
    "stage_start",
    "stage_attempt_failed",
    "stage_retry",
    "stage_exhausted",
    "spec_created",
    "phase_start",
    "phase_skipped",
    "phase_incomplete",
    "task_start",
    "task_skipped",
    "task_dependencies_unmet",
    "nothing_to_do",
}


class ResumeRequired(click.ClickException):
    """Stops the command and prints the exact command that continues the work."""

    exit_code = 2

    def __init__(self, error: ResumableError) -> None:
        super().__init__(f"{error}\nResume with: {error.resume_command}")
        self.resume_command = error.resume_command


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: SpecloopConfig
    workspace: SpecWorkspace
    retry_store: RetryStateStore
    orchestrator: WorkflowOrchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _render_event(event: dict[str, Any], *, verbose: bool) -> None:
    name = str(event.get("event", ""))
    if not verbose and name not in CONCISE_EVENTS:
        return
    spec = event.get("spec") or "-"
    match name:
        case "stage_start":
            click.echo(
                f"[{spec}] {event['stage']}: attempt {event['attempt']}"
                f" (retries {event['retry_count']}/{event['max_retries']})"
            )
            if verbose:
                click.echo(f"  > {event['instruction']}")
        case "stage_attempt_failed":
            click.echo(f"[{spec}] {event['stage']}: {event['error']}", err=True)
        case "stage_retry":
            click.echo(
                f"[{spec}] {event['stage']}: retrying ({event['retry_count']}/{event['max_retries']})"
            )
        case "stage_exhausted":
            click.echo(f"[{spec}] {event['stage']}: retry limit reached", err=True)
        case "spec_created":
            click.echo(f"Created spec: {spec}")
        case "phase_start":
            click.echo(f"[{spec}] phase {event['phase']}")
        case "phase_skipped":
            click.echo(f"[{spec}] phase {event['phase']} already complete, skipping")
        case "phase_incomplete":
            click.echo(f"[{spec}] phase {event['phase']} has incomplete tasks", err=True)
        case "task_start":
            click.echo(f"[{spec}] task {event['task']}: {event.get('title', '')}")
        case "task_skipped":
            click.echo(f"[{spec}] task {event['task']} is {event['status']}, skipping")
        case "task_dependencies_unmet":
            click.echo(
                f"[{spec}] task {event['task']} skipped, waiting on: {', '.join(event['unmet'])}",
                err=True,
            )
        case "nothing_to_do":
            click.echo(f"[{spec}] nothing left to implement")
        case _:
            details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
            click.echo(f"{name} {details}".rstrip())


def _build_backend(
    config: SpecloopConfig, repo_root: Path, *, verbose: bool
) -> AgentBackend:
    hook = partial(_render_event, verbose=verbose)
    sink = click.echo if verbose else None
    match config.agent.backend:
        case "codex":
            return CodexBackend(
                config.agent.binary,
                working_directory=repo_root,
                extra_args=config.agent.extra_args,
                output_sink=sink,
                event_hook=hook,
            )
        case "custom":
            try:
                return CustomCommandBackend(
                    config.agent.custom_command,
                    working_directory=repo_root,
                    output_sink=sink,
                    event_hook=hook,
                )
            except ValueError as exc:
                raise click.ClickException(str(exc)) from exc
        case _:
            return ClaudeCodeBackend(
                config.agent.binary,
                working_directory=repo_root,
                extra_args=config.agent.extra_args,
                output_sink=sink,
                event_hook=hook,
            )


def _load_runtime(repo_root: Path, config_path: Path, *, verbose: bool = False) -> Runtime:
    config = load_config(config_path)
    workspace = SpecWorkspace(repo_root / config.workflow.specs_dir, repo_root)
    retry_store = RetryStateStore(repo_root / config.workflow.state_dir)
    hook = partial(_render_event, verbose=verbose)
    runner = StageRunner(
        _build_backend(config, repo_root, verbose=verbose),
        retry_store,
        specs_dir=workspace.specs_dir,
        max_retries=max(0, int(config.workflow.max_retries)),
        timeout_seconds=config.timeout(),
        event_hook=hook,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        workspace=workspace,
        retry_store=retry_store,
        orchestrator=WorkflowOrchestrator(runner, workspace, event_hook=hook),
    )


def _runtime(config_value: str, verbose: bool = False) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), verbose=verbose)


def _execute(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except ResumableError as exc:
        raise ResumeRequired(exc) from exc
    except (SpecloopError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_summary(summary: ImplementSummary) -> None:
    if summary.nothing_to_do:
        click.echo(f"{summary.spec_name}: nothing to do")
    else:
        click.echo(f"{summary.spec_name}: implement ({summary.mode.value}) finished")
        if summary.units_run:
            click.echo(f"  ran: {', '.join(summary.units_run)}")
        if summary.units_skipped:
            click.echo(f"  skipped: {', '.join(summary.units_skipped)}")
    for phase in summary.incomplete_phases:
        click.echo(f"  phase {phase} still has incomplete tasks")
    if summary.stats is not None:
        click.echo(summary.stats.summary(), nl=False)


def config_option(func):
    return click.option(
        "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
    )(func)


def verbose_option(func):
    return click.option("--verbose", "-v", is_flag=True, default=False)(func)


def prompt_option(func):
    return click.option("--prompt", default=None, help="Extra guidance appended to the instruction.")(func)


def implement_options(func):
    for decorator in reversed(
        [
            click.option("--resume", is_flag=True, default=False),
            click.option("--phases", "all_phases", is_flag=True, default=False),
            click.option("--phase", "single_phase", type=int, default=0),
            click.option("--from-phase", "from_phase", type=int, default=0),
            click.option("--tasks", "tasks", is_flag=True, default=False),
            click.option("--from-task", "from_task", default=""),
        ]
    ):
        func = decorator(func)
    return func


@click.group()
def cli() -> None:
    """specloop: drive a coding agent through spec, plan, tasks and implementation."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex", "custom"]), default=None)
@click.option("--custom-command", default=None)
@config_option
def init_command(backend: BackendName | None, custom_command: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.backend = backend
    if custom_command:
        config.agent.custom_command = custom_command
    save_config(config_path, config)

    (repo_root / config.workflow.specs_dir).mkdir(parents=True, exist_ok=True)
    (repo_root / config.workflow.state_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized specloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agent.backend}")


@cli.command("specify")
@click.argument("feature")
@verbose_option
@config_option
def specify_command(feature: str, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value, verbose)
    spec_name = _execute(runtime.orchestrator.run_specify(feature))
    click.echo(f"Spec ready: {spec_name}")


def _stage_command(name: str, method: str, help_text: str) -> None:
    @cli.command(name, help=help_text)
    @click.argument("spec_name", required=False)
    @prompt_option
    @verbose_option
    @config_option
    def _command(spec_name: str | None, prompt: str | None, verbose: bool, config_value: str) -> None:
        runtime = _runtime(config_value, verbose)
        resolved = _execute(getattr(runtime.orchestrator, method)(spec_name, prompt))
        click.echo(f"{resolved}: {name} complete")


_stage_command("plan", "run_plan", "Generate plan.yaml for a spec.")
_stage_command("tasks", "run_tasks", "Generate tasks.yaml for a spec.")
_stage_command("clarify", "run_clarify", "Refine an existing spec.")
_stage_command("checklist", "run_checklist", "Generate a requirements checklist for a spec.")
_stage_command("analyze", "run_analyze", "Cross-check spec, plan and tasks.")


@cli.command("constitution")
@click.argument("prompt", required=False)
@verbose_option
@config_option
def constitution_command(prompt: str | None, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value, verbose)
    _execute(runtime.orchestrator.run_constitution(prompt))
    click.echo("Constitution updated")


@cli.command("implement")
@click.argument("spec_name", required=False)
@implement_options
@prompt_option
@verbose_option
@config_option
def implement_command(
    spec_name: str | None,
    resume: bool,
    all_phases: bool,
    single_phase: int,
    from_phase: int,
    tasks: bool,
    from_task: str,
    prompt: str | None,
    verbose: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value, verbose)
    options = ImplementOptions(
        prompt=prompt,
        resume=resume,
        all_phases=all_phases,
        single_phase=single_phase,
        from_phase=from_phase,
        tasks=tasks,
        from_task=from_task,
    )
    summary = _execute(runtime.orchestrator.run_implement(spec_name, options))
    _echo_summary(summary)


@cli.command("prep")
@click.argument("feature")
@verbose_option
@config_option
def prep_command(feature: str, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value, verbose)
    spec_name = _execute(runtime.orchestrator.run_prep(feature))
    click.echo(f"{spec_name}: spec, plan and tasks ready")


@cli.command("all")
@click.argument("feature")
@click.option("--phases", "all_phases", is_flag=True, default=False)
@click.option("--tasks", "tasks", is_flag=True, default=False)
@verbose_option
@config_option
def all_command(feature: str, all_phases: bool, tasks: bool, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value, verbose)
    options = ImplementOptions(all_phases=all_phases, tasks=tasks)
    summary = _execute(runtime.orchestrator.run_full(feature, options))
    _echo_summary(summary)


@cli.command("run")
@click.argument("feature", required=False)
@click.option("--specify", "-s", "specify", is_flag=True, default=False)
@click.option("--plan", "-p", "plan", is_flag=True, default=False)
@click.option("--tasks", "-t", "tasks", is_flag=True, default=False)
@click.option("--implement", "-i", "implement", is_flag=True, default=False)
@click.option("--all", "-a", "run_all", is_flag=True, default=False)
@click.option("--constitution", is_flag=True, default=False)
@click.option("--clarify", is_flag=True, default=False)
@click.option("--checklist", is_flag=True, default=False)
@click.option("--analyze", is_flag=True, default=False)
@click.option("--spec", "spec_name", default=None)
@click.option("--resume", is_flag=True, default=False)
@click.option("--phases", "all_phases", is_flag=True, default=False)
@click.option("--phase", "single_phase", type=int, default=0)
@click.option("--from-phase", "from_phase", type=int, default=0)
@click.option(
    "--task-mode", "task_mode", is_flag=True, default=False, help="Implement one task per agent session."
)
@click.option("--from-task", "from_task", default="")
@verbose_option
@config_option
def run_command(
    feature: str | None,
    specify: bool,
    plan: bool,
    tasks: bool,
    implement: bool,
    run_all: bool,
    constitution: bool,
    clarify: bool,
    checklist: bool,
    analyze: bool,
    spec_name: str | None,
    resume: bool,
    all_phases: bool,
    single_phase: int,
    from_phase: int,
    task_mode: bool,
    from_task: str,
    verbose: bool,
    config_value: str,
) -> None:
    """Run a selection of stages in canonical order.

    The implement-mode options only affect the implement stage.
    """
    flags = {
        Stage.SPECIFY: specify,
        Stage.PLAN: plan,
        Stage.TASKS: tasks,
        Stage.IMPLEMENT: implement,
        Stage.CONSTITUTION: constitution,
        Stage.CLARIFY: clarify,
        Stage.CHECKLIST: checklist,
        Stage.ANALYZE: analyze,
    }
    selection = StageSelection.core() if run_all else StageSelection()
    selection.stages.update(stage for stage, enabled in flags.items() if enabled)
    if not selection.stages:
        raise click.UsageError("select at least one stage (-s, -p, -t, -i or -a)")

    options = ImplementOptions(
        resume=resume,
        all_phases=all_phases,
        single_phase=single_phase,
        from_phase=from_phase,
        tasks=task_mode,
        from_task=from_task,
    )
    runtime = _runtime(config_value, verbose)
    summary = _execute(
        runtime.orchestrator.run_stages(
            selection, feature=feature, spec_name=spec_name, options=options
        )
    )
    if summary is not None:
        _echo_summary(summary)
    click.echo(f"Completed: {', '.join(stage.value for stage in selection.ordered())}")


@cli.command("status")
@click.argument("spec_name", required=False)
@config_option
def status_command(spec_name: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        name = runtime.workspace.resolve_spec_name(spec_name)
        stats = runtime.orchestrator.reader.get_task_stats(name)
    except SpecloopError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Spec: {name}")
    click.echo(stats.summary(), nl=False)
    for phase in stats.phases:
        marker = "x" if phase.is_complete else ("~" if phase.is_settled else " ")
        click.echo(
            f"  [{marker}] phase {phase.number}: {phase.title}"
            f" ({phase.completed_tasks}/{phase.total_tasks})"
        )
    for entry in runtime.retry_store.entries():
        if entry.get("spec_name") == name and entry.get("count"):
            click.echo(f"  retries {entry['stage']}: {entry['count']}/{runtime.config.workflow.max_retries}")


@cli.group("retry")
def retry_group() -> None:
    """Inspect or reset persisted retry counters."""


@retry_group.command("show")
@click.argument("spec_name", required=False)
@config_option
def retry_show_command(spec_name: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    entries = [
        entry
        for entry in runtime.retry_store.entries()
        if spec_name is None or entry.get("spec_name") == spec_name
    ]
    if not entries:
        click.echo("No retry state recorded.")
        return
    for entry in entries:
        scope = entry.get("spec_name") or "<new spec>"
        last = entry.get("last_attempt") or "-"
        click.echo(f"{scope}:{entry.get('stage')} {entry.get('count', 0)} (last attempt {last})")


@retry_group.command("reset")
@click.argument("spec_name")
@click.option("--stage", type=click.Choice([stage.value for stage in Stage]), default=None)
@config_option
def retry_reset_command(spec_name: str, stage: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        if stage:
            runtime.retry_store.reset(spec_name, stage)
            click.echo(f"Reset retry counter for {spec_name}:{stage}")
        else:
            touched = runtime.retry_store.reset_spec(spec_name)
            click.echo(f"Reset {touched} retry counter(s) for {spec_name}")
    except SpecloopError as exc:
        raise click.ClickException(str(exc)) from exc
