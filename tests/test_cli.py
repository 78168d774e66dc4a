from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml
from click.testing import CliRunner

from specloop.backends import ClaudeCodeBackend, CodexBackend, CustomCommandBackend
from specloop.backends.base import AgentBackend, ExecResult
from specloop.cli import _build_backend, cli
from specloop.config import SpecloopConfig, load_config, save_config
from specloop.state import RetryStateStore

SPEC = "001-auth"


class FakeAgent(AgentBackend):
    def __init__(self, on_call: Callable[[str], None] | None = None) -> None:
        self.calls: list[str] = []
        self.on_call = on_call

    async def execute(self, instruction: str) -> ExecResult:
        self.calls.append(instruction)
        if self.on_call is not None:
            self.on_call(instruction)
        return ExecResult(exit_code=0)


def _write_tasks(spec_dir: Path, statuses: list[str]) -> Path:
    spec_dir.mkdir(parents=True, exist_ok=True)
    document = {
        "tasks": {"branch": spec_dir.name},
        "summary": {},
        "phases": [
            {
                "number": index,
                "title": f"Phase {index}",
                "tasks": [
                    {
                        "id": f"T00{index}",
                        "title": f"Task {index}",
                        "status": status,
                        "type": "implementation",
                    }
                ],
            }
            for index, status in enumerate(statuses, start=1)
        ],
    }
    path = spec_dir / "tasks.yaml"
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


def _complete_everything(tasks_path: Path) -> Callable[[str], None]:
    def _apply(instruction: str) -> None:
        document = yaml.safe_load(tasks_path.read_text(encoding="utf-8"))
        for phase in document["phases"]:
            for task in phase["tasks"]:
                task["status"] = "Completed"
        tasks_path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")

    return _apply


def _use_agent(monkeypatch: pytest.MonkeyPatch, agent: AgentBackend) -> None:
    monkeypatch.setattr("specloop.cli._build_backend", lambda config, repo_root, verbose: agent)


def test_init_writes_config_and_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init", "--backend", "codex"])

    assert result.exit_code == 0, result.output
    assert "Backend: codex" in result.output
    assert load_config(tmp_path / "specloop.toml").agent.backend == "codex"
    assert (tmp_path / "specs").is_dir()
    assert (tmp_path / ".specloop" / "state").is_dir()


def test_implement_phases_runs_each_phase(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    tasks_path = _write_tasks(tmp_path / "specs" / SPEC, ["Completed", "Pending"])
    agent = FakeAgent(_complete_everything(tasks_path))
    _use_agent(monkeypatch, agent)

    result = CliRunner().invoke(cli, ["implement", SPEC, "--phases"])

    assert result.exit_code == 0, result.output
    assert agent.calls == ["/specloop.implement --phase 2"]
    assert "ran: phase 2" in result.output
    assert "2/2 tasks completed" in result.output


def test_exhaustion_exits_with_status_2_and_resume_command(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    config = SpecloopConfig.default()
    config.workflow.max_retries = 1
    save_config(tmp_path / "specloop.toml", config)
    _write_tasks(tmp_path / "specs" / SPEC, ["Pending"])
    agent = FakeAgent()
    _use_agent(monkeypatch, agent)

    result = CliRunner().invoke(cli, ["implement", SPEC])

    assert result.exit_code == 2
    assert f"Resume with: specloop implement {SPEC} --resume" in result.output
    assert len(agent.calls) == 2


def test_phase_out_of_range_is_a_usage_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_tasks(tmp_path / "specs" / SPEC, ["Pending"])
    agent = FakeAgent()
    _use_agent(monkeypatch, agent)

    result = CliRunner().invoke(cli, ["implement", SPEC, "--phase", "99"])

    assert result.exit_code == 1
    assert "phase 99 is out of range (valid: 1-1)" in result.output
    assert agent.calls == []


def test_run_requires_a_stage(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 2
    assert "select at least one stage" in result.output


def test_run_reports_missing_artifacts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "specs" / SPEC).mkdir(parents=True)
    agent = FakeAgent()
    _use_agent(monkeypatch, agent)

    result = CliRunner().invoke(cli, ["run", "-p", "-t", "--spec", SPEC])

    assert result.exit_code == 1
    assert "missing required artifacts: spec.yaml" in result.output
    assert agent.calls == []


def test_status_shows_progress_and_retries(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_tasks(tmp_path / "specs" / SPEC, ["Completed", "Blocked", "Pending"])
    RetryStateStore(tmp_path / ".specloop" / "state").increment(SPEC, "implement")

    result = CliRunner().invoke(cli, ["status", SPEC])

    assert result.exit_code == 0, result.output
    assert f"Spec: {SPEC}" in result.output
    assert "1/3 tasks completed" in result.output
    assert "[x] phase 1" in result.output
    assert "[~] phase 2" in result.output
    assert "[ ] phase 3" in result.output
    assert "retries implement: 1/3" in result.output


def test_retry_show_and_reset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    store = RetryStateStore(tmp_path / ".specloop" / "state")
    store.increment(SPEC, "plan")
    store.increment(SPEC, "tasks")
    runner = CliRunner()

    shown = runner.invoke(cli, ["retry", "show", SPEC])
    assert shown.exit_code == 0
    assert f"{SPEC}:plan 1" in shown.output

    reset_one = runner.invoke(cli, ["retry", "reset", SPEC, "--stage", "plan"])
    assert reset_one.exit_code == 0
    assert store.get(SPEC, "plan") == 0
    assert store.get(SPEC, "tasks") == 1

    reset_all = runner.invoke(cli, ["retry", "reset", SPEC])
    assert reset_all.exit_code == 0
    assert "Reset 1 retry counter(s)" in reset_all.output
    assert store.get(SPEC, "tasks") == 0


def test_backend_factory_follows_config(tmp_path: Path) -> None:
    config = SpecloopConfig.default()
    assert isinstance(_build_backend(config, tmp_path, verbose=False), ClaudeCodeBackend)

    config.agent.backend = "codex"
    config.agent.binary = "/opt/codex"
    backend = _build_backend(config, tmp_path, verbose=False)
    assert isinstance(backend, CodexBackend)
    assert backend.binary == "/opt/codex"

    config.agent.backend = "custom"
    config.agent.custom_command = "agent {{PROMPT}}"
    assert isinstance(_build_backend(config, tmp_path, verbose=False), CustomCommandBackend)


def test_custom_backend_without_placeholder_is_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    config = SpecloopConfig.default()
    config.agent.backend = "custom"
    config.agent.custom_command = "agent --go"
    save_config(tmp_path / "specloop.toml", config)
    _write_tasks(tmp_path / "specs" / SPEC, ["Pending"])

    result = CliRunner().invoke(cli, ["implement", SPEC])

    assert result.exit_code == 1
    assert "{{PROMPT}}" in result.output


def test_verbose_renders_every_event(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    tasks_path = _write_tasks(tmp_path / "specs" / SPEC, ["Pending"])
    _use_agent(monkeypatch, FakeAgent(_complete_everything(tasks_path)))

    result = CliRunner().invoke(cli, ["implement", SPEC, "--tasks", "--verbose"])
    events: list[Any] = [line for line in result.output.splitlines() if line.startswith("implement_")]

    assert result.exit_code == 0, result.output
    assert "  > /specloop.implement --task T001" in result.output
    assert any(line.startswith("implement_start") for line in events)
    assert any(line.startswith("implement_done") for line in events)


@pytest.mark.parametrize(
    ("flags", "expected_calls"),
    [
        (["--phases"], ["/specloop.implement --phase 2"]),
        (["--task-mode"], ["/specloop.implement --task T002"]),
        ([], ["/specloop.implement"]),
    ],
)
def test_run_implement_honours_implement_modes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, flags: list[str], expected_calls: list[str]
) -> None:
    monkeypatch.chdir(tmp_path)
    tasks_path = _write_tasks(tmp_path / "specs" / SPEC, ["Completed", "Pending"])
    agent = FakeAgent(_complete_everything(tasks_path))
    _use_agent(monkeypatch, agent)

    result = CliRunner().invoke(cli, ["run", "-i", "--spec", SPEC, *flags])

    assert result.exit_code == 0, result.output
    assert agent.calls == expected_calls
    assert "Completed: implement" in result.output
