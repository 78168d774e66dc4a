from __future__ import annotations

from dataclasses import dataclass

COMMAND_PREFIX = "/specloop"
CLI_NAME = "specloop"


def shell_quote(text: str) -> str:
    """Wrap ``text`` in single quotes, escaping embedded quotes as ``'\\''``."""
    return "'" + text.replace("'", "'\\''") + "'"


@dataclass(slots=True)
class CommandBuilder:
    """Builds the literal instruction text handed to the agent."""

    prefix: str = COMMAND_PREFIX

    def stage_token(self, stage: str) -> str:
        return f"{self.prefix}.{stage}"

    def build(
        self,
        stage: str,
        *,
        prompt: str | None = None,
        resume: bool = False,
        phase: int | None = None,
        task_id: str | None = None,
    ) -> str:
        if phase is not None and task_id is not None:
            raise ValueError("an instruction targets either a phase or a task, not both")
        parts = [self.stage_token(stage)]
        if resume:
            parts.append("--resume")
        if phase is not None:
            parts.extend(["--phase", str(phase)])
        if task_id is not None:
            parts.extend(["--task", task_id])
        if prompt:
            parts.append(shell_quote(prompt))
        return " ".join(parts)

    def phase(self, phase: int, prompt: str | None = None) -> str:
        return self.build("implement", prompt=prompt, phase=phase)

    def task(self, task_id: str, prompt: str | None = None) -> str:
        return self.build("implement", prompt=prompt, task_id=task_id)


def resume_command(
    spec_name: str,
    stage: str,
    *,
    phase: int | None = None,
    task_id: str | None = None,
    resume: bool = False,
) -> str:
    """The exact command a user runs to continue the unit that failed."""
    parts = [CLI_NAME, stage]
    if spec_name:
        parts.append(spec_name)
    if phase is not None:
        parts.extend(["--phase", str(phase)])
    elif task_id is not None:
        parts.extend(["--tasks", "--from-task", task_id])
    elif resume:
        parts.append("--resume")
    return " ".join(parts)


def extract_validation_errors(message: str | None) -> list[str]:
    """Collect the ``- reason`` lines of a validation message.

    Falls back to the whole message when it carries no bullet lines.
    """
    if not message:
        return []
    errors = [
        line.strip()[2:]
        for line in message.splitlines()
        if line.strip().startswith("- ")
    ]
    return errors or [message]
