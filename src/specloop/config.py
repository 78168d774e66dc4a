from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "custom"]


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    custom_command: str = ""
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowConfig:
    max_retries: int = 3
    timeout_seconds: float = 0.0
    specs_dir: str = "specs"
    state_dir: str = ".specloop/state"


@dataclass(slots=True)
class SpecloopConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def default(cls) -> SpecloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecloopConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "custom_command": self.agent.custom_command,
                "extra_args": list(self.agent.extra_args),
            },
            "workflow": {
                "max_retries": self.workflow.max_retries,
                "timeout_seconds": self.workflow.timeout_seconds,
                "specs_dir": self.workflow.specs_dir,
                "state_dir": self.workflow.state_dir,
            },
        }

    def timeout(self) -> float | None:
        timeout = float(self.workflow.timeout_seconds)
        return timeout if timeout > 0 else None


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("agent", "workflow"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecloopConfig:
    if not path.exists():
        return SpecloopConfig.default()
    return SpecloopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SpecloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
