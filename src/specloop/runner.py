from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from specloop.backends.base import AgentBackend, AgentInvocationError, BackendEventHook
from specloop.commands import extract_validation_errors
from specloop.errors import ArtifactError, ArtifactValidationError
from specloop.state.retry_store import RetryStateStore

# Returns an error message, or None when the artifact is acceptable.
Validator = Callable[[Path], "str | None"]


class Stage(str, Enum):
    CONSTITUTION = "constitution"
    SPECIFY = "specify"
    CLARIFY = "clarify"
    PLAN = "plan"
    TASKS = "tasks"
    CHECKLIST = "checklist"
    ANALYZE = "analyze"
    IMPLEMENT = "implement"

    @property
    def number(self) -> int:
        """1-based position in the canonical execution order."""
        return list(Stage).index(self) + 1


# Stages that run before a spec exists or outside of any spec.
SPECLESS_STAGES = frozenset({Stage.SPECIFY, Stage.CONSTITUTION})


@dataclass(frozen=True, slots=True)
class StageResult:
    stage: Stage
    success: bool
    exhausted: bool = False
    retry_count: int = 0
    error: str | None = None
    validation_errors: tuple[str, ...] = ()
    attempts: int = 0


@dataclass(frozen=True, slots=True)
class _AttemptFailure:
    kind: str
    message: str
    retriable: bool = True
    validation_errors: tuple[str, ...] = ()


def always_valid(_: Path) -> str | None:
    return None


class StageRunner:
    """Runs one stage: invoke the agent, validate, retry on a persisted budget.

    Agent failures and validation failures share one budget of
    ``max_retries`` retries per (spec, stage). The counter survives restarts
    through ``RetryStateStore`` and is reset on the first success.
    """

    def __init__(
        self,
        agent: AgentBackend,
        retry_store: RetryStateStore,
        *,
        specs_dir: Path,
        max_retries: int = 3,
        timeout_seconds: float | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.agent = agent
        self.retry_store = retry_store
        self.specs_dir = Path(specs_dir)
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def artifact_dir(self, spec_name: str) -> Path:
        return self.specs_dir / spec_name if spec_name else self.specs_dir

    def get_retry_count(self, spec_name: str, stage: Stage) -> int:
        return self.retry_store.get(spec_name, stage.value)

    def reset(self, spec_name: str, stage: Stage) -> None:
        self.retry_store.reset(spec_name, stage.value)

    async def _invoke_agent(self, instruction: str) -> _AttemptFailure | None:
        try:
            if self.timeout_seconds is None:
                result = await self.agent.execute(instruction)
            else:
                result = await asyncio.wait_for(
                    self.agent.execute(instruction), timeout=self.timeout_seconds
                )
        except TimeoutError:
            return _AttemptFailure(
                "agent", f"agent timed out after {self.timeout_seconds:.1f}s"
            )
        except AgentInvocationError as exc:
            return _AttemptFailure("agent", f"command execution failed: {exc}", exc.retriable)
        if result.exit_code != 0:
            return _AttemptFailure("agent", f"agent exited with code {result.exit_code}")
        return None

    @staticmethod
    def _run_validator(validate: Validator, artifact_dir: Path) -> _AttemptFailure | None:
        try:
            message = validate(artifact_dir)
        except (ArtifactValidationError, ArtifactError) as exc:
            message = str(exc)
        if not message:
            return None
        return _AttemptFailure(
            "validation",
            f"validation failed: {message}",
            validation_errors=tuple(extract_validation_errors(message)),
        )

    async def execute_stage(
        self,
        spec_name: str,
        stage: Stage,
        instruction: str,
        validate: Validator = always_valid,
    ) -> StageResult:
        if not isinstance(stage, Stage):
            raise ValueError(f"unknown stage: {stage!r}")
        if not spec_name and stage not in SPECLESS_STAGES:
            raise ValueError(f"stage '{stage.value}' requires a spec name")
        if not instruction:
            raise ValueError("instruction text must not be empty")

        artifact_dir = self.artifact_dir(spec_name)
        count = self.retry_store.get(spec_name, stage.value)
        attempts = 0
        while True:
            attempts += 1
            self._emit(
                {
                    "event": "stage_start",
                    "spec": spec_name,
                    "stage": stage.value,
                    "attempt": attempts,
                    "retry_count": count,
                    "max_retries": self.max_retries,
                    "instruction": instruction,
                }
            )
            failure = await self._invoke_agent(instruction)
            if failure is None:
                failure = self._run_validator(validate, artifact_dir)

            if failure is None:
                self.retry_store.reset(spec_name, stage.value)
                self._emit(
                    {
                        "event": "stage_success",
                        "spec": spec_name,
                        "stage": stage.value,
                        "attempts": attempts,
                    }
                )
                return StageResult(stage=stage, success=True, retry_count=0, attempts=attempts)

            self._emit(
                {
                    "event": "stage_attempt_failed",
                    "spec": spec_name,
                    "stage": stage.value,
                    "kind": failure.kind,
                    "error": failure.message,
                    "retriable": failure.retriable,
                    "retry_count": count,
                }
            )
            if not failure.retriable:
                return StageResult(
                    stage=stage,
                    success=False,
                    retry_count=count,
                    error=failure.message,
                    attempts=attempts,
                )
            if count >= self.max_retries:
                self._emit(
                    {
                        "event": "stage_exhausted",
                        "spec": spec_name,
                        "stage": stage.value,
                        "retry_count": count,
                        "max_retries": self.max_retries,
                    }
                )
                return StageResult(
                    stage=stage,
                    success=False,
                    exhausted=True,
                    retry_count=count,
                    error=failure.message,
                    validation_errors=failure.validation_errors,
                    attempts=attempts,
                )

            count = self.retry_store.increment(spec_name, stage.value)
            self._emit(
                {
                    "event": "stage_retry",
                    "spec": spec_name,
                    "stage": stage.value,
                    "retry_count": count,
                    "max_retries": self.max_retries,
                }
            )
