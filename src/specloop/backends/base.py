from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from specloop.errors import SpecloopError

BackendEventHook = Callable[[dict[str, Any]], None]
OutputSink = Callable[[str], None]


class AgentInvocationError(SpecloopError):
    """Raised when an agent process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentInvocationError):
    """Raised when agent execution exceeds the configured timeout."""


class AgentProcessError(AgentInvocationError):
    """Raised when the agent process lifecycle fails."""


@dataclass(frozen=True, slots=True)
class ExecResult:
    exit_code: int
    output: str = ""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(self, instruction: str) -> ExecResult:
        """Run the agent once with ``instruction``.

        Implementations must release their resources when the awaiting task
        is cancelled; the caller bounds the call with a timeout.
        """


class SubprocessAgentBackend(AgentBackend):
    """Runs an agent CLI as a child process and streams its output."""

    output_tail_lines = 40

    def __init__(
        self,
        binary: str,
        *,
        working_directory: Path | None = None,
        extra_args: list[str] | None = None,
        output_sink: OutputSink | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.extra_args = list(extra_args or [])
        self.output_sink = output_sink
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, instruction: str) -> list[str]:
        """Return the argv used to run ``instruction``."""

    def format_command(self, instruction: str) -> str:
        return " ".join(self.build_command(instruction))

    async def _spawn(self, instruction: str) -> asyncio.subprocess.Process:
        command = self.build_command(instruction)
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"{self.name} binary not found: {command[0]}",
                backend=self.name,
                retriable=False,
            ) from exc

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(ProcessLookupError):
            await process.wait()

    async def execute(self, instruction: str) -> ExecResult:
        self._emit({"event": "agent_start", "backend": self.name, "instruction": instruction})
        process = await self._spawn(instruction)
        if process.stdout is None:
            raise AgentProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        tail: deque[str] = deque(maxlen=self.output_tail_lines)
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\n")
                tail.append(line)
                if self.output_sink is not None:
                    self.output_sink(line)
            return_code = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            detail = f": {stderr_output}" if stderr_output else ""
            raise AgentInvocationError(
                f"{self.name} exited with code {return_code}{detail}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        return ExecResult(exit_code=return_code, output="\n".join(tail))
