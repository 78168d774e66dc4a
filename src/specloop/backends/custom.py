from __future__ import annotations

import asyncio
from pathlib import Path

from specloop.backends.base import (
    AgentProcessError,
    BackendEventHook,
    OutputSink,
    SubprocessAgentBackend,
)
from specloop.commands import shell_quote

PROMPT_PLACEHOLDER = "{{PROMPT}}"


class CustomCommandBackend(SubprocessAgentBackend):
    """Runs a user-supplied shell command template.

    The template must contain ``{{PROMPT}}``; the instruction is substituted
    as one single-quoted shell word, so pipes and environment prefixes in the
    template keep working.
    """

    name = "custom"

    def __init__(
        self,
        template: str,
        *,
        working_directory: Path | None = None,
        output_sink: OutputSink | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if PROMPT_PLACEHOLDER not in template:
            raise ValueError(f"custom agent command must contain {PROMPT_PLACEHOLDER}")
        super().__init__(
            "sh",
            working_directory=working_directory,
            output_sink=output_sink,
            event_hook=event_hook,
        )
        self.template = template

    def expand(self, instruction: str) -> str:
        return self.template.replace(PROMPT_PLACEHOLDER, shell_quote(instruction))

    def build_command(self, instruction: str) -> list[str]:
        return [self.binary, "-c", self.expand(instruction)]

    def format_command(self, instruction: str) -> str:
        return self.expand(instruction)

    async def _spawn(self, instruction: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_shell(
                self.expand(instruction),
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AgentProcessError(
                f"failed to start custom agent command: {exc}",
                backend=self.name,
                retriable=False,
            ) from exc
