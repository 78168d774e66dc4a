from __future__ import annotations

from pathlib import Path

from specloop.backends.base import BackendEventHook, OutputSink, SubprocessAgentBackend


class ClaudeCodeBackend(SubprocessAgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        working_directory: Path | None = None,
        extra_args: list[str] | None = None,
        output_sink: OutputSink | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(
            binary or "claude",
            working_directory=working_directory,
            extra_args=extra_args,
            output_sink=output_sink,
            event_hook=event_hook,
        )

    def build_command(self, instruction: str) -> list[str]:
        return [self.binary, "-p", *self.extra_args, instruction]
