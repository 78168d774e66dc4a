from specloop.backends.base import (
    AgentBackend,
    AgentInvocationError,
    AgentProcessError,
    AgentTimeoutError,
    ExecResult,
    SubprocessAgentBackend,
)
from specloop.backends.claude import ClaudeCodeBackend
from specloop.backends.codex import CodexBackend
from specloop.backends.custom import CustomCommandBackend

__all__ = [
    "AgentBackend",
    "AgentInvocationError",
    "AgentProcessError",
    "AgentTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CustomCommandBackend",
    "ExecResult",
    "SubprocessAgentBackend",
]
