from cobbler.backends.base import (
    AgentBackend,
    AgentTimeoutError,
    BackendExecutionError,
    BackendProcessError,
)
from cobbler.backends.claude import ClaudeCodeBackend
from cobbler.backends.codex import CodexBackend
from cobbler.backends.process import CliAgentBackend
from cobbler.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentTimeoutError",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
