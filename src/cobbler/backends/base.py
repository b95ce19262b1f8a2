from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

WORKING_DIRECTORY_KEY = "_working_directory"


class BackendExecutionError(RuntimeError):
    """Raised when an agent invocation fails."""

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


class AgentTimeoutError(BackendExecutionError):
    """Raised when an agent invocation exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started or read."""


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Invoke the agent and stream textual chunks.

        ``context[WORKING_DIRECTORY_KEY]``, when present, is the directory the
        agent should operate in (a trail worktree).
        """


def render_user_prompt(
    user_prompt: str,
    context: dict[str, Any],
    tools: list[str] | None = None,
) -> str:
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    parts = [user_prompt]
    if visible:
        parts.append("Context JSON:")
        parts.append(json.dumps(visible, ensure_ascii=False, indent=2))
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")
