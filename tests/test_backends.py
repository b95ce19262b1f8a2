import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from cobbler.backends import RetryPolicy
from cobbler.backends.base import (
    WORKING_DIRECTORY_KEY,
    AgentBackend,
    AgentTimeoutError,
    BackendExecutionError,
)
from cobbler.backends.claude import ClaudeCodeBackend
from cobbler.backends.codex import CodexBackend
from cobbler.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.calls = 0
        self.retriable = retriable

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "o"
        yield "k"


class PartialThenFailBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "partial"
        raise BackendExecutionError("dropped", backend="fake", retriable=True)


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        await asyncio.sleep(5)
        yield "late"


def _collect(backend: AgentBackend) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context={}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"goal": "x", "model": "gpt-5-codex", WORKING_DIRECTORY_KEY: "/tmp/wt"},
        tools=["read_file", "write_file"],
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--output-format" not in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]
    assert WORKING_DIRECTORY_KEY not in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {"model": "sonnet"})

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert "--dangerously-skip-permissions" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "sonnet"


def test_claude_extract_content_prefers_result_event() -> None:
    assert ClaudeCodeBackend.extract_content({"type": "result", "result": "final"}) == "final"
    assert ClaudeCodeBackend.extract_content({"type": "assistant", "content": "progress"}) == ""
    assert ClaudeCodeBackend.extract_content({"content": [{"text": "a"}, {"text": "b"}]}) == "ab"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.5, timeout_seconds=5.0),
        event_hook=events.append,
        sleep=_sleep,
    )

    assert _collect(backend) == "ok"
    assert primary.calls == 3
    assert delays == [0.5, 1.0]
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_retry") == 2
    assert event_names.count("backend_attempt_failed") == 3
    assert event_names[-1] == "backend_fallback_success"


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        _collect(backend)
    assert primary.calls == 1
    assert fallback.calls == 1


def test_resilient_backend_never_leaks_partial_output() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=PartialThenFailBackend(),
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert _collect(backend) == "ok"


def test_resilient_backend_reports_timeout() -> None:
    backend = ResilientBackend(
        primary_name="slow",
        primary_backend=SlowBackend(),
        fallback_name="slow",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
    )

    with pytest.raises(AgentTimeoutError):
        _collect(backend)


def test_codex_backend_streams_agent_messages(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"item.completed\",\"item\":{\"type\":\"agent_message\","
                    b"\"text\":\"hello\"}}\n",
                    b"noise-before-json\n",
                    b"{\"type\":\"turn.completed\"}\n",
                ]
            )
            self.stderr = FakeStderr()
            self.returncode: int | None = None

        async def wait(self) -> int:
            self.returncode = 0
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = CodexBackend(working_directory=Path("/repo"))

    async def _run() -> str:
        chunks: list[str] = []
        async for chunk in backend.execute(
            "system", "user", context={WORKING_DIRECTORY_KEY: "/repo/.cobbler/worktrees/demo"}
        ):
            chunks.append(chunk)
        return "".join(chunks)

    assert asyncio.run(_run()) == "hello"
    assert captured["args"][0:2] == ("codex", "exec")
    assert captured["cwd"] == "/repo/.cobbler/worktrees/demo"


def test_split_json_events_are_buffered_until_complete() -> None:
    backend = ClaudeCodeBackend()

    chunks, buffer = backend._decode_lines(  # noqa: SLF001
        ['{"type": "result",', '"result": "done"}', "plain text", '{"type": "assistant"'],
        "",
    )

    assert chunks == ["done", "plain text"]
    assert buffer == '{"type": "assistant"'
