from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from cobbler.backends.base import (
    WORKING_DIRECTORY_KEY,
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    appears_partial_json,
)

logger = logging.getLogger(__name__)


class CliAgentBackend(AgentBackend):
    """An agent CLI that prints one JSON event per line on stdout.

    Subclasses build the command line and pick the text out of each event.
    Lines that are not JSON go through ``plain_line``; a JSON document split
    over several lines is buffered until it parses.
    """

    name = "agent"

    def __init__(self, binary: str, working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    @abstractmethod
    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        """Full argv for one invocation."""

    @staticmethod
    @abstractmethod
    def extract_content(event: dict[str, Any]) -> str:
        """Text carried by one decoded event, or an empty string."""

    def plain_line(self, line: str) -> str:
        logger.debug("%s emitted non-JSON line: %s", self.name, line[:200])
        return ""

    def resolve_cwd(self, context: dict[str, Any]) -> str | None:
        override = context.get(WORKING_DIRECTORY_KEY)
        if isinstance(override, str) and override.strip():
            return override
        return str(self.working_directory) if self.working_directory else None

    def _decode_lines(self, lines: list[str], buffer: str) -> tuple[list[str], str]:
        chunks: list[str] = []
        for line in lines:
            candidate = f"{buffer}{line}" if buffer else line
            try:
                event = json.loads(candidate)
            except json.JSONDecodeError:
                if appears_partial_json(candidate):
                    buffer = candidate
                    continue
                buffer = ""
                text = self.plain_line(line)
            else:
                buffer = ""
                text = self.extract_content(event) if isinstance(event, dict) else ""
            if text:
                chunks.append(text)
        return chunks, buffer

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        cwd = self.resolve_cwd(context)
        logger.debug("starting %s in %s", self.name, cwd or ".")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} did not expose stdout.", backend=self.name, retriable=False
            )

        buffer = ""
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                chunks, buffer = self._decode_lines([line], buffer)
                for chunk in chunks:
                    yield chunk
            if buffer:
                tail = self.plain_line(buffer)
                if tail:
                    yield tail
            return_code = await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} exited with code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
