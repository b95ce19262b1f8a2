from __future__ import annotations

from pathlib import Path
from typing import Any

from cobbler.backends.base import render_user_prompt
from cobbler.backends.process import CliAgentBackend


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
    ) -> None:
        super().__init__(binary, working_directory)
        self.skip_permissions = skip_permissions

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_user_prompt(user_prompt, context, tools),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.skip_permissions:
            # stitch runs unattended inside a disposable worktree
            command.append("--dangerously-skip-permissions")
        if system_prompt.strip():
            command.extend(["--append-system-prompt", system_prompt])
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command

    @staticmethod
    def extract_content(event: dict[str, Any]) -> str:
        kind = event.get("type")
        if kind == "result":
            result = event.get("result")
            return result if isinstance(result, str) else ""
        if kind is not None:
            # assistant/system/user events are progress; the result event carries the answer
            return ""
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""

    def plain_line(self, line: str) -> str:
        return line
