from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from cobbler.backends.base import render_user_prompt
from cobbler.backends.process import CliAgentBackend


class CodexBackend(CliAgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        super().__init__(binary, working_directory)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_user_prompt(user_prompt, context, tools))
        return command

    @staticmethod
    def extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type") != "agent_message":
                return ""
            text = item.get("text")
            return text if isinstance(text, str) else ""

        message = event.get("message")
        if isinstance(message, dict):
            message = message.get("content")
        if isinstance(message, str):
            return message
        for key in ("content", "delta"):
            value = event.get(key)
            if isinstance(value, str):
                return value
        return ""
