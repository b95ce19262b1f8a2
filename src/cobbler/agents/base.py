from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from cobbler.backends.base import WORKING_DIRECTORY_KEY, AgentBackend, render_user_prompt

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}


@dataclass(slots=True)
class AgentResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class Agent:
    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software engineering agent."
    allowed_tools: list[str] | None = None

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("cobbler.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise ValueError("Tool policy rejected unknown tools: " + ", ".join(unknown))
        return normalized

    def _run_context(self, context: dict[str, Any], working_directory: Path | None) -> dict:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        if working_directory is not None:
            run_context[WORKING_DIRECTORY_KEY] = str(working_directory)
        return run_context

    def render(self, instruction: str, context: dict[str, Any]) -> str:
        """Render the full prompt this agent would send, without invoking it."""
        user_prompt = render_user_prompt(
            instruction,
            self._run_context(context, None),
            self._normalize_allowed_tools(self.allowed_tools),
        )
        return f"{self.system_prompt}\n\n---\n\n{user_prompt}\n"

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        *,
        working_directory: Path | None = None,
    ) -> AgentResponse:
        tools = self._normalize_allowed_tools(self.allowed_tools)
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=self._run_context(context, working_directory),
            tools=tools,
        ):
            chunks.append(chunk)
        return AgentResponse(
            role=self.role,
            content="".join(chunks).strip(),
            metadata={"instruction": instruction, "allowed_tools": tools or []},
        )
