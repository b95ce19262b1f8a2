from __future__ import annotations

from cobbler.agents.base import Agent


class MeasureAgent(Agent):
    role = "measure"
    prompt_file = "measure.md"
    allowed_tools = ["read_file", "search"]
    fallback_prompt = """
You assess the state of a software project and propose the next tasks.
Reply with a JSON object {"tasks": [...]} and nothing else.
""".strip()
