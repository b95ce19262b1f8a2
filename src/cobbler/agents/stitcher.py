from __future__ import annotations

from cobbler.agents.base import Agent


class StitchAgent(Agent):
    role = "stitch"
    prompt_file = "stitch.md"
    allowed_tools = ["edit_file", "read_file", "run_command", "search", "write_file"]
    fallback_prompt = """
You implement exactly one task in the current working directory.
Finish with a JSON object {"status": "success"|"failure", "summary": "..."}.
""".strip()
