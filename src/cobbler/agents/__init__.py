from cobbler.agents.base import Agent, AgentResponse
from cobbler.agents.measurer import MeasureAgent
from cobbler.agents.stitcher import StitchAgent

__all__ = ["Agent", "AgentResponse", "MeasureAgent", "StitchAgent"]
