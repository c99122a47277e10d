"""Talon - an asyncio tool-calling agent core."""

__version__ = "0.1.0"
__author__ = "Stevica Kuharski"

from talon.agent import AgentResponse, ToolCallingAgent, create_agent
from talon.config import Config

__all__ = ["AgentResponse", "Config", "ToolCallingAgent", "create_agent", "__version__"]
