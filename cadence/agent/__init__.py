"""Agent -- the model/tool loop and per-agent state.

Public API:
    Agent       - Conversational agent; stream() and invoke()
    AgentState  - JSON-serializable key/value store visible to tools
"""

from cadence.agent.agent import Agent, AgentInput, AgentStreamEvent
from cadence.agent.state import AgentState

__all__ = ["Agent", "AgentInput", "AgentState", "AgentStreamEvent"]
