"""ToolRelay core: agent loop, conversation state and the tool catalog cache."""

from toolrelay.core.cache import CachedTools, ToolCache
from toolrelay.core.state import AgentState, AgentStatus, Conversation

__all__ = ["AgentState", "AgentStatus", "CachedTools", "Conversation", "ToolCache"]
