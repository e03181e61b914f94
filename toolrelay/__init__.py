"""
ToolRelay - Tool-calling agent loop with local and MCP tools.

Tools come from two places:
- Local Python functions registered in a ToolRegistry
- Remote Model Context Protocol servers, reached over stdio or HTTP

The MCPToolRegistry merges both catalogs (local first), caches each
server's catalog for a TTL and degrades to "no tools" for a server that
cannot be reached. The Agent drives a model through completion and tool
execution phases until it answers.
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from toolrelay.core.agent import Agent
from toolrelay.core.state import AgentState, AgentStatus
from toolrelay.mcp.registry import MCPToolRegistry
from toolrelay.tools.registry import ToolFunction, ToolRegistry, tool

__all__ = [
    "Agent",
    "AgentState",
    "AgentStatus",
    "MCPToolRegistry",
    "ToolFunction",
    "ToolRegistry",
    "tool",
    "__version__",
]
