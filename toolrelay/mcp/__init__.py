"""
ToolRelay MCP module.

Transports, a protocol client and a caching registry for tools hosted on
Model Context Protocol servers, plus a small reference server.
"""

from toolrelay.mcp.client import ClientSettings, MCPClient
from toolrelay.mcp.registry import MCPToolRegistry
from toolrelay.mcp.server import MCPServer, SessionStore
from toolrelay.mcp.transport import HttpTransport, MCPTransport, StdioTransport, create_transport

__all__ = [
    "ClientSettings",
    "HttpTransport",
    "MCPClient",
    "MCPServer",
    "MCPToolRegistry",
    "MCPTransport",
    "SessionStore",
    "StdioTransport",
    "create_transport",
]
