"""
ToolRelay error types.

I/O seams (transports, protocol client, model clients) raise these.
The tool registries catch them and hand back ``ToolCallResult`` objects,
so a failing tool or server never aborts an agent run.
"""

from typing import Any, Optional


class ToolRelayError(Exception):
    """Base class for all ToolRelay errors."""


class ConfigurationError(ToolRelayError):
    """Raised when configuration is missing or invalid."""


class MCPTransportError(ToolRelayError):
    """Raised when MCP transport communication fails."""


class MCPProtocolError(ToolRelayError):
    """Raised when a peer sends malformed or unexpected JSON-RPC content."""


class MCPRemoteError(MCPProtocolError):
    """A JSON-RPC error object returned by an MCP server."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


class UnknownFunctionError(ToolRelayError):
    """Raised when no tool matches a requested name."""

    def __init__(self, function_name: str):
        self.function_name = function_name
        super().__init__(f"Unknown function: {function_name}")


class ToolExecutionError(ToolRelayError):
    """Raised when a tool implementation faulted."""

    def __init__(self, function_name: str, message: str):
        self.function_name = function_name
        self.message = message
        super().__init__(f"Tool '{function_name}' failed: {message}")


class ModelClientError(ToolRelayError):
    """Raised by a model client when a completion cannot be produced."""


class ContextExhaustedError(ModelClientError):
    """The conversation no longer fits in the model's context window."""


class AgentFailure(ToolRelayError):
    """Terminal orchestrator failure, carrying the triggering reason."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
