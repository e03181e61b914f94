"""
Reference MCP server: a tool table plus JSON-RPC dispatch.

The same ``MCPServer`` backs both the newline-delimited stdio loop in this
module and the HTTP endpoints in ``toolrelay.mcp.http_app``.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Dict, List, Optional

from toolrelay.mcp.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    Implementation,
    InitializeResult,
    JsonRpcResponse,
    MCPTool,
    ToolsCallResult,
    negotiate_version,
)

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Any]


class InvalidParams(Exception):
    """Raised by a method handler when the request params are unusable."""


@dataclass
class ServerTool:
    definition: MCPTool
    handler: ToolHandler


class MCPServer:
    """
    Serves registered tools over JSON-RPC.

    Example:
        >>> server = MCPServer("demo")
        >>> @server.tool(description="Reply with pong")
        ... def ping():
        ...     return "pong"
        >>> server.handle({"jsonrpc": "2.0", "id": "1", "method": "tools/list"})
    """

    def __init__(self, name: str = "toolrelay-server", version: str = "0.1.0"):
        self.info = Implementation(name=name, version=version)
        self._tools: Dict[str, ServerTool] = {}
        self._methods: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "initialize": self._initialize,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "ping": lambda params: {},
        }

    # ── Tool table ────────────────────────────────────────────────────────

    def add_tool(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
    ) -> None:
        definition = MCPTool(name=name, description=description)
        if input_schema is not None:
            definition = MCPTool(name=name, description=description, input_schema=input_schema)
        self._tools[name] = ServerTool(definition, handler)

    def tool(
        self,
        name: Optional[str] = None,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering ``fn(**arguments)`` as a tool."""

        def wrap(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.add_tool(
                name or fn.__name__,
                lambda arguments: fn(**arguments),
                description or (fn.__doc__ or "").strip().split("\n")[0],
                input_schema,
            )
            return fn

        return wrap

    def list_tools(self) -> List[MCPTool]:
        return [entry.definition for entry in self._tools.values()]

    # ── Dispatch ──────────────────────────────────────────────────────────

    def handle_raw(self, raw: str) -> Optional[str]:
        """Handle one serialized message; returns the serialized reply, if any."""
        try:
            message = json.loads(raw)
        except ValueError as exc:
            return JsonRpcResponse.failure(None, PARSE_ERROR, f"Parse error: {exc}").to_json()
        reply = self.handle(message)
        return json.dumps(reply) if reply is not None else None

    def handle(self, message: Any) -> Optional[Dict[str, Any]]:
        """
        Handle one decoded JSON-RPC message.

        Returns:
            The response object, or None for notifications.
        """
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            request_id = message.get("id") if isinstance(message, dict) else None
            return JsonRpcResponse.failure(request_id, INVALID_REQUEST, "Invalid request").to_wire()

        method = message.get("method")
        request_id = message.get("id")
        if not isinstance(method, str):
            return JsonRpcResponse.failure(request_id, INVALID_REQUEST, "Invalid request").to_wire()

        if request_id is None:
            logger.debug("Notification: %s", method)
            return None

        handler = self._methods.get(method)
        if handler is None:
            return JsonRpcResponse.failure(request_id, METHOD_NOT_FOUND, f"Method not found: {method}").to_wire()

        params = message.get("params") or {}
        if not isinstance(params, dict):
            return JsonRpcResponse.failure(request_id, INVALID_PARAMS, "params must be an object").to_wire()

        try:
            result = handler(params)
        except InvalidParams as exc:
            return JsonRpcResponse.failure(request_id, INVALID_PARAMS, str(exc)).to_wire()
        except Exception as exc:
            logger.exception("Error handling %s", method)
            return JsonRpcResponse.failure(request_id, INTERNAL_ERROR, f"Internal error: {exc}").to_wire()
        return JsonRpcResponse.success(request_id, result).to_wire()

    # ── Methods ───────────────────────────────────────────────────────────

    def negotiated_version(self, params: Dict[str, Any]) -> str:
        return negotiate_version(params.get("protocolVersion"))

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        version = self.negotiated_version(params)
        client = params.get("clientInfo") or {}
        logger.info(
            "Initialize from %s (requested %s, negotiated %s)",
            client.get("name", "unknown client"),
            params.get("protocolVersion"),
            version,
        )
        return InitializeResult(
            protocol_version=version,
            capabilities={"tools": {"listChanged": False}},
            server_info=self.info,
        ).to_wire()

    def _tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": [tool.to_wire() for tool in self.list_tools()]}

    def _tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str):
            raise InvalidParams("Missing tool name")
        entry = self._tools.get(name)
        if entry is None:
            raise InvalidParams(f"Unknown tool: {name}")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise InvalidParams("arguments must be an object")

        try:
            value = entry.handler(arguments)
        except Exception as exc:
            logger.warning("Tool %s raised: %s", name, exc)
            return ToolsCallResult.from_text(str(exc) or type(exc).__name__, is_error=True).to_wire()

        text = value if isinstance(value, str) else json.dumps(value)
        return ToolsCallResult.from_text(text).to_wire()


# ── Sessions ──────────────────────────────────────────────────────────────


@dataclass
class Session:
    id: str
    protocol_version: str
    created: float = field(default_factory=time.time)


class SessionStore:
    """Thread-safe table of live HTTP sessions keyed by id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def create(self, protocol_version: str) -> Session:
        session = Session(id=str(uuid.uuid4()), protocol_version=protocol_version)
        with self._lock:
            self._sessions[session.id] = session
        logger.info("Created session %s (protocol %s)", session.id, protocol_version)
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("Terminated session %s", session_id)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return self.get(session_id) is not None


# ── stdio ─────────────────────────────────────────────────────────────────


def serve_stdio(server: MCPServer, stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None) -> None:
    """Answer newline-delimited JSON-RPC on stdin until EOF."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        reply = server.handle_raw(line)
        if reply is not None:
            stdout.write(reply + "\n")
            stdout.flush()
