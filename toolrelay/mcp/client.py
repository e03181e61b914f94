"""MCP protocol client: initialize handshake, tool discovery and invocation."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from toolrelay.errors import MCPProtocolError, MCPRemoteError, ToolExecutionError
from toolrelay.mcp.protocol import (
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    Implementation,
    InitializeParams,
    InitializeResult,
    MCPTool,
    ToolsCallParams,
    ToolsCallResult,
    ToolsListResult,
)
from toolrelay.mcp.transport import MCPTransport, create_transport
from toolrelay.tools.registry import ToolFunction
from toolrelay.validation.config import MCPServerConfig

logger = logging.getLogger(__name__)

CLIENT_VERSION = "0.1.0"


@dataclass
class ClientSettings:
    """What the client announces during ``initialize``."""

    protocol_version: str = LATEST_PROTOCOL_VERSION
    client_name: str = "toolrelay"
    client_version: str = CLIENT_VERSION
    capabilities: Dict[str, Any] = field(default_factory=dict)


class MCPClient:
    """
    Typed MCP operations on top of one transport.

    ``initialize`` is always the first request on a transport. It runs
    lazily before the first discovery or tool call, and again if a stdio
    server had to be respawned.
    """

    def __init__(
        self,
        config: MCPServerConfig,
        transport: Optional[MCPTransport] = None,
        settings: Optional[ClientSettings] = None,
    ):
        self.config = config
        self.settings = settings or ClientSettings()
        self._transport = transport or create_transport(config)
        self._lock = threading.RLock()
        self._server: Optional[InitializeResult] = None

    @property
    def server_name(self) -> str:
        return self.config.name

    @property
    def transport(self) -> MCPTransport:
        return self._transport

    @property
    def protocol_version(self) -> Optional[str]:
        """Version negotiated by the last handshake."""
        return self._server.protocol_version if self._server else None

    @property
    def server_info(self) -> Optional[Implementation]:
        return self._server.server_info if self._server else None

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        request = self._transport.request(method, params)
        logger.debug("[%s] %s id=%s", self.server_name, method, request.id)
        response = self._transport.send(request)
        if response.error is not None:
            raise MCPRemoteError(response.error.code, response.error.message, response.error.data)
        return response.result

    def _ensure_initialized(self) -> None:
        with self._lock:
            if self._server is not None and not self._transport.is_running:
                logger.info("[%s] transport went away, repeating handshake", self.server_name)
                self._server = None
            if self._server is None:
                self.initialize()

    # ── MCP Protocol ──────────────────────────────────────────────────────

    def initialize(
        self,
        protocol_version: Optional[str] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        client_info: Optional[Implementation] = None,
    ) -> InitializeResult:
        """Perform the MCP initialize handshake and record the negotiated version."""
        requested = protocol_version or self.settings.protocol_version
        params = InitializeParams(
            protocol_version=requested,
            capabilities=capabilities if capabilities is not None else self.settings.capabilities,
            client_info=client_info
            or Implementation(name=self.settings.client_name, version=self.settings.client_version),
        )
        with self._lock:
            raw = self._call("initialize", params.to_wire())
            try:
                result = InitializeResult.model_validate(raw)
            except ValidationError as exc:
                raise MCPProtocolError(f"Malformed initialize result from {self.server_name}: {exc}")

            if result.protocol_version != requested:
                logger.info(
                    "[%s] requested protocol %s, server negotiated %s",
                    self.server_name,
                    requested,
                    result.protocol_version,
                )
            if result.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
                logger.warning(
                    "[%s] server speaks unsupported protocol version %s",
                    self.server_name,
                    result.protocol_version,
                )
            self._server = result
            self._transport.notify("notifications/initialized")
            logger.info(
                "[%s] initialized (%s %s, protocol %s)",
                self.server_name,
                result.server_info.name,
                result.server_info.version,
                result.protocol_version,
            )
            return result

    def list_tools(self) -> List[MCPTool]:
        """Fetch the tool catalog from the MCP server."""
        with self._lock:
            self._ensure_initialized()
            raw = self._call("tools/list")
        try:
            return ToolsListResult.model_validate(raw or {}).tools
        except ValidationError as exc:
            raise MCPProtocolError(f"Malformed tools/list result from {self.server_name}: {exc}")

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolsCallResult:
        """Call a tool on the MCP server."""
        params = ToolsCallParams(name=name, arguments=arguments or {})
        with self._lock:
            self._ensure_initialized()
            raw = self._call("tools/call", params.to_wire())
        try:
            return ToolsCallResult.model_validate(raw or {})
        except ValidationError as exc:
            raise MCPProtocolError(f"Malformed tools/call result from {self.server_name}: {exc}")

    def get_tools(self) -> List[ToolFunction]:
        """Discover tools and wrap each as a ``ToolFunction`` that calls back here."""
        return [self._wrap(tool) for tool in self.list_tools()]

    def _wrap(self, remote: MCPTool) -> ToolFunction:
        def invoke(arguments: Dict[str, Any]) -> str:
            result = self.call_tool(remote.name, arguments)
            if result.is_error:
                raise ToolExecutionError(remote.name, result.text())
            return result.text()

        return ToolFunction(
            name=remote.name,
            description=remote.description,
            handler=invoke,
            parameters=remote.input_schema,
        )

    # ── Cleanup ───────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self._server = None
            self._transport.close()
