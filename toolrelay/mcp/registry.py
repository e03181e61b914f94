"""Tool registry merging local tools with tools discovered on MCP servers."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from toolrelay.core.cache import ToolCache
from toolrelay.errors import ToolRelayError
from toolrelay.mcp.client import ClientSettings, MCPClient
from toolrelay.tools.registry import (
    ToolCallError,
    ToolCallRequest,
    ToolCallResult,
    ToolFunction,
    ToolRegistry,
    run_tool,
)
from toolrelay.validation.config import MCPServerConfig

logger = logging.getLogger(__name__)

ClientFactory = Callable[[MCPServerConfig], MCPClient]


class MCPToolRegistry(ToolRegistry):
    """
    A ``ToolRegistry`` that also serves tools from MCP servers.

    - ``tools()`` returns local tools followed by each server's tools, in
      configured server order.
    - ``execute()`` always tries local tools first; only an unknown name
      falls through to the servers, scanned in configured order.
    - Each server's catalog is cached for ``cache_ttl`` seconds. A server
      that cannot be reached contributes no tools but never blocks others.
    - One ``MCPClient`` per server is created on first use and reused until
      ``close_mcp_clients()``.
    """

    def __init__(
        self,
        mcp_servers: Sequence[MCPServerConfig],
        local_tools: Iterable[ToolFunction] = (),
        cache_ttl: float = 600.0,
        client_settings: Optional[ClientSettings] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        preload: bool = False,
    ):
        super().__init__(local_tools)
        self.mcp_servers: List[MCPServerConfig] = list(mcp_servers)
        self._cache: ToolCache[ToolFunction] = ToolCache(ttl=cache_ttl, clock=clock)
        self._client_settings = client_settings or ClientSettings()
        self._client_factory = client_factory or self._default_client_factory
        self._clients: Dict[str, MCPClient] = {}
        self._clients_lock = threading.Lock()
        self._refresh_locks: Dict[str, threading.Lock] = {
            server.name: threading.Lock() for server in self.mcp_servers
        }

        if preload:
            self.refresh_cache()

    def _default_client_factory(self, server: MCPServerConfig) -> MCPClient:
        return MCPClient(server, settings=self._client_settings)

    @property
    def cache(self) -> ToolCache[ToolFunction]:
        return self._cache

    # ── Catalog ───────────────────────────────────────────────────────────

    def local_tools(self) -> List[ToolFunction]:
        return super().tools()

    def tools(self) -> List[ToolFunction]:
        """All tools: local first, then every server's (cached) catalog."""
        all_tools = self.local_tools()
        for server in self.mcp_servers:
            all_tools.extend(self.tools_for_server(server))
        return all_tools

    def tools_for_server(self, server: MCPServerConfig) -> List[ToolFunction]:
        cached = self._cache.get(server.name)
        if cached is not None:
            return list(cached)
        return self._refresh(server, force=False)

    def find_tool(self, name: str) -> Optional[ToolFunction]:
        local = self.get(name)
        if local is not None:
            return local
        return self._find_mcp_tool(name)

    def _find_mcp_tool(self, name: str) -> Optional[ToolFunction]:
        for server in self.mcp_servers:
            for fn in self.tools_for_server(server):
                if fn.name == name:
                    return fn
        return None

    # ── Execution ─────────────────────────────────────────────────────────

    def execute(self, request: ToolCallRequest) -> ToolCallResult:
        """Execute locally if possible, otherwise on the first server exposing the name."""
        local = super().execute(request)
        if not local.is_unknown_function:
            return local

        remote = self._find_mcp_tool(request.function_name)
        if remote is None:
            return ToolCallResult(error=ToolCallError.unknown_function(request.function_name))
        logger.debug("Dispatching %s to an MCP server", request.function_name)
        return run_tool(remote, request)

    # ── Cache refresh ─────────────────────────────────────────────────────

    def _refresh(self, server: MCPServerConfig, force: bool) -> List[ToolFunction]:
        lock = self._refresh_lock(server.name)
        with lock:
            if not force:
                # Another caller may have refreshed while we waited.
                cached = self._cache.get(server.name)
                if cached is not None:
                    return list(cached)
            try:
                client = self.get_or_create_client(server)
                tools = client.get_tools()
            except ToolRelayError as exc:
                logger.warning("Failed to refresh tools from %s: %s", server.name, exc)
                return []
            self._cache.set(server.name, tools)
            logger.info("Discovered %d tools on %s", len(tools), server.name)
            return list(tools)

    def _refresh_lock(self, name: str) -> threading.Lock:
        with self._clients_lock:
            return self._refresh_locks.setdefault(name, threading.Lock())

    def clear_cache(self) -> None:
        """Drop all cached catalogs; clients stay open."""
        self._cache.clear()

    def refresh_cache(self) -> None:
        """Re-discover every server's catalog now, ignoring the TTL."""
        for server in self.mcp_servers:
            self._refresh(server, force=True)

    # ── Clients ───────────────────────────────────────────────────────────

    def get_or_create_client(self, server: MCPServerConfig) -> MCPClient:
        """Return the memoized client for ``server``, creating it at most once."""
        with self._clients_lock:
            client = self._clients.get(server.name)
            if client is None:
                client = self._client_factory(server)
                self._clients[server.name] = client
            return client

    @property
    def clients(self) -> Dict[str, MCPClient]:
        return dict(self._clients)

    def close_mcp_clients(self) -> None:
        """Close every client (and its process/connection) and forget it. Idempotent."""
        with self._clients_lock:
            clients, self._clients = self._clients, {}
        for name, client in clients.items():
            try:
                client.close()
            except ToolRelayError as exc:
                logger.warning("Error closing MCP client %s: %s", name, exc)

    close = close_mcp_clients

    def __enter__(self) -> "MCPToolRegistry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close_mcp_clients()
