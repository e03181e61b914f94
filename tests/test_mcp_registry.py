"""Tests for the caching MCP tool registry."""

import threading

import pytest

from toolrelay.errors import MCPTransportError
from toolrelay.mcp.registry import MCPToolRegistry
from toolrelay.tools.registry import ToolCallErrorKind, ToolCallRequest, ToolFunction
from toolrelay.validation.config import MCPServerConfig


class FakeClient:
    """Stands in for MCPClient; serves a fixed catalog."""

    def __init__(self, tools, fail=False):
        self._tools = tools
        self.fail = fail
        self.discoveries = 0
        self.closed = 0

    def get_tools(self):
        self.discoveries += 1
        if self.fail:
            raise MCPTransportError("connection refused")
        return list(self._tools)

    def close(self):
        self.closed += 1


def _remote(name, value):
    return ToolFunction(name, f"remote {name}", lambda args: value, validate=False)


def _server(name):
    return MCPServerConfig.http(name, f"http://{name}.invalid")


@pytest.fixture
def servers():
    return [_server("alpha"), _server("beta")]


@pytest.fixture
def fake_clients():
    return {
        "alpha": FakeClient([_remote("shared", "from alpha"), _remote("alpha_only", "a")]),
        "beta": FakeClient([_remote("shared", "from beta"), _remote("beta_only", "b")]),
    }


@pytest.fixture
def registry(servers, fake_clients, clock):
    local = ToolFunction("echo", "Echo", lambda args: args.get("text"), validate=False)
    return MCPToolRegistry(
        servers,
        local_tools=[local],
        cache_ttl=60,
        client_factory=lambda server: fake_clients[server.name],
        clock=clock,
    )


class TestCatalog:
    """Tests for tool listing and caching."""

    def test_tools_local_first_then_servers_in_order(self, registry):
        names = [fn.name for fn in registry.tools()]

        assert names == ["echo", "shared", "alpha_only", "shared", "beta_only"]

    def test_cached_within_ttl(self, registry, servers, fake_clients, clock):
        """Test that repeated lookups inside the TTL do not rediscover."""
        first = registry.tools_for_server(servers[0])
        clock.advance(59)
        second = registry.tools_for_server(servers[0])

        assert fake_clients["alpha"].discoveries == 1
        assert [a is b for a, b in zip(first, second)] == [True, True]

    def test_rediscovered_after_ttl(self, registry, servers, fake_clients, clock):
        registry.tools_for_server(servers[0])
        clock.advance(60)
        registry.tools_for_server(servers[0])

        assert fake_clients["alpha"].discoveries == 2

    def test_cache_entry_replaced_not_mutated(self, registry, servers, clock):
        registry.tools_for_server(servers[0])
        before = registry.cache.entry("alpha")
        clock.advance(120)
        registry.tools_for_server(servers[0])
        after = registry.cache.entry("alpha")

        assert after is not before
        assert after.timestamp == before.timestamp + 120

    def test_failing_server_degrades_to_empty(self, registry, servers, fake_clients):
        """Test that one unreachable server does not hide the others."""
        fake_clients["alpha"].fail = True

        names = [fn.name for fn in registry.tools()]

        assert names == ["echo", "shared", "beta_only"]
        assert registry.cache.entry("alpha") is None

    def test_failed_discovery_retried_next_lookup(self, registry, servers, fake_clients):
        fake_clients["alpha"].fail = True
        registry.tools_for_server(servers[0])
        fake_clients["alpha"].fail = False

        assert [fn.name for fn in registry.tools_for_server(servers[0])] == ["shared", "alpha_only"]

    def test_clear_and_refresh_cache(self, registry, servers, fake_clients):
        registry.tools()
        registry.clear_cache()
        registry.tools()

        assert fake_clients["alpha"].discoveries == 2

        registry.refresh_cache()

        assert fake_clients["alpha"].discoveries == 3
        assert fake_clients["beta"].discoveries == 3

    def test_wire_schemas_include_remote_tools(self, registry):
        names = [schema["function"]["name"] for schema in registry.wire_schemas()]

        assert names[0] == "echo"
        assert "beta_only" in names

    def test_preload(self, servers, fake_clients):
        MCPToolRegistry(servers, client_factory=lambda s: fake_clients[s.name], preload=True)

        assert fake_clients["alpha"].discoveries == 1
        assert fake_clients["beta"].discoveries == 1


class TestExecute:
    """Tests for local-first dispatch."""

    def test_local_wins_over_remote(self, servers, fake_clients, clock):
        local = ToolFunction("shared", "local shared", lambda args: "from local", validate=False)
        registry = MCPToolRegistry(
            servers, local_tools=[local], client_factory=lambda s: fake_clients[s.name], clock=clock
        )

        result = registry.execute(ToolCallRequest("shared", {}))

        assert result.value == "from local"

    def test_first_server_in_order_wins(self, registry):
        assert registry.execute(ToolCallRequest("shared", {})).value == "from alpha"

    def test_remote_only_tool(self, registry):
        assert registry.execute(ToolCallRequest("beta_only", {})).value == "b"

    def test_unknown_function(self, registry):
        result = registry.execute(ToolCallRequest("nowhere", {}))

        assert result.is_unknown_function
        assert result.error.message == "Unknown function: nowhere"

    def test_remote_transport_failure_is_execution_error(self, servers, clock):
        def broken(args):
            raise MCPTransportError("MCP server closed connection (empty response)")

        client = FakeClient([ToolFunction("flaky", "", broken, validate=False)])
        registry = MCPToolRegistry(servers[:1], client_factory=lambda s: client, clock=clock)

        result = registry.execute(ToolCallRequest("flaky", {}))

        assert result.error.kind is ToolCallErrorKind.EXECUTION_ERROR
        assert "closed connection" in result.error.message


class TestClients:
    """Tests for client memoization and shutdown."""

    def test_client_created_once(self, servers):
        created = []

        def factory(server):
            created.append(server.name)
            return FakeClient([])

        registry = MCPToolRegistry(servers, client_factory=factory)
        registry.tools()
        registry.clear_cache()
        registry.tools()

        assert created == ["alpha", "beta"]

    def test_concurrent_first_use_creates_one_client(self, servers):
        created = []
        lock = threading.Lock()

        def factory(server):
            with lock:
                created.append(server.name)
            return FakeClient([_remote("x", 1)])

        registry = MCPToolRegistry(servers[:1], client_factory=factory)
        threads = [threading.Thread(target=registry.tools) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert created == ["alpha"]

    def test_close_mcp_clients_idempotent(self, registry, fake_clients):
        registry.tools()

        registry.close_mcp_clients()
        assert registry.clients == {}
        registry.close_mcp_clients()
        assert registry.clients == {}

        assert fake_clients["alpha"].closed == 1
        assert fake_clients["beta"].closed == 1

    def test_context_manager_closes(self, servers, fake_clients):
        with MCPToolRegistry(servers, client_factory=lambda s: fake_clients[s.name]) as registry:
            registry.tools()

        assert fake_clients["alpha"].closed == 1


class TestStubServerScenario:
    """End-to-end through a real stdio MCP server."""

    def test_ping_resolves_remotely(self, stub_server_config):
        """Local 'echo' plus a remote 'ping' that returns 'pong' unmodified."""
        echo = ToolFunction(
            "echo",
            "Echo text",
            lambda args: args["text"],
            {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        )
        with MCPToolRegistry([stub_server_config], local_tools=[echo]) as registry:
            ping = registry.execute(ToolCallRequest("ping", {}))
            echoed = registry.execute(ToolCallRequest("echo", {"text": "local"}))
            names = [fn.name for fn in registry.tools()]

        assert ping.ok
        assert ping.value == "pong"
        assert echoed.value == "local"
        assert names == ["echo", "ping", "echo", "fail"]

    def test_remote_error_result(self, stub_server_config):
        with MCPToolRegistry([stub_server_config]) as registry:
            result = registry.execute(ToolCallRequest("fail", {}))

        assert result.error.kind is ToolCallErrorKind.EXECUTION_ERROR
        assert "boom" in result.error.message

    def test_unreachable_server_yields_no_tools(self, stub):
        broken = MCPServerConfig.stdio("broken", ["definitely-not-a-real-mcp-server-binary"], timeout=1)
        with MCPToolRegistry([broken, MCPServerConfig.stdio("stub", stub(), timeout=10)]) as registry:
            names = [fn.name for fn in registry.tools()]

        assert names == ["ping", "echo", "fail"]
