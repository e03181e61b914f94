"""Tests for the reference MCP server and its HTTP app."""

import io
import json

import pytest

from toolrelay.mcp.demo import build_demo_server
from toolrelay.mcp.protocol import BASELINE_PROTOCOL_VERSION, LATEST_PROTOCOL_VERSION, SESSION_HEADER
from toolrelay.mcp.server import MCPServer, SessionStore, serve_stdio


def _rpc(method, params=None, id="1"):
    message = {"jsonrpc": "2.0", "id": id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _init(version=LATEST_PROTOCOL_VERSION):
    return _rpc("initialize", {"protocolVersion": version, "capabilities": {}, "clientInfo": {"name": "t", "version": "0"}})


class TestMCPServer:
    """Tests for MCPServer dispatch."""

    @pytest.fixture
    def server(self):
        server = MCPServer("test-server", "1.2.3")

        @server.tool(description="Reply with pong")
        def ping():
            return "pong"

        @server.tool(description="Structured output")
        def stats():
            return {"count": 3}

        @server.tool(description="Always fails")
        def broken():
            raise RuntimeError("disk on fire")

        return server

    def test_initialize_echoes_supported_version(self, server):
        result = server.handle(_init())["result"]

        assert result["protocolVersion"] == LATEST_PROTOCOL_VERSION
        assert result["serverInfo"] == {"name": "test-server", "version": "1.2.3"}
        assert "tools" in result["capabilities"]

    def test_initialize_falls_back_to_baseline(self, server):
        """Test that an unknown newer version negotiates the baseline."""
        result = server.handle(_init("2099-12-31"))["result"]

        assert result["protocolVersion"] == BASELINE_PROTOCOL_VERSION

    def test_tools_list(self, server):
        tools = server.handle(_rpc("tools/list"))["result"]["tools"]

        assert [t["name"] for t in tools] == ["ping", "stats", "broken"]
        assert tools[0]["description"] == "Reply with pong"
        assert tools[0]["inputSchema"] == {"type": "object", "properties": {}}

    def test_tools_call(self, server):
        reply = server.handle(_rpc("tools/call", {"name": "ping", "arguments": {}}))

        assert reply["id"] == "1"
        assert reply["result"]["content"] == [{"type": "text", "text": "pong"}]
        assert reply["result"]["isError"] is False

    def test_tools_call_structured_value(self, server):
        reply = server.handle(_rpc("tools/call", {"name": "stats"}))

        assert json.loads(reply["result"]["content"][0]["text"]) == {"count": 3}

    def test_tool_failure_is_error_result(self, server):
        """Test that a raising tool yields isError content, not a JSON-RPC error."""
        reply = server.handle(_rpc("tools/call", {"name": "broken", "arguments": {}}))

        assert "error" not in reply
        assert reply["result"]["isError"] is True
        assert reply["result"]["content"][0]["text"] == "disk on fire"

    def test_unknown_tool_is_invalid_params(self, server):
        reply = server.handle(_rpc("tools/call", {"name": "nope"}))

        assert reply["error"]["code"] == -32602

    def test_unknown_method(self, server):
        reply = server.handle(_rpc("resources/list"))

        assert reply["error"]["code"] == -32601
        assert "resources/list" in reply["error"]["message"]

    def test_notification_gets_no_reply(self, server):
        assert server.handle({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None

    def test_invalid_request(self, server):
        assert server.handle({"id": "1", "method": "ping"})["error"]["code"] == -32600
        assert server.handle([1, 2])["error"]["code"] == -32600

    def test_parse_error(self, server):
        reply = json.loads(server.handle_raw("{not json"))

        assert reply["error"]["code"] == -32700
        assert reply["id"] is None

    def test_ping(self, server):
        assert server.handle(_rpc("ping"))["result"] == {}

    def test_serve_stdio(self, server):
        """Test the newline-delimited loop: one reply per request, none for notifications."""
        stdin = io.StringIO(
            json.dumps(_init()) + "\n"
            + json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}) + "\n"
            + "\n"
            + json.dumps(_rpc("tools/call", {"name": "ping"}, id="2")) + "\n"
        )
        stdout = io.StringIO()

        serve_stdio(server, stdin, stdout)

        replies = [json.loads(line) for line in stdout.getvalue().splitlines()]
        assert [r["id"] for r in replies] == ["1", "2"]
        assert replies[1]["result"]["content"][0]["text"] == "pong"


class TestDemoServer:
    """Tests for the demonstration tools."""

    def test_weather(self):
        server = build_demo_server()
        reply = server.handle(_rpc("tools/call", {"name": "get_weather", "arguments": {"city": "Paris"}}))

        assert "Weather in Paris" in reply["result"]["content"][0]["text"]

    def test_currency_convert(self):
        server = build_demo_server()
        reply = server.handle(
            _rpc(
                "tools/call",
                {"name": "currency_convert", "arguments": {"amount": 100, "from_currency": "USD", "to_currency": "EUR"}},
            )
        )

        assert reply["result"]["content"][0]["text"] == "100.0 USD = 85.0 EUR"

    def test_currency_convert_bad_amount(self):
        server = build_demo_server()
        reply = server.handle(_rpc("tools/call", {"name": "currency_convert", "arguments": {"amount": "lots"}}))

        assert reply["result"]["isError"] is True


class TestSessionStore:
    """Tests for SessionStore."""

    def test_create_get_remove(self):
        store = SessionStore()
        session = store.create(LATEST_PROTOCOL_VERSION)

        assert store.get(session.id) is session
        assert session.id in store
        assert len(store) == 1
        assert store.remove(session.id)
        assert not store.remove(session.id)
        assert store.get(session.id) is None
        assert store.get(None) is None


class TestHttpApp:
    """Tests for the FastAPI front end."""

    def test_initialize_creates_session(self, http_client, sessions):
        response = http_client.post("/mcp", json=_init())

        assert response.status_code == 200
        session_id = response.headers[SESSION_HEADER]
        assert session_id in sessions
        assert response.json()["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    def test_baseline_initialize_has_no_session(self, http_client, sessions):
        response = http_client.post("/mcp", json=_init(BASELINE_PROTOCOL_VERSION))

        assert SESSION_HEADER not in response.headers
        assert len(sessions) == 0

    def test_session_echoed_on_requests(self, http_client):
        session_id = http_client.post("/mcp", json=_init()).headers[SESSION_HEADER]

        response = http_client.post("/mcp", json=_rpc("tools/list", id="2"), headers={SESSION_HEADER: session_id})

        assert response.headers[SESSION_HEADER] == session_id
        assert [t["name"] for t in response.json()["result"]["tools"]] == ["get_weather", "currency_convert"]

    def test_notification_returns_202(self, http_client):
        response = http_client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})

        assert response.status_code == 202

    def test_parse_error(self, http_client):
        response = http_client.post("/mcp", content=b"{oops", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_get_requires_event_stream_accept(self, http_client):
        session_id = http_client.post("/mcp", json=_init()).headers[SESSION_HEADER]

        response = http_client.get("/mcp", headers={"Accept": "application/json", SESSION_HEADER: session_id})

        assert response.status_code == 406

    def test_get_requires_valid_session(self, http_client):
        response = http_client.get("/mcp", headers={"Accept": "text/event-stream", SESSION_HEADER: "unknown"})

        assert response.status_code == 400

    def test_get_opens_stream(self, http_client):
        session_id = http_client.post("/mcp", json=_init()).headers[SESSION_HEADER]

        response = http_client.get("/mcp", headers={"Accept": "text/event-stream", SESSION_HEADER: session_id})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith(": SSE stream opened")
        assert "notification/stream_started" in response.text

    def test_delete_terminates_session(self, http_client, sessions):
        session_id = http_client.post("/mcp", json=_init()).headers[SESSION_HEADER]

        response = http_client.delete("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 200
        assert response.json() == {"status": "session_terminated"}
        assert session_id not in sessions
        assert http_client.delete("/mcp", headers={SESSION_HEADER: session_id}).status_code == 404
        assert http_client.delete("/mcp").status_code == 400

    def test_other_verbs_not_allowed(self, http_client):
        assert http_client.put("/mcp", json={}).status_code == 405

    def test_legacy_sse_endpoint(self, http_client, sessions):
        response = http_client.post("/sse", json=_init())

        assert response.status_code == 200
        assert SESSION_HEADER not in response.headers
        assert len(sessions) == 0
        assert response.json()["result"]["serverInfo"]["name"] == "toolrelay-demo"
