"""Demonstration MCP server with two mock tools."""

from toolrelay.mcp.server import MCPServer

MOCK_EXCHANGE_RATE = 0.85


def build_demo_server() -> MCPServer:
    """A server exposing ``get_weather`` and ``currency_convert`` with canned data."""
    server = MCPServer(name="toolrelay-demo", version="0.1.0")

    @server.tool(
        description="Get current weather for any city",
        input_schema={
            "type": "object",
            "properties": {"city": {"type": "string", "description": "City name"}},
            "required": ["city"],
        },
    )
    def get_weather(city: str = "Unknown", **_ignored) -> str:
        return f"Weather in {city}: 20°C, partly cloudy (MCP server response)"

    @server.tool(
        description="Convert between currencies",
        input_schema={
            "type": "object",
            "properties": {
                "amount": {"type": "number"},
                "from_currency": {"type": "string"},
                "to_currency": {"type": "string"},
            },
            "required": ["amount", "from_currency", "to_currency"],
        },
    )
    def currency_convert(amount=0.0, from_currency: str = "USD", to_currency: str = "EUR", **_ignored) -> str:
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid amount: {amount!r}")
        converted = round(amount * MOCK_EXCHANGE_RATE, 2)
        return f"{amount} {from_currency} = {converted} {to_currency}"

    return server


if __name__ == "__main__":
    from toolrelay.mcp.server import serve_stdio

    serve_stdio(build_demo_server())
