"""
ToolRelay CLI - Inspect tools, call them, run the agent, serve the demo MCP server.

Configuration is read from ~/.toolrelay/config.yaml and the nearest
.toolrelay/config.yaml (or --config).
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from toolrelay import __version__
from toolrelay.errors import ConfigurationError
from toolrelay.tools.registry import ToolCallRequest
from toolrelay.validation.config import Config

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=verbose)],
    )


def _load_config(ctx: click.Context) -> Config:
    try:
        config = Config.load(ctx.obj.get("config_path"))
        config.merged
    except ConfigurationError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    return config


@click.group()
@click.version_option(__version__, "--version", "-v", prog_name="ToolRelay")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Project config file")
@click.option("--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool) -> None:
    """
    ToolRelay - tool-calling agent with local and MCP tools.

    \b
    Examples:
        toolrelay tools                                  # List merged tool catalog
        toolrelay call get_weather --args '{"city": "Paris"}'
        toolrelay run "What's the weather in Paris?"
        toolrelay serve --port 8080                       # Demo MCP server over HTTP
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.pass_context
def tools(ctx: click.Context) -> None:
    """List local and remote tools."""
    config = _load_config(ctx)

    with config.build_registry() as registry:
        table = Table(title="Available Tools", show_lines=True, border_style="blue")
        table.add_column("Tool", style="bold cyan")
        table.add_column("Source", style="dim")
        table.add_column("Parameters", style="white")
        table.add_column("Description", style="white")

        def add_row(fn, source):
            params = ", ".join(fn.parameters.get("properties", {}).keys())
            table.add_row(fn.name, source, params or "-", fn.description)

        for fn in registry.local_tools():
            add_row(fn, "local")
        for server in registry.mcp_servers:
            with console.status(f"[bold blue]Discovering tools on {server.name}...[/bold blue]"):
                discovered = registry.tools_for_server(server)
            for fn in discovered:
                add_row(fn, server.name)

        if table.row_count:
            console.print(table)
        else:
            console.print("[dim]No tools available[/dim]")


@cli.command()
@click.argument("name")
@click.option("--args", "args_json", default="{}", help="Tool arguments as a JSON object")
@click.pass_context
def call(ctx: click.Context, name: str, args_json: str) -> None:
    """Call one tool by NAME."""
    try:
        arguments = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(arguments, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    config = _load_config(ctx)
    with config.build_registry() as registry:
        result = registry.execute(ToolCallRequest(function_name=name, arguments=arguments))

    if not result.ok:
        err_console.print(f"[red]Error: {result.error.message}[/red]")
        sys.exit(1)
    value = result.value
    console.print(value if isinstance(value, str) else json.dumps(value, indent=2))


@cli.command()
@click.argument("query", nargs=-1, required=True)
@click.option("--max-steps", type=int, default=None, help="Override agent.max_steps")
@click.option("--show-logs", is_flag=True, help="Print the agent log after the answer")
@click.pass_context
def run(ctx: click.Context, query: tuple, max_steps: Optional[int], show_logs: bool) -> None:
    """Answer QUERY with the agent, using every configured tool."""
    from toolrelay.core.agent import Agent
    from toolrelay.core.state import AgentStatus
    from toolrelay.providers.base import OpenAICompatibleClient

    config = _load_config(ctx)
    settings = config.merged
    agent = Agent(OpenAICompatibleClient(settings.model), system_prompt=settings.agent.system_prompt)

    with config.build_registry() as registry:
        with console.status("[bold blue]Working...[/bold blue]"):
            state = agent.run(
                " ".join(query),
                registry,
                max_steps=max_steps if max_steps is not None else settings.agent.max_steps,
            )

    if show_logs:
        console.print(Panel("\n".join(state.logs), title="Agent log", border_style="dim"))

    if state.status is AgentStatus.FAILED:
        err_console.print(f"[red]Error: {state.failure_reason}[/red]")
        sys.exit(1)
    if state.status is not AgentStatus.COMPLETE:
        err_console.print(f"[yellow]Stopped before completion ({state.status.value})[/yellow]")
        sys.exit(2)
    console.print(state.final_response() or "")


@cli.command()
@click.option("--stdio", is_flag=True, help="Serve newline-delimited JSON-RPC on stdin/stdout")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
def serve(stdio: bool, host: str, port: int) -> None:
    """Run the demonstration MCP server."""
    from toolrelay.mcp.demo import build_demo_server

    server = build_demo_server()
    if stdio:
        from toolrelay.mcp.server import serve_stdio

        serve_stdio(server)
        return

    import uvicorn

    from toolrelay.mcp.http_app import create_app

    err_console.print(f"[bold blue]MCP server on http://{host}:{port}/mcp[/bold blue] (legacy: /sse)")
    uvicorn.run(create_app(server, keepalive_interval=15.0), host=host, port=port, log_level="info")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
