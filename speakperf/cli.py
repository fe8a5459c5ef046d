"""CLI entrypoint (Typer).

- `speak-perf serve`: run the MCP server
- `speak-perf init-db`: create the results database
- `speak-perf test-app` / `speak-perf quick-test`: run a flow without an MCP client
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import typer

from speakperf.agent.workflow import PerfTestOrchestrator
from speakperf.config import get_settings
from speakperf.deps import Dependencies
from speakperf.errors import PerfTestError
from speakperf.logging_config import configure_logging

app = typer.Typer(help="Performance testing for containerized applications over MCP.")


def _deps() -> Dependencies:
    settings = get_settings()
    return Dependencies.from_settings(settings, configure_logging(settings))


async def _run_flow(flow: Callable[[PerfTestOrchestrator], Awaitable[str]]) -> str:
    deps = _deps()
    await deps.startup()
    try:
        return await flow(PerfTestOrchestrator(deps))
    finally:
        await deps.aclose()


def _echo_flow(flow: Callable[[PerfTestOrchestrator], Awaitable[str]]) -> None:
    try:
        report = asyncio.run(_run_flow(flow))
    except PerfTestError as e:
        typer.echo(e.describe(), err=True)
        raise typer.Exit(code=1)
    typer.echo(report)


@app.command()
def serve(
    transport: Optional[str] = typer.Option(
        None,
        "--transport",
        help="stdio, sse or streamable-http (defaults to MCP_TRANSPORT)",
    ),
):
    """Run the MCP server."""
    from speakperf.server import create_server

    settings = get_settings()
    transport = transport or settings.transport
    if transport not in ("stdio", "sse", "streamable-http"):
        raise typer.BadParameter(f"Unknown transport: {transport}")

    server = create_server(_deps())
    server.run(transport=transport)


@app.command("init-db")
def init_db():
    """Create the results database tables."""

    async def _init() -> None:
        deps = _deps()
        try:
            await deps.startup()
        finally:
            await deps.aclose()

    asyncio.run(_init())
    typer.echo(f"Database ready: {get_settings().database_url}")


@app.command("test-app")
def test_app(
    source: str = typer.Argument(..., help="URL or path of the docker-compose.yml"),
    test_type: str = typer.Option("standard", "--type", help="quick, standard or thorough"),
    endpoints: str = typer.Option("", "--endpoints", help="Comma-separated endpoints"),
):
    """Run the automated discover/generate/execute flow."""
    _echo_flow(lambda o: o.test_application(source, test_type, endpoints))


@app.command("quick-test")
def quick_test(
    source: str = typer.Argument(..., help="URL or path of the docker-compose.yml"),
    vus: int = typer.Option(50, "--vus", help="Virtual users"),
    duration: str = typer.Option("2m", "--duration", help="Test duration"),
):
    """Run a quick health-check load test."""
    _echo_flow(lambda o: o.quick_performance_test(source, vus, duration))


if __name__ == "__main__":
    app()
