"""MCP server: tool and resource registration on FastMCP.

Tool parameters keep the camelCase names clients already use. Every
``PerfTestError`` leaves the server as a ``ToolError`` whose text carries the
error code, the message and any captured process output.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from speakperf.agent.workflow import PerfTestOrchestrator, parse_flag
from speakperf.deps import Dependencies
from speakperf.errors import PerfTestError

INSTRUCTIONS = (
    "Performance testing for containerized applications. Start with "
    "setup_test_environment, or run test_application for the automated flow."
)


def create_server(deps: Dependencies) -> FastMCP:
    """Build the FastMCP server around one orchestrator.

    The store is opened when the server starts and closed on shutdown.
    """
    orchestrator = PerfTestOrchestrator(deps)
    logger = deps.logger.getChild("server")

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
        logger.info(f"Starting {deps.settings.app_name} v{deps.settings.app_version}")
        await deps.startup()
        try:
            yield {"orchestrator": orchestrator}
        finally:
            logger.info("Shutting down...")
            await deps.aclose()

    mcp = FastMCP(
        deps.settings.app_name,
        instructions=INSTRUCTIONS,
        lifespan=lifespan,
        host=deps.settings.host,
        port=deps.settings.port,
    )

    async def call(name: str, operation: Awaitable[str]) -> str:
        start = time.perf_counter()
        logger.info(f"Tool {name} started")
        try:
            result = await operation
        except PerfTestError as e:
            logger.error(f"Tool {name} failed after {time.perf_counter() - start:.2f}s: {e.describe()}")
            raise ToolError(e.describe()) from e
        logger.info(f"Tool {name} completed in {time.perf_counter() - start:.2f}s")
        return result

    register_tools(mcp, orchestrator, call)
    register_resources(mcp, orchestrator)
    return mcp


def register_tools(mcp: FastMCP, orchestrator: PerfTestOrchestrator, call) -> None:
    """Register the step-by-step and automated tools."""

    @mcp.tool()
    async def setup_test_environment(composePath: str) -> str:
        """Set up a test environment from a Docker Compose file.

        Args:
            composePath: URL or local path of the docker-compose.yml
        """
        return await call("setup_test_environment", orchestrator.setup_test_environment(composePath))

    @mcp.tool()
    async def discover_api_specs(specPaths: str = "", autoDiscover: str = "true") -> str:
        """Discover API specifications of the latest environment.

        Args:
            specPaths: Comma-separated spec URLs to record as-is
            autoDiscover: "true" to start the containers and probe common spec paths
        """
        return await call(
            "discover_api_specs",
            orchestrator.discover_api_specs(specPaths, parse_flag(autoDiscover)),
        )

    @mcp.tool()
    async def generate_api_tests(specId: str, endpoints: str = "", testType: str = "load") -> str:
        """Generate a k6 test from a discovered API specification.

        Args:
            specId: ID of the API specification
            endpoints: Comma-separated endpoints to test
            testType: load, stress or spike
        """
        return await call(
            "generate_api_tests",
            orchestrator.generate_api_tests(specId, endpoints, testType),
        )

    @mcp.tool()
    async def create_ui_test(url: str, instructions: str, testName: str = "ui-test") -> str:
        """Create a k6 browser test from plain-language instructions.

        Args:
            url: Page to open
            instructions: What to do on the page (click button, type, wait)
            testName: Name of the test
        """
        return await call("create_ui_test", orchestrator.create_ui_test(url, instructions, testName))

    @mcp.tool()
    async def run_performance_test(testId: str, vus: float = 10, duration: str = "30s") -> str:
        """Run a generated test against a fresh copy of its environment.

        Args:
            testId: ID of the generated test
            vus: Number of virtual users
            duration: Test duration (e.g. 30s, 5m)
        """
        return await call(
            "run_performance_test",
            orchestrator.run_performance_test(testId, vus, duration),
        )

    @mcp.tool()
    async def analyze_results(runId: str, compareHistory: str = "false") -> str:
        """Analyze a test run against SLAs and, optionally, past runs.

        Args:
            runId: ID of the test run
            compareHistory: "true" to compare with historical averages
        """
        return await call(
            "analyze_results",
            orchestrator.analyze_results(runId, parse_flag(compareHistory)),
        )

    @mcp.tool()
    async def query_test_history(endpoint: str = "", days: float = 7) -> str:
        """Query recorded metrics as JSON, newest first.

        Args:
            endpoint: Only this endpoint (all endpoints if empty)
            days: Number of days to look back
        """
        return await call("query_test_history", orchestrator.query_test_history(endpoint, days))

    @mcp.tool()
    async def test_application(composeSource: str, testType: str = "standard", endpoints: str = "") -> str:
        """Automatically set up, discover, generate and run a load test.

        Args:
            composeSource: URL or local path of the docker-compose.yml
            testType: quick, standard or thorough
            endpoints: Comma-separated endpoints (defaults are used if empty)
        """
        return await call(
            "test_application",
            orchestrator.test_application(composeSource, testType, endpoints),
        )

    @mcp.tool()
    async def quick_performance_test(composeSource: str, vus: float = 50, duration: str = "2m") -> str:
        """Start the application and run a simple health-check load against it.

        Args:
            composeSource: URL or local path of the docker-compose.yml
            vus: Number of virtual users
            duration: Test duration
        """
        return await call(
            "quick_performance_test",
            orchestrator.quick_performance_test(composeSource, vus, duration),
        )


def register_resources(mcp: FastMCP, orchestrator: PerfTestOrchestrator) -> None:
    @mcp.resource(
        "sqlite://schema",
        name="Database Schema",
        description="Schema of the test results database",
        mime_type="text/plain",
    )
    async def schema() -> str:
        return await orchestrator.schema_resource()

    @mcp.resource(
        "sqlite://sessions",
        name="Test Sessions",
        description="The 20 most recent test sessions",
        mime_type="application/json",
    )
    async def sessions() -> str:
        return await orchestrator.sessions_resource()

    @mcp.resource(
        "sqlite://compose-files",
        name="Compose Files",
        description="The 20 most recently stored compose files",
        mime_type="application/json",
    )
    async def compose_files() -> str:
        return await orchestrator.compose_files_resource()

    @mcp.resource(
        "sqlite://test-runs",
        name="Test Runs",
        description="The 20 most recent test runs",
        mime_type="application/json",
    )
    async def test_runs() -> str:
        return await orchestrator.test_runs_resource()
