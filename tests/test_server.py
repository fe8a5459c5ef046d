"""MCP boundary: registration and error conversion."""

from __future__ import annotations

import pytest
from mcp.server.fastmcp.exceptions import ToolError

from speakperf.server import create_server

pytestmark = pytest.mark.asyncio

TOOLS = {
    "setup_test_environment",
    "discover_api_specs",
    "generate_api_tests",
    "create_ui_test",
    "run_performance_test",
    "analyze_results",
    "query_test_history",
    "test_application",
    "quick_performance_test",
}


async def test_registers_every_tool_with_camel_case_parameters(deps):
    server = create_server(deps)

    tools = {tool.name: tool for tool in await server.list_tools()}

    assert set(tools) == TOOLS
    assert set(tools["run_performance_test"].inputSchema["properties"]) == {"testId", "vus", "duration"}
    assert tools["run_performance_test"].inputSchema["required"] == ["testId"]
    assert set(tools["test_application"].inputSchema["properties"]) == {"composeSource", "testType", "endpoints"}


async def test_registers_resources(deps):
    server = create_server(deps)

    resources = {str(r.uri): r for r in await server.list_resources()}

    assert set(resources) == {
        "sqlite://schema",
        "sqlite://sessions",
        "sqlite://compose-files",
        "sqlite://test-runs",
    }
    assert resources["sqlite://schema"].mimeType == "text/plain"
    assert resources["sqlite://sessions"].mimeType == "application/json"


async def test_errors_carry_their_code(deps):
    server = create_server(deps)

    with pytest.raises(ToolError, match="NOT_FOUND"):
        await server.call_tool("discover_api_specs", {})


async def test_tool_call_returns_text(deps, compose_file):
    server = create_server(deps)

    result = await server.call_tool("setup_test_environment", {"composePath": str(compose_file)})

    # Newer SDKs return (content, structured_output).
    content = result[0] if isinstance(result, tuple) else result
    assert "Test environment configured:" in content[0].text
