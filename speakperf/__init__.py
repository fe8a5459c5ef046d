"""speak-perf-mcp: MCP performance-testing orchestrator for Docker Compose applications."""

__version__ = "0.1.0"
