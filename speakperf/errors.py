"""Error taxonomy for the test-lifecycle orchestrator.

Every error carries a stable ``error_code`` (mirroring ``ToolResult.error_code``)
and, where an external process failed, its captured combined output. Teardown
problems of the runtime that was up when the error happened ride along in
``cleanup_errors``.
"""

from __future__ import annotations


def cleanup_section(warnings: list[str]) -> str:
    """Markdown section listing teardown problems, empty if there were none."""
    if not warnings:
        return ""
    return "\n## Cleanup warnings\n" + "".join(f"- {w}\n" for w in warnings)


class PerfTestError(Exception):
    """Base class for errors reported back to the MCP client."""

    error_code = "PERF_TEST_ERROR"

    def __init__(self, message: str, output: str | None = None):
        super().__init__(message)
        self.message = message
        self.output = output
        self.cleanup_errors: list[str] = []

    def describe(self) -> str:
        """Human-readable text including process output and cleanup warnings."""
        text = f"[{self.error_code}] {self.message}"
        if self.output:
            text += f"\n{self.output}"
        return text + cleanup_section(self.cleanup_errors)


class FetchError(PerfTestError):
    """Compose source unreachable or unreadable."""

    error_code = "FETCH_FAILED"


class ValidationError(PerfTestError):
    """Input failed to parse or validate (Compose content, test type, depth)."""

    error_code = "INVALID_INPUT"


class StoreError(PerfTestError):
    """Persistence failure."""

    error_code = "STORE_FAILED"


class ContainerStartError(PerfTestError):
    """``docker compose up`` failed."""

    error_code = "CONTAINER_START_FAILED"


class ExecutionError(PerfTestError):
    """The load tool exited non-zero."""

    error_code = "EXECUTION_FAILED"


class NotFoundError(PerfTestError):
    """Referenced session/spec/test/run does not exist."""

    error_code = "NOT_FOUND"
