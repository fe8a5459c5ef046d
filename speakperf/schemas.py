"""Pydantic schemas shared by the orchestrator components.

These schemas define the contracts between:
- Compose parsing and the session store
- The command sandbox and its callers
- The k6 metric parser, the store and the results analyzer
- The MCP boundary and its text/JSON payloads
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class SessionStatus(str, Enum):
    """Status of a test session. Transitions only move forward."""
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    def can_transition_to(self, target: SessionStatus) -> bool:
        """Whether ``target`` is strictly ahead of this status."""
        return not self.is_terminal and target.rank > self.rank


_STATUS_RANK = {
    SessionStatus.INITIALIZED: 0,
    SessionStatus.RUNNING: 1,
    SessionStatus.COMPLETED: 2,
    SessionStatus.FAILED: 2,
}


class TestType(str, Enum):
    """Kinds of generated test scripts."""
    LOAD = "load"
    STRESS = "stress"
    SPIKE = "spike"
    BROWSER = "browser"


class LoadProfile(str, Enum):
    """Closed set of HTTP load shapes; see ``agent.generator.PROFILES``."""
    LOAD = "load"
    STRESS = "stress"
    SPIKE = "spike"


class TestDepth(str, Enum):
    """How hard the automated flow pushes the application."""
    QUICK = "quick"
    STANDARD = "standard"
    THOROUGH = "thorough"

    @property
    def vus(self) -> int:
        return _DEPTH_SETTINGS[self][0]

    @property
    def duration(self) -> str:
        return _DEPTH_SETTINGS[self][1]


_DEPTH_SETTINGS = {
    TestDepth.QUICK: (10, "30s"),
    TestDepth.STANDARD: (50, "2m"),
    TestDepth.THOROUGH: (100, "5m"),
}


# =============================================================================
# Tool Schemas
# =============================================================================

class ToolResult(BaseModel):
    """Standard response from any sandboxed command."""
    ok: bool = Field(..., description="Whether the command succeeded")
    data: Any | None = Field(default=None, description="Command-specific response data")
    error_code: str | None = Field(default=None, description="Error code if failed")
    error_message: str | None = Field(default=None, description="Human-readable error message")
    retryable: bool = Field(default=False, description="Whether the error is retryable")
    latency_ms: int | None = Field(default=None, description="Time taken in milliseconds")

    @property
    def output(self) -> str:
        """Combined stdout/stderr of the command, if any."""
        if not self.data:
            return ""
        return self.data.get("stdout", "") or ""


# =============================================================================
# Compose Schemas
# =============================================================================

class ComposeService(BaseModel):
    """One entry of the Compose ``services`` map."""
    name: str
    image: str = ""
    ports: list[str] = Field(default_factory=list, description="Ordered host:container mappings")


class ComposeDocument(BaseModel):
    """Parsed Compose file, services in file order."""
    services: list[ComposeService] = Field(default_factory=list)


# =============================================================================
# Discovery / Execution Schemas
# =============================================================================

class SpecRef(BaseModel):
    """A discovered (or user-supplied) API specification."""
    spec_id: int | None = Field(default=None, description="Row id, None if persisting failed")
    url: str
    service_id: int | None = None


class MetricSummary(BaseModel):
    """Aggregated k6 metrics for one endpoint of one run."""
    endpoint: str
    avg_response_time: float = 0.0
    min_response_time: float = 0.0
    max_response_time: float = 0.0
    error_rate: float = 0.0
    requests_per_second: float = 0.0


class ExecutionOutcome(BaseModel):
    """Result of executing a generated test against a fresh runtime."""
    run_id: int
    output: str
    samples: list[MetricSummary] = Field(default_factory=list)
    cleanup_errors: list[str] = Field(default_factory=list)


# =============================================================================
# Analysis Schemas
# =============================================================================

class EndpointAnalysis(BaseModel):
    """SLA and history verdict for one endpoint of a run."""
    endpoint: str
    avg_response_time: float
    error_rate: float
    sla_response_time_ms: float | None = None
    sla_error_rate: float | None = None
    response_time_violation: bool = False
    error_rate_violation: bool = False
    historical_avg_response_time: float | None = None
    history_delta_percent: float | None = None
    history_compared: bool = False

    def to_markdown(self) -> str:
        md = f"### {self.endpoint}\n"
        md += f"- Avg Response Time: {self.avg_response_time:.2f} ms\n"
        md += f"- Error Rate: {self.error_rate * 100:.2f}%\n"
        if self.response_time_violation:
            md += f"- ⚠️ SLA VIOLATION: Response time exceeds {self.sla_response_time_ms:g} ms\n"
        if self.error_rate_violation:
            md += f"- ⚠️ SLA VIOLATION: Error rate exceeds {self.sla_error_rate * 100:.1f}%\n"
        if self.history_compared:
            if self.history_delta_percent is None:
                md += "- Response time: no historical data\n"
            else:
                md += f"- Response time: {self.history_delta_percent:+.1f}% vs historical average\n"
        return md


class AnalysisReport(BaseModel):
    """Output of the results analyzer."""
    run_id: int
    endpoints: list[EndpointAnalysis] = Field(default_factory=list)
    compare_history: bool = False

    @property
    def has_violations(self) -> bool:
        return any(e.response_time_violation or e.error_rate_violation for e in self.endpoints)

    def to_markdown(self) -> str:
        """Render analysis as markdown."""
        md = "# Performance Analysis\n\n"
        md += f"## Run ID: {self.run_id}\n\n"
        if not self.endpoints:
            md += "No metrics recorded for this run.\n"
            return md
        for endpoint in self.endpoints:
            md += endpoint.to_markdown() + "\n"
        return md


# =============================================================================
# Query Schemas
# =============================================================================

class HistorySample(BaseModel):
    """One row of ``query_test_history`` output."""
    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime
    endpoint: str
    avg_time: float = Field(serialization_alias="avgTime")
    error_rate: float = Field(serialization_alias="errorRate")
    rps: float
