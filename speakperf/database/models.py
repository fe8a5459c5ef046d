"""SQLModel tables for sessions, discovery, generated tests and their runs.

Tables:
- ComposeFile: Compose sources, deduplicated by content hash
- TestSession: One unit of discovery/test activity against a Compose file
- ServiceRecord: Services parsed from the session's Compose content
- ApiSpecRecord: Discovered or user-supplied API specifications
- EndpointRecord: Endpoints of a spec, with optional SLA thresholds
- GeneratedTest: Generated k6 scripts
- TestRun: Executions of a generated test
- MetricSample: Per-endpoint aggregates of a run
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Compose Files
# =============================================================================

class ComposeFile(SQLModel, table=True):
    """A Compose source. Immutable once stored."""

    __tablename__ = "compose_files"

    id: int | None = Field(default=None, primary_key=True)
    source: str = Field(description="URL or local path the content was read from")
    content: str = Field(sa_column=Column(Text, nullable=False))
    content_hash: str = Field(unique=True, index=True, description="SHA256 of content for deduplication")
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Sessions and Services
# =============================================================================

class TestSession(SQLModel, table=True):
    """Bookkeeping unit grouping one Compose source with its activity."""

    __tablename__ = "test_sessions"

    id: int | None = Field(default=None, primary_key=True)
    compose_file_id: int = Field(foreign_key="compose_files.id", index=True)
    name: str
    status: str = Field(default="initialized", index=True)  # SessionStatus values
    started_at: datetime = Field(default_factory=utc_now, index=True)
    completed_at: datetime | None = Field(default=None)


class ServiceRecord(SQLModel, table=True):
    """A service of the session's Compose file."""

    __tablename__ = "services"

    id: int | None = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="test_sessions.id", index=True)
    name: str
    image: str = Field(default="")
    ports: str = Field(default="", description="Comma-joined host:container mappings, in order")

    @property
    def port_list(self) -> list[str]:
        return [p for p in self.ports.split(",") if p]


# =============================================================================
# API Specs and Endpoints
# =============================================================================

class ApiSpecRecord(SQLModel, table=True):
    """An API specification reachable from a session's runtime."""

    __tablename__ = "api_specs"

    id: int | None = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="test_sessions.id", index=True)
    service_id: int | None = Field(default=None, foreign_key="services.id")
    spec_url: str
    content: str | None = Field(default=None, sa_column=Column(Text))
    version: str | None = Field(default=None)
    discovered_at: datetime = Field(default_factory=utc_now)


class EndpointRecord(SQLModel, table=True):
    """An endpoint of a spec. SLA thresholds are optional."""

    __tablename__ = "endpoints"

    id: int | None = Field(default=None, primary_key=True)
    spec_id: int = Field(foreign_key="api_specs.id", index=True)
    path: str = Field(index=True)
    method: str = Field(default="GET")
    sla_response_time_ms: float | None = Field(default=None)
    sla_error_rate: float | None = Field(default=None)


# =============================================================================
# Generated Tests, Runs and Metrics
# =============================================================================

class GeneratedTest(SQLModel, table=True):
    """A generated k6 script."""

    __tablename__ = "tests"

    id: int | None = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="test_sessions.id", index=True)
    name: str
    type: str = Field(description="TestType value")
    script: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utc_now)


class TestRun(SQLModel, table=True):
    """One execution of a generated test. Incomplete until completed_at is set."""

    __tablename__ = "test_runs"

    id: int | None = Field(default=None, primary_key=True)
    test_id: int = Field(foreign_key="tests.id", index=True)
    started_at: datetime = Field(default_factory=utc_now, index=True)
    completed_at: datetime | None = Field(default=None)
    virtual_users: int
    duration: str
    raw_results: str | None = Field(default=None, sa_column=Column(Text))


class MetricSample(SQLModel, table=True):
    """Aggregate metrics of one endpoint in one run."""

    __tablename__ = "metrics"
    __table_args__ = (
        Index("ix_metrics_endpoint_run", "endpoint", "run_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(foreign_key="test_runs.id", index=True)
    endpoint: str = Field(index=True)
    avg_response_time: float
    min_response_time: float
    max_response_time: float
    error_rate: float
    requests_per_second: float
