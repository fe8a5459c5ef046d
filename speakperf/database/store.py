"""Session store: the single source of truth for what happened.

Every write is awaited by the caller and every SQLAlchemy failure surfaces as
``StoreError``. Reads used by the rest of the system:
- latest_session: the most recently created session
- compose_content_for_session: Compose text joined through the session
- metrics_for_run: MetricSamples of one run
- historical_average: mean avg_response_time of an endpoint, other runs only
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.schema import CreateTable
from sqlmodel import SQLModel, select

from speakperf.database.models import (
    ApiSpecRecord,
    ComposeFile,
    EndpointRecord,
    GeneratedTest,
    MetricSample,
    ServiceRecord,
    TestRun,
    TestSession,
    utc_now,
)
from speakperf.database.session import Database
from speakperf.errors import NotFoundError, StoreError
from speakperf.schemas import HistorySample, MetricSummary, SessionStatus, TestType
from speakperf.tools.compose import content_hash


class SessionStore:
    """CRUD-style access to sessions and everything they own."""

    def __init__(self, database: Database, logger: logging.Logger):
        self.database = database
        self.logger = logger

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        start = time.perf_counter()
        try:
            async with self.database.session() as db:
                yield db
        except SQLAlchemyError as e:
            self.logger.error(f"Database operation {operation} failed: {e}")
            raise StoreError(f"Failed to {operation}: {e}") from e
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            self.logger.debug(f"Database operation {operation} took {latency_ms}ms")

    # =========================================================================
    # Compose files
    # =========================================================================

    async def store_compose_file(self, source: str, content: str) -> ComposeFile:
        """Store Compose content, reusing the existing row for identical content."""
        digest = content_hash(content)

        existing = await self.get_compose_file_by_hash(digest)
        if existing is not None:
            self.logger.debug(f"Reusing compose file {existing.id} for {source}")
            return existing

        row = ComposeFile(source=source, content=content, content_hash=digest)
        try:
            async with self._session("store compose file") as db:
                db.add(row)
        except StoreError as e:
            # A concurrent writer inserted the same content first.
            if isinstance(e.__cause__, IntegrityError):
                existing = await self.get_compose_file_by_hash(digest)
                if existing is not None:
                    return existing
            raise

        self.logger.info(f"Stored compose file {row.id} from {source}")
        return row

    async def get_compose_file_by_hash(self, digest: str) -> ComposeFile | None:
        async with self._session("look up compose file") as db:
            result = await db.execute(
                select(ComposeFile).where(ComposeFile.content_hash == digest)
            )
            return result.scalar_one_or_none()

    async def get_compose_file(self, compose_file_id: int) -> ComposeFile | None:
        async with self._session("get compose file") as db:
            return await db.get(ComposeFile, compose_file_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        compose_file_id: int,
        name: str,
        status: SessionStatus = SessionStatus.INITIALIZED,
    ) -> TestSession:
        row = TestSession(compose_file_id=compose_file_id, name=name, status=status.value)
        async with self._session("create session") as db:
            db.add(row)
        self.logger.info(f"Created session {row.id} ({name}) with status {status.value}")
        return row

    async def update_status(self, session_id: int, status: SessionStatus) -> TestSession:
        """Move a session forward. completed_at is set once, on the terminal state."""
        async with self._session("update session status") as db:
            row = await db.get(TestSession, session_id)
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")

            current = SessionStatus(row.status)
            if current == status:
                return row
            if not current.can_transition_to(status):
                raise StoreError(
                    f"Illegal status transition for session {session_id}: "
                    f"{current.value} -> {status.value}"
                )

            row.status = status.value
            if status.is_terminal:
                row.completed_at = utc_now()
            db.add(row)

        self.logger.info(f"Session {session_id} is now {status.value}")
        return row

    async def get_session(self, session_id: int) -> TestSession | None:
        async with self._session("get session") as db:
            return await db.get(TestSession, session_id)

    async def latest_session(self) -> TestSession | None:
        """Most recently created session."""
        async with self._session("get latest session") as db:
            result = await db.execute(
                select(TestSession).order_by(TestSession.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def compose_content_for_session(self, session_id: int) -> str | None:
        async with self._session("get compose content") as db:
            result = await db.execute(
                select(ComposeFile.content)
                .join(TestSession, TestSession.compose_file_id == ComposeFile.id)
                .where(TestSession.id == session_id)
            )
            return result.scalar_one_or_none()

    # =========================================================================
    # Services
    # =========================================================================

    async def record_service(
        self,
        session_id: int,
        name: str,
        image: str,
        ports: list[str],
    ) -> ServiceRecord:
        row = ServiceRecord(
            session_id=session_id,
            name=name,
            image=image,
            ports=",".join(ports),
        )
        async with self._session("store service") as db:
            db.add(row)
        return row

    async def services_for_session(self, session_id: int) -> list[ServiceRecord]:
        async with self._session("list services") as db:
            result = await db.execute(
                select(ServiceRecord)
                .where(ServiceRecord.session_id == session_id)
                .order_by(ServiceRecord.id)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Specs and endpoints
    # =========================================================================

    async def record_spec(
        self,
        session_id: int,
        spec_url: str,
        service_id: int | None = None,
        content: str | None = None,
        version: str | None = None,
    ) -> ApiSpecRecord:
        row = ApiSpecRecord(
            session_id=session_id,
            service_id=service_id,
            spec_url=spec_url,
            content=content,
            version=version,
        )
        async with self._session("store spec") as db:
            db.add(row)
        return row

    async def get_spec(self, spec_id: int) -> ApiSpecRecord | None:
        async with self._session("get spec") as db:
            return await db.get(ApiSpecRecord, spec_id)

    async def specs_for_session(self, session_id: int) -> list[ApiSpecRecord]:
        async with self._session("list specs") as db:
            result = await db.execute(
                select(ApiSpecRecord)
                .where(ApiSpecRecord.session_id == session_id)
                .order_by(ApiSpecRecord.id)
            )
            return list(result.scalars().all())

    async def record_endpoint(
        self,
        spec_id: int,
        path: str,
        method: str = "GET",
        sla_response_time_ms: float | None = None,
        sla_error_rate: float | None = None,
    ) -> EndpointRecord:
        row = EndpointRecord(
            spec_id=spec_id,
            path=path,
            method=method.upper(),
            sla_response_time_ms=sla_response_time_ms,
            sla_error_rate=sla_error_rate,
        )
        async with self._session("store endpoint") as db:
            db.add(row)
        return row

    async def endpoint_sla(self, path: str) -> EndpointRecord | None:
        """Newest endpoint row for ``path`` that carries an SLA threshold."""
        async with self._session("get endpoint sla") as db:
            result = await db.execute(
                select(EndpointRecord)
                .where(EndpointRecord.path == path)
                .where(
                    (EndpointRecord.sla_response_time_ms.is_not(None))
                    | (EndpointRecord.sla_error_rate.is_not(None))
                )
                .order_by(EndpointRecord.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # =========================================================================
    # Generated tests and runs
    # =========================================================================

    async def record_test(
        self,
        session_id: int,
        name: str,
        test_type: TestType,
        script: str,
    ) -> GeneratedTest:
        row = GeneratedTest(session_id=session_id, name=name, type=test_type.value, script=script)
        async with self._session("store test") as db:
            db.add(row)
        self.logger.info(f"Stored {test_type.value} test {row.id} ({name}) for session {session_id}")
        return row

    async def get_test(self, test_id: int) -> GeneratedTest | None:
        async with self._session("get test") as db:
            return await db.get(GeneratedTest, test_id)

    async def record_run(self, test_id: int, virtual_users: int, duration: str) -> TestRun:
        row = TestRun(test_id=test_id, virtual_users=virtual_users, duration=duration)
        async with self._session("store test run") as db:
            db.add(row)
        return row

    async def complete_run(self, run_id: int, raw_results: str) -> TestRun:
        async with self._session("complete test run") as db:
            row = await db.get(TestRun, run_id)
            if row is None:
                raise NotFoundError(f"Run {run_id} not found")
            if row.completed_at is not None:
                raise StoreError(f"Run {run_id} is already complete")
            row.completed_at = utc_now()
            row.raw_results = raw_results
            db.add(row)
        return row

    async def get_run(self, run_id: int) -> TestRun | None:
        async with self._session("get test run") as db:
            return await db.get(TestRun, run_id)

    # =========================================================================
    # Metrics
    # =========================================================================

    async def record_metrics(self, run_id: int, samples: list[MetricSummary]) -> list[MetricSample]:
        rows = [MetricSample(run_id=run_id, **sample.model_dump()) for sample in samples]
        async with self._session("store metrics") as db:
            db.add_all(rows)
        return rows

    async def metrics_for_run(self, run_id: int) -> list[MetricSample]:
        async with self._session("get run metrics") as db:
            result = await db.execute(
                select(MetricSample)
                .where(MetricSample.run_id == run_id)
                .order_by(MetricSample.id)
            )
            return list(result.scalars().all())

    async def historical_average(self, endpoint: str, exclude_run_id: int) -> float | None:
        """Mean avg_response_time of ``endpoint`` over every other run, or None."""
        async with self._session("get historical average") as db:
            result = await db.execute(
                select(func.avg(MetricSample.avg_response_time))
                .where(MetricSample.endpoint == endpoint)
                .where(MetricSample.run_id != exclude_run_id)
            )
            value = result.scalar()
        return float(value) if value is not None else None

    async def history(self, endpoint: str | None = None, days: int = 7) -> list[HistorySample]:
        cutoff = utc_now() - timedelta(days=days)
        query = (
            select(
                TestRun.started_at,
                MetricSample.endpoint,
                MetricSample.avg_response_time,
                MetricSample.error_rate,
                MetricSample.requests_per_second,
            )
            .join(TestRun, MetricSample.run_id == TestRun.id)
            .where(TestRun.started_at > cutoff)
        )
        if endpoint:
            query = query.where(MetricSample.endpoint == endpoint)
        query = query.order_by(TestRun.started_at.desc(), MetricSample.id.desc())

        async with self._session("query history") as db:
            result = await db.execute(query)
            rows = result.all()

        return [
            HistorySample(
                timestamp=started_at,
                endpoint=name,
                avg_time=avg_time,
                error_rate=error_rate,
                rps=rps,
            )
            for started_at, name, avg_time, error_rate, rps in rows
        ]

    # =========================================================================
    # Resource listings
    # =========================================================================

    async def recent_sessions(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self._session("list sessions") as db:
            result = await db.execute(
                select(TestSession, ComposeFile.source, func.count(ServiceRecord.id))
                .outerjoin(ComposeFile, TestSession.compose_file_id == ComposeFile.id)
                .outerjoin(ServiceRecord, ServiceRecord.session_id == TestSession.id)
                .group_by(TestSession.id, ComposeFile.source)
                .order_by(TestSession.id.desc())
                .limit(limit)
            )
            rows = result.all()

        return [
            {
                "id": session.id,
                "name": session.name,
                "started_at": _iso(session.started_at),
                "completed_at": _iso(session.completed_at),
                "status": session.status,
                "source_url": source,
                "service_count": service_count,
            }
            for session, source, service_count in rows
        ]

    async def recent_compose_files(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self._session("list compose files") as db:
            result = await db.execute(
                select(
                    ComposeFile.id,
                    ComposeFile.source,
                    ComposeFile.content_hash,
                    ComposeFile.created_at,
                    func.length(ComposeFile.content),
                )
                .order_by(ComposeFile.id.desc())
                .limit(limit)
            )
            rows = result.all()

        return [
            {
                "id": file_id,
                "source_url": source,
                "hash": digest,
                "created_at": _iso(created_at),
                "size_bytes": size,
            }
            for file_id, source, digest, created_at, size in rows
        ]

    async def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self._session("list test runs") as db:
            result = await db.execute(
                select(TestRun, GeneratedTest.name, GeneratedTest.type, TestSession.name)
                .join(GeneratedTest, TestRun.test_id == GeneratedTest.id)
                .join(TestSession, GeneratedTest.session_id == TestSession.id)
                .order_by(TestRun.id.desc())
                .limit(limit)
            )
            rows = result.all()

        return [
            {
                "id": run.id,
                "started_at": _iso(run.started_at),
                "completed_at": _iso(run.completed_at),
                "vus": run.virtual_users,
                "duration": run.duration,
                "test_name": test_name,
                "test_type": test_type,
                "session_name": session_name,
            }
            for run, test_name, test_type, session_name in rows
        ]

    def schema_description(self) -> str:
        """DDL of every table, rendered for the store's dialect."""
        dialect = self.database.engine.dialect
        md = "# Database Schema\n\n"
        for table in SQLModel.metadata.sorted_tables:
            ddl = str(CreateTable(table).compile(dialect=dialect)).strip()
            md += f"## Table: {table.name}\n\n```sql\n{ddl}\n```\n\n"
        return md


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
