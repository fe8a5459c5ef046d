"""Shared fixtures.

- A file-backed SQLite store per test
- A recording fake in place of the docker/k6 subprocess runner
- httpx.MockTransport serving spec probes and compose downloads
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import AsyncGenerator, Sequence

import httpx
import pytest
import pytest_asyncio

from speakperf.config import Settings
from speakperf.database.session import Database
from speakperf.database.store import SessionStore
from speakperf.deps import Dependencies
from speakperf.schemas import ToolResult

COMPOSE_WEB = """services:
  web:
    image: example/web:latest
    ports:
      - "8080:8080"
    environment:
      - MODE=test
"""

K6_POINTS = [
    {"type": "Metric", "metric": "http_req_duration", "data": {"type": "trend"}},
    {"type": "Point", "metric": "http_req_duration",
     "data": {"value": 100.0, "tags": {"name": "http://localhost:8080/api/health"}}},
    {"type": "Point", "metric": "http_req_duration",
     "data": {"value": 200.0, "tags": {"name": "http://localhost:8080/api/health"}}},
    {"type": "Point", "metric": "http_req_failed",
     "data": {"value": 0, "tags": {"name": "http://localhost:8080/api/health"}}},
    {"type": "Point", "metric": "http_req_failed",
     "data": {"value": 1, "tags": {"name": "http://localhost:8080/api/health"}}},
    {"type": "Point", "metric": "http_reqs",
     "data": {"value": 1, "tags": {"name": "http://localhost:8080/api/health"}}},
    {"type": "Point", "metric": "http_reqs",
     "data": {"value": 1, "tags": {"name": "http://localhost:8080/api/health"}}},
    {"type": "Point", "metric": "http_req_duration",
     "data": {"value": 50.0, "tags": {"name": "http://localhost:8080/"}}},
    {"type": "Point", "metric": "http_reqs",
     "data": {"value": 1, "tags": {"name": "http://localhost:8080/"}}},
]


# =============================================================================
# Command Runner
# =============================================================================

class FakeRunner:
    """Records commands instead of running docker/k6.

    ``fail`` maps an action (``up``, ``down``, ``k6``) to the output of a
    failed run; ``hang`` names an action that blocks until cancelled.
    """

    def __init__(self):
        self.commands: list[list[str]] = []
        self.envs: list[dict[str, str] | None] = []
        self.fail: dict[str, str] = {}
        self.hang: str | None = None
        self.k6_points: list[dict] = list(K6_POINTS)
        self.started = asyncio.Event()

    @staticmethod
    def action(parts: list[str]) -> str:
        if len(parts) > 1 and parts[1] == "compose":
            return "down" if "down" in parts else "up"
        return "k6"

    async def __call__(
        self,
        parts: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        parts = list(parts)
        self.commands.append(parts)
        self.envs.append(env)
        action = self.action(parts)
        command = " ".join(parts)

        if self.hang == action:
            self.started.set()
            await asyncio.Event().wait()

        if action in self.fail:
            return ToolResult(
                ok=False,
                error_code="COMMAND_FAILED",
                error_message="Command exited with status 1",
                data={"stdout": self.fail[action], "exit_code": 1, "command": command},
            )

        if action == "k6":
            for part in parts:
                if part.startswith("json="):
                    path = Path(part[len("json="):])
                    path.write_text("\n".join(json.dumps(p) for p in self.k6_points) + "\n")

        return ToolResult(
            ok=True,
            data={"stdout": f"{action} ok", "exit_code": 0, "command": command},
        )

    def count(self, action: str) -> int:
        return sum(1 for parts in self.commands if self.action(parts) == action)


# =============================================================================
# HTTP
# =============================================================================

class FakeHttp:
    """Routes by URL path; anything unrouted is a 404."""

    def __init__(self):
        self.routes: dict[str, tuple[int, str]] = {}
        self.refuse_ports: set[int] = set()
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if request.url.port in self.refuse_ports:
            raise httpx.ConnectError("connection refused", request=request)
        status, body = self.routes.get(request.url.path, (404, "not found"))
        return httpx.Response(status, text=body)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'perf_test.db'}",
        log_dir=str(tmp_path / "logs"),
        work_dir=str(tmp_path / "work"),
        discovery_settle_seconds=0,
        execution_settle_seconds=0,
        automated_settle_seconds=0,
        quick_settle_seconds=0,
    )


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("speakperf.tests")


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    db = Database(settings.database_url)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def store(database: Database, logger: logging.Logger) -> SessionStore:
    return SessionStore(database, logger)


@pytest_asyncio.fixture
async def http_client(fake_http: FakeHttp) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_http.handler))
    yield client
    await client.aclose()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def deps(
    settings: Settings,
    database: Database,
    store: SessionStore,
    logger: logging.Logger,
    http_client: httpx.AsyncClient,
    runner: FakeRunner,
    sleeps: list[float],
) -> Dependencies:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return Dependencies(
        settings=settings,
        database=database,
        store=store,
        logger=logger,
        http_client=http_client,
        run_command=runner,
        sleep=fake_sleep,
    )


@pytest.fixture
def compose_file(tmp_path: Path) -> Path:
    path = tmp_path / "docker-compose.yml"
    path.write_text(COMPOSE_WEB)
    return path
