"""Runtime materializer: Compose content -> running, uniquely named containers.

Every operation gets its own working directory and compose project name, so
concurrent sessions (and repeated operations of one session) never share
containers. ``running()`` is the only way the orchestrator brings a runtime
up; it guarantees ``down -v`` and directory removal on every exit path.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import shutil
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from speakperf.config import Settings
from speakperf.errors import ContainerStartError, PerfTestError
from speakperf.tools.sandbox import CommandRunner

COMPOSE_FILENAME = "docker-compose.yml"

# Process-wide, so two operations in the same nanosecond still differ.
_project_counter = itertools.count(1)


@dataclass
class RuntimeHandle:
    """A materialized (possibly running) compose project."""

    session_id: int
    project_name: str
    working_dir: str
    compose_path: str
    cleanup_errors: list[str] = field(default_factory=list)


class RuntimeMaterializer:
    """Owns bring-up and teardown of compose projects."""

    def __init__(
        self,
        settings: Settings,
        run_command: CommandRunner,
        logger: logging.Logger,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.run_command = run_command
        self.logger = logger
        self.sleep = sleep

    async def materialize(self, content: str, session_id: int, prefix: str) -> RuntimeHandle:
        """Write ``content`` into a fresh working directory.

        Raises:
            ContainerStartError: The working directory could not be prepared
        """
        stamp = time.time_ns()
        try:
            working_dir = await asyncio.to_thread(self._prepare_dir, content, session_id, stamp)
        except OSError as e:
            self.logger.error(f"Failed to prepare working directory for session {session_id}: {e}")
            raise ContainerStartError(f"Failed to prepare working directory: {e}") from e

        project_name = f"{prefix}-{session_id}-{stamp}-{next(_project_counter)}"
        return RuntimeHandle(
            session_id=session_id,
            project_name=project_name,
            working_dir=working_dir,
            compose_path=os.path.join(working_dir, COMPOSE_FILENAME),
        )

    def _prepare_dir(self, content: str, session_id: int, stamp: int) -> str:
        root = self.settings.work_dir
        if root:
            os.makedirs(root, exist_ok=True)
        working_dir = tempfile.mkdtemp(prefix=f"k6-test-{session_id}-{stamp}-", dir=root)
        try:
            with open(os.path.join(working_dir, COMPOSE_FILENAME), "w", encoding="utf-8") as f:
                f.write(content)
        except OSError:
            shutil.rmtree(working_dir, ignore_errors=True)
            raise
        return working_dir

    def _compose(self, handle: RuntimeHandle, *args: str) -> list[str]:
        return [
            self.settings.docker_binary,
            "compose",
            "-f",
            handle.compose_path,
            "-p",
            handle.project_name,
            *args,
        ]

    async def bring_up(self, handle: RuntimeHandle) -> None:
        """Start the project detached.

        Raises:
            ContainerStartError: ``compose up`` failed, with its output attached
        """
        start = time.perf_counter()
        self.logger.info(f"Starting containers for project {handle.project_name}")
        result = await self.run_command(self._compose(handle, "up", "-d"), cwd=handle.working_dir)
        duration = time.perf_counter() - start
        if not result.ok:
            self.logger.error(
                f"Failed to start containers for project {handle.project_name} "
                f"after {duration:.2f}s: {result.error_message}"
            )
            raise ContainerStartError(
                f"Failed to start containers: {result.error_message}",
                output=result.output,
            )
        self.logger.info(f"Containers started for project {handle.project_name} in {duration:.2f}s")

    async def tear_down(self, handle: RuntimeHandle) -> None:
        """Stop the project and remove its volumes. Never raises."""
        start = time.perf_counter()
        self.logger.info(f"Stopping containers for project {handle.project_name}")
        try:
            result = await self.run_command(
                self._compose(handle, "down", "-v"), cwd=handle.working_dir
            )
        except Exception as e:
            message = f"{handle.project_name}: compose down raised {e}"
            self.logger.error(f"Cleanup failed: {message}")
            handle.cleanup_errors.append(message)
            return

        duration = time.perf_counter() - start
        if result.ok:
            self.logger.info(
                f"Containers stopped for project {handle.project_name} in {duration:.2f}s"
            )
            return

        message = f"{handle.project_name}: compose down failed: {result.error_message}"
        if result.output:
            message += f"\n{result.output.strip()}"
        self.logger.error(f"Cleanup failed: {message}")
        handle.cleanup_errors.append(message)

    def _remove_working_dir(self, handle: RuntimeHandle) -> None:
        try:
            shutil.rmtree(handle.working_dir)
        except OSError as e:
            message = f"{handle.project_name}: failed to remove {handle.working_dir}: {e}"
            self.logger.warning(message)
            handle.cleanup_errors.append(message)

    @asynccontextmanager
    async def running(
        self,
        content: str,
        session_id: int,
        prefix: str,
        settle_seconds: float,
    ) -> AsyncIterator[RuntimeHandle]:
        """Materialize, bring up and settle; always tear down afterwards.

        Teardown runs once per bring-up attempt, including a failed bring-up
        and task cancellation. Cleanup problems are collected on the handle
        and never mask the error that ended the block; a ``PerfTestError``
        leaving the block carries them in ``cleanup_errors``.
        """
        handle = await self.materialize(content, session_id, prefix)
        error: PerfTestError | None = None
        try:
            await self.bring_up(handle)
            if settle_seconds > 0:
                self.logger.debug(f"Waiting {settle_seconds}s for {handle.project_name} to settle")
                await self.sleep(settle_seconds)
            yield handle
        except PerfTestError as e:
            error = e
            raise
        finally:
            # Shielded so a second cancellation cannot interrupt compose down.
            await asyncio.shield(self.tear_down(handle))
            self._remove_working_dir(handle)
            if error is not None:
                error.cleanup_errors.extend(handle.cleanup_errors)
