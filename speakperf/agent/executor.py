"""Test executor: runs generated k6 scripts against a fresh runtime.

A TestRun row is inserted before k6 starts, so an interrupted run is still
visible (without ``completed_at``) to later queries.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time

from speakperf.config import Settings
from speakperf.database.store import SessionStore
from speakperf.errors import ExecutionError, NotFoundError
from speakperf.schemas import ExecutionOutcome, TestType, ToolResult
from speakperf.tools.k6 import k6_run_command, parse_duration, parse_k6_json
from speakperf.tools.runtime import RuntimeHandle, RuntimeMaterializer
from speakperf.tools.sandbox import CommandRunner

SCRIPT_FILENAME = "test.js"


class TestExecutor:
    """Executes k6 scripts inside runtime brackets and records the results."""

    # Not a test class, despite the name.
    __test__ = False

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        runtime: RuntimeMaterializer,
        run_command: CommandRunner,
        logger: logging.Logger,
    ):
        self.settings = settings
        self.store = store
        self.runtime = runtime
        self.run_command = run_command
        self.logger = logger

    async def run(self, test_id: int, vus: int, duration: str) -> ExecutionOutcome:
        """Run a stored test against a freshly started runtime of its session.

        Args:
            test_id: GeneratedTest to run
            vus: Virtual users
            duration: k6 duration string

        Returns:
            ExecutionOutcome with the run id, raw k6 output and parsed samples

        Raises:
            NotFoundError: Unknown test, or its session has no compose content
            ContainerStartError: The runtime did not come up
            ExecutionError: k6 exited non-zero
        """
        parse_duration(duration)

        test = await self.store.get_test(test_id)
        if test is None:
            raise NotFoundError(f"Test {test_id} not found")

        content = await self.store.compose_content_for_session(test.session_id)
        if content is None:
            raise NotFoundError(f"No compose content for session {test.session_id}")

        async with self.runtime.running(
            content,
            test.session_id,
            "perftest",
            self.settings.execution_settle_seconds,
        ) as handle:
            outcome = await self.execute_recorded(
                handle,
                test_id=test.id,
                script=test.script,
                test_type=TestType(test.type),
                vus=vus,
                duration=duration,
            )
        outcome.cleanup_errors = list(handle.cleanup_errors)
        return outcome

    async def execute_recorded(
        self,
        handle: RuntimeHandle,
        test_id: int,
        script: str,
        test_type: TestType,
        vus: int,
        duration: str,
    ) -> ExecutionOutcome:
        """Run ``script`` in an already running runtime and persist the run.

        The run row stays incomplete if k6 fails.
        """
        run = await self.store.record_run(test_id, vus, duration)
        output_path = os.path.join(handle.working_dir, f"k6-results-{run.id}.json")
        env = {"K6_BROWSER_ENABLED": "true"} if test_type == TestType.BROWSER else None

        result = await self.run_script(
            handle,
            script,
            vus,
            duration,
            output_path=output_path,
            env=env,
        )

        samples = await asyncio.to_thread(parse_k6_json, output_path, parse_duration(duration))
        await self.store.complete_run(run.id, result.output)
        await self.store.record_metrics(run.id, samples)
        self.logger.info(f"Run {run.id} recorded {len(samples)} endpoint metric samples")

        return ExecutionOutcome(run_id=run.id, output=result.output, samples=samples)

    async def run_script(
        self,
        handle: RuntimeHandle,
        script: str,
        vus: int,
        duration: str,
        output_path: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ToolResult:
        """Write ``script`` into the runtime's directory and run k6 on it.

        Raises:
            ExecutionError: k6 exited non-zero or could not be started
        """
        script_path = os.path.join(handle.working_dir, SCRIPT_FILENAME)
        try:
            await asyncio.to_thread(_write_script, script_path, script)
        except OSError as e:
            raise ExecutionError(f"Failed to write k6 script: {e}") from e

        if output_path is not None:
            command = k6_run_command(self.settings.k6_binary, script_path, vus, duration, output_path)
        else:
            command = [
                self.settings.k6_binary,
                "run",
                "--vus",
                str(vus),
                "--duration",
                duration,
                script_path,
            ]

        start = time.perf_counter()
        self.logger.info(
            f"Starting k6 test execution for project {handle.project_name} "
            f"({vus} VUs, {duration})"
        )
        result = await self.run_command(command, cwd=handle.working_dir, env=env)
        elapsed = time.perf_counter() - start

        if not result.ok:
            self.logger.error(f"k6 test execution failed after {elapsed:.2f}s: {result.error_message}")
            raise ExecutionError(f"k6 test failed: {result.error_message}", output=result.output)

        self.logger.info(f"k6 test completed in {elapsed:.2f}s ({len(result.output)} bytes of output)")
        return result


def _write_script(path: str, script: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(script)
