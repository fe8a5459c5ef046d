"""Sandbox execution for the external tools (docker compose, k6).

Runs commands as child processes:
- Allowlist of permitted binaries
- Combined stdout/stderr capture
- Optional timeout (none by default)
- Child killed when the calling task is cancelled
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Awaitable, Protocol, Sequence

from speakperf.schemas import ToolResult

logger = logging.getLogger(__name__)


class CommandRunner(Protocol):
    """Signature shared by ``run_command`` and the test doubles replacing it."""

    def __call__(
        self,
        parts: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Awaitable[ToolResult]: ...


async def run_command(
    parts: Sequence[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    allowed: Sequence[str] | None = None,
) -> ToolResult:
    """Run a command and capture its combined output.

    Args:
        parts: Command and arguments, not shell-interpreted
        cwd: Working directory
        env: Additional environment variables
        timeout: Command timeout in seconds, None for no deadline
        allowed: Permitted binary names, None to skip the allowlist check

    Returns:
        ToolResult with ``stdout`` (stdout and stderr interleaved),
        ``exit_code`` and ``command`` in ``data``
    """
    start = time.perf_counter()
    parts = list(parts)
    command = " ".join(parts)

    if not parts:
        return ToolResult(
            ok=False,
            error_code="EMPTY_COMMAND",
            error_message="Command is empty",
        )

    base_command = os.path.basename(parts[0])
    if allowed is not None and base_command not in allowed:
        return ToolResult(
            ok=False,
            error_code="COMMAND_NOT_ALLOWED",
            error_message=f"Command '{base_command}' is not in allowlist: {list(allowed)}",
        )

    if cwd is not None and not os.path.isdir(cwd):
        return ToolResult(
            ok=False,
            error_code="INVALID_CWD",
            error_message=f"Working directory does not exist: {cwd}",
        )

    run_env = os.environ.copy()
    if env:
        run_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            *parts,
            cwd=cwd,
            env=run_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError:
        return ToolResult(
            ok=False,
            error_code="COMMAND_NOT_FOUND",
            error_message=f"Executable not found: {parts[0]}",
            data={"stdout": "", "exit_code": None, "command": command},
        )
    except OSError as e:
        return ToolResult(
            ok=False,
            error_code="EXECUTION_ERROR",
            error_message=str(e),
            data={"stdout": "", "exit_code": None, "command": command},
            retryable=True,
        )

    try:
        raw, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        return ToolResult(
            ok=False,
            error_code="COMMAND_TIMEOUT",
            error_message=f"Command timed out after {timeout} seconds",
            data={"stdout": "", "exit_code": None, "command": command},
            retryable=True,
        )
    except asyncio.CancelledError:
        logger.warning(f"Cancelled while running: {command}")
        await _kill(process)
        raise

    stdout = raw.decode("utf-8", errors="replace") if raw else ""
    latency_ms = int((time.perf_counter() - start) * 1000)
    exit_code = process.returncode

    return ToolResult(
        ok=exit_code == 0,
        data={
            "stdout": stdout,
            "exit_code": exit_code,
            "command": command,
        },
        error_code="COMMAND_FAILED" if exit_code != 0 else None,
        error_message=f"Command exited with status {exit_code}" if exit_code != 0 else None,
        latency_ms=latency_ms,
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            return
    await process.wait()
