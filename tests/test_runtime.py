"""Runtime materializer: unique names and the cleanup invariant."""

from __future__ import annotations

import asyncio
import os

import pytest

from speakperf.errors import ContainerStartError
from speakperf.tools import runtime
from speakperf.tools.runtime import COMPOSE_FILENAME, RuntimeMaterializer

CONTENT = "services:\n  web:\n    image: nginx\n"


@pytest.fixture
def materializer(settings, runner, logger, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RuntimeMaterializer(settings, runner, logger, sleep=fake_sleep)


@pytest.mark.asyncio
async def test_materialize_is_unique_per_operation(materializer):
    handles = [await materializer.materialize(CONTENT, 7, "discover") for _ in range(25)]

    assert len({h.project_name for h in handles}) == 25
    assert len({h.working_dir for h in handles}) == 25
    for handle in handles:
        assert handle.project_name.startswith("discover-7-")
        assert os.path.basename(handle.working_dir).startswith("k6-test-7-")
        assert handle.compose_path == os.path.join(handle.working_dir, COMPOSE_FILENAME)
        with open(handle.compose_path) as f:
            assert f.read() == CONTENT


@pytest.mark.asyncio
async def test_concurrent_brackets_use_distinct_projects(materializer, runner):
    seen = []

    async def one(session_id):
        async with materializer.running(CONTENT, session_id, "perftest", 0) as handle:
            seen.append(handle.project_name)
            await asyncio.sleep(0)

    await asyncio.gather(*(one(i % 3) for i in range(12)))

    assert len(set(seen)) == 12
    assert runner.count("up") == 12
    assert runner.count("down") == 12


@pytest.mark.asyncio
async def test_running_brings_up_settles_and_tears_down(materializer, runner, sleeps):
    async with materializer.running(CONTENT, 1, "discover", 10) as handle:
        assert os.path.isdir(handle.working_dir)
        assert runner.count("up") == 1
        assert runner.count("down") == 0

    up, down = runner.commands
    assert up == ["docker", "compose", "-f", handle.compose_path, "-p", handle.project_name, "up", "-d"]
    assert down == ["docker", "compose", "-f", handle.compose_path, "-p", handle.project_name, "down", "-v"]
    assert sleeps == [10]
    assert not os.path.exists(handle.working_dir)


@pytest.mark.asyncio
async def test_error_in_block_still_tears_down(materializer, runner):
    with pytest.raises(RuntimeError, match="boom"):
        async with materializer.running(CONTENT, 1, "auto", 0) as handle:
            raise RuntimeError("boom")

    assert runner.count("down") == 1
    assert not os.path.exists(handle.working_dir)


@pytest.mark.asyncio
async def test_failed_bring_up_tears_down_once(materializer, runner, settings):
    runner.fail["up"] = "Error: image not found"

    with pytest.raises(ContainerStartError) as exc_info:
        async with materializer.running(CONTENT, 1, "auto", 0):
            pytest.fail("block must not run")

    assert exc_info.value.output == "Error: image not found"
    assert "image not found" in exc_info.value.describe()
    assert runner.count("up") == 1
    assert runner.count("down") == 1
    assert os.listdir(settings.work_dir) == []


@pytest.mark.asyncio
async def test_cancellation_tears_down(materializer, runner, settings):
    entered = asyncio.Event()

    async def hold():
        async with materializer.running(CONTENT, 1, "perftest", 0):
            entered.set()
            await asyncio.Event().wait()

    task = asyncio.create_task(hold())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert runner.count("up") == 1
    assert runner.count("down") == 1
    assert os.listdir(settings.work_dir) == []


@pytest.mark.asyncio
async def test_teardown_failure_is_collected_not_raised(materializer, runner):
    runner.fail["down"] = "Error: network in use"

    async with materializer.running(CONTENT, 1, "quick", 0) as handle:
        pass

    assert len(handle.cleanup_errors) == 1
    assert "network in use" in handle.cleanup_errors[0]


@pytest.mark.asyncio
async def test_teardown_failure_does_not_mask_block_error(materializer, runner):
    runner.fail["down"] = "Error: network in use"

    with pytest.raises(ValueError):
        async with materializer.running(CONTENT, 1, "quick", 0) as handle:
            raise ValueError("primary")

    assert handle.cleanup_errors


@pytest.mark.asyncio
async def test_failed_bring_up_carries_teardown_failure(materializer, runner):
    runner.fail["up"] = "up boom"
    runner.fail["down"] = "volume busy"

    with pytest.raises(ContainerStartError) as exc_info:
        async with materializer.running(CONTENT, 1, "auto", 0):
            pytest.fail("block must not run")

    error = exc_info.value
    assert len(error.cleanup_errors) == 1
    assert "volume busy" in error.cleanup_errors[0]
    text = error.describe()
    assert text.startswith("[CONTAINER_START_FAILED]")
    assert "up boom" in text
    assert "## Cleanup warnings" in text


@pytest.mark.asyncio
async def test_unwritable_compose_file_leaves_no_directory(materializer, settings, monkeypatch):
    def refuse(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(runtime, "open", refuse, raising=False)

    with pytest.raises(ContainerStartError, match="disk full"):
        await materializer.materialize(CONTENT, 1, "discover")

    assert os.listdir(settings.work_dir) == []
