"""Typer entry point."""

from __future__ import annotations

import logging

import pytest
from typer.testing import CliRunner

from speakperf.cli import app
from speakperf.config import get_settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("MCP_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("MCP_LOG_DIR", str(tmp_path / "logs"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    logger = logging.getLogger("speakperf")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True


def test_init_db_creates_the_database(tmp_path):
    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0
    assert "Database ready" in result.output
    assert (tmp_path / "cli.db").exists()


def test_flow_errors_exit_non_zero(tmp_path):
    result = runner.invoke(app, ["quick-test", str(tmp_path / "missing.yml"), "--duration", "10s"])

    assert result.exit_code == 1
    assert "FETCH_FAILED" in result.output


def test_serve_rejects_unknown_transport():
    result = runner.invoke(app, ["serve", "--transport", "carrier-pigeon"])

    assert result.exit_code != 0
