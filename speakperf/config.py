"""Application settings using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server configuration loaded from ``MCP_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "speak-perf-mcp"
    app_version: str = "0.1.0"

    # ==========================================================================
    # Database
    # ==========================================================================
    database_url: str = Field(default="sqlite+aiosqlite:///./perf_test.db")
    database_echo: bool = False

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_dir: str = Field(default=str(Path.home() / ".speak-perf-mcp" / "logs"))

    # ==========================================================================
    # Sandbox (docker compose + k6)
    # ==========================================================================
    docker_binary: str = "docker"
    k6_binary: str = "k6"
    allowed_commands: list[str] = Field(default=["docker", "k6"])
    work_dir: str | None = Field(
        default=None,
        description="Root for per-operation working directories (system temp dir if unset)",
    )

    # ==========================================================================
    # Readiness (fixed settle delay after `compose up`)
    # ==========================================================================
    discovery_settle_seconds: float = 10.0
    execution_settle_seconds: float = 10.0
    automated_settle_seconds: float = 15.0
    quick_settle_seconds: float = 10.0

    # ==========================================================================
    # MCP
    # ==========================================================================
    transport: Literal["stdio", "sse", "streamable-http"] = "stdio"
    host: str = "127.0.0.1"
    port: int = 8000

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        # WARN is accepted as an alias.
        value = str(value).upper()
        return "WARNING" if value == "WARN" else value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
