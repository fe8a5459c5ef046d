"""Dependency bundle built once at process start and handed to every component."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from speakperf.config import Settings
from speakperf.database.session import Database
from speakperf.database.store import SessionStore
from speakperf.tools.sandbox import CommandRunner, run_command


@dataclass
class Dependencies:
    settings: Settings
    database: Database
    store: SessionStore
    logger: logging.Logger
    http_client: httpx.AsyncClient
    run_command: CommandRunner
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_settings(cls, settings: Settings, logger: logging.Logger | None = None) -> Dependencies:
        """Wire the production collaborators (SQL store, httpx, real subprocesses)."""
        logger = logger or logging.getLogger("speakperf")
        database = Database(settings.database_url, echo=settings.database_echo)
        return cls(
            settings=settings,
            database=database,
            store=SessionStore(database, logger.getChild("store")),
            logger=logger,
            http_client=httpx.AsyncClient(follow_redirects=True),
            run_command=functools.partial(run_command, allowed=settings.allowed_commands),
        )

    async def startup(self) -> None:
        """Open the store. Failing here is fatal for the server."""
        await self.database.init()
        self.logger.info(f"Database initialized at {self.settings.database_url}")

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.database.close()
