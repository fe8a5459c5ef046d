"""API discovery by probing well-known spec locations of a live runtime.

The engine only probes; bringing the runtime up and down is the caller's job.
"""

from __future__ import annotations

import json
import logging

import httpx

from speakperf.database.models import ServiceRecord
from speakperf.database.store import SessionStore
from speakperf.errors import StoreError
from speakperf.schemas import SpecRef
from speakperf.tools.compose import host_port

# Probed in this order for every service.
SPEC_PATHS = (
    "/swagger.json",
    "/openapi.json",
    "/api-docs",
    "/v2/api-docs",
    "/v3/api-docs",
    "/api/swagger.json",
    "/api/openapi.json",
    "/api/v3/openapi.json",
)


def split_paths(value: str) -> list[str]:
    """Comma-separated input -> stripped, non-empty entries."""
    return [p.strip() for p in value.split(",") if p.strip()]


def spec_version(body: str) -> str | None:
    """``openapi``/``swagger`` field of a JSON spec body, if any."""
    try:
        document = json.loads(body)
    except ValueError:
        return None
    if not isinstance(document, dict):
        return None
    version = document.get("openapi") or document.get("swagger")
    return str(version) if version is not None else None


class ApiDiscovery:
    """Finds API specifications for a session and records them."""

    def __init__(
        self,
        store: SessionStore,
        http_client: httpx.AsyncClient,
        logger: logging.Logger,
    ):
        self.store = store
        self.http_client = http_client
        self.logger = logger

    async def discover(
        self,
        session_id: int,
        explicit_paths: list[str] | None = None,
        auto_discover: bool = True,
        first_match_only: bool = False,
    ) -> list[SpecRef]:
        """Collect explicit paths and, optionally, probe every service.

        Services are walked in id order and paths in ``SPEC_PATHS`` order, so
        the result is deterministic for a given runtime.

        Args:
            session_id: Session whose services are probed
            explicit_paths: Spec URLs/paths accepted verbatim
            auto_discover: Whether to probe the services
            first_match_only: Stop probing a service after its first hit

        Returns:
            Specs in discovery order; ``spec_id`` is None where persisting failed
        """
        found: list[SpecRef] = []

        for path in explicit_paths or []:
            path = path.strip()
            if path:
                found.append(await self._persist(session_id, path))

        if not auto_discover:
            return found

        for service in await self.store.services_for_session(session_id):
            ports = service.port_list
            if not ports:
                continue
            base_url = f"http://localhost:{host_port(ports[0])}"
            found.extend(await self._probe_service(session_id, service, base_url, first_match_only))

        self.logger.info(f"Discovered {len(found)} API specifications for session {session_id}")
        return found

    async def _probe_service(
        self,
        session_id: int,
        service: ServiceRecord,
        base_url: str,
        first_match_only: bool,
    ) -> list[SpecRef]:
        found = []
        for path in SPEC_PATHS:
            url = base_url + path
            try:
                response = await self.http_client.get(url)
            except httpx.HTTPError as e:
                self.logger.debug(f"Probe {url} failed: {e}")
                continue

            if response.status_code != 200:
                continue

            self.logger.info(f"Found API spec for service {service.name} at {url}")
            body = response.text
            found.append(
                await self._persist(
                    session_id,
                    url,
                    service_id=service.id,
                    content=body,
                    version=spec_version(body),
                )
            )
            if first_match_only:
                break
        return found

    async def _persist(
        self,
        session_id: int,
        url: str,
        service_id: int | None = None,
        content: str | None = None,
        version: str | None = None,
    ) -> SpecRef:
        try:
            row = await self.store.record_spec(
                session_id,
                url,
                service_id=service_id,
                content=content,
                version=version,
            )
        except StoreError as e:
            self.logger.error(f"Failed to store spec {url}: {e.message}")
            return SpecRef(spec_id=None, url=url, service_id=service_id)
        return SpecRef(spec_id=row.id, url=url, service_id=service_id)
