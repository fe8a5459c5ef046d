"""Compose source resolution and parsing.

- fetch_compose_content: URL (single GET) or local path
- content_hash: SHA256 digest used for deduplication
- parse_compose: YAML -> ComposeDocument, services in file order
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from pathlib import Path
from typing import Any

import httpx
import yaml

from speakperf.errors import FetchError, ValidationError
from speakperf.schemas import ComposeDocument, ComposeService

_URL_RE = re.compile(r"^https?://")


def is_url(source: str) -> bool:
    return bool(_URL_RE.match(source))


async def fetch_compose_content(source: str, http_client: httpx.AsyncClient) -> str:
    """Resolve a Compose source to its text.

    Args:
        source: ``http(s)://`` URL or local file path
        http_client: Shared client used for URL sources

    Returns:
        The Compose content

    Raises:
        FetchError: Non-2xx response, transport error or unreadable file
    """
    if is_url(source):
        try:
            response = await http_client.get(source)
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch compose file from {source}: {e}") from e
        if not response.is_success:
            raise FetchError(
                f"Failed to fetch compose file from {source}: HTTP {response.status_code}"
            )
        return response.text

    path = Path(source).expanduser()
    try:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise FetchError(f"Failed to read compose file {source}: {e}") from e


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def parse_compose(content: str) -> ComposeDocument:
    """Parse Compose YAML into a ComposeDocument.

    A document without a ``services`` key has zero services.

    Raises:
        ValidationError: Invalid YAML or unexpected document shape
    """
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid compose file: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("Invalid compose file: top level must be a mapping")

    services = raw.get("services") or {}
    if not isinstance(services, dict):
        raise ValidationError("Invalid compose file: 'services' must be a mapping")

    parsed = []
    for name, body in services.items():
        body = body or {}
        if not isinstance(body, dict):
            raise ValidationError(f"Invalid compose file: service '{name}' must be a mapping")
        parsed.append(
            ComposeService(
                name=str(name),
                image=str(body.get("image") or ""),
                ports=[_normalize_port(name, p) for p in body.get("ports") or []],
            )
        )
    return ComposeDocument(services=parsed)


def _normalize_port(service: str, entry: Any) -> str:
    if isinstance(entry, int):
        return str(entry)
    if isinstance(entry, str):
        return entry.strip()
    if isinstance(entry, dict):
        target = entry.get("target")
        if target is None:
            raise ValidationError(f"Invalid port for service '{service}': missing target")
        published = entry.get("published")
        if published is None:
            return str(target)
        return f"{published}:{target}"
    raise ValidationError(f"Invalid port for service '{service}': {entry!r}")


def host_port(mapping: str) -> str:
    """Host side of a port mapping.

    ``"8080"`` -> ``"8080"``, ``"8081:80"`` -> ``"8081"``,
    ``"127.0.0.1:9000:90/tcp"`` -> ``"9000"``.
    """
    mapping = mapping.split("/", 1)[0]
    segments = mapping.split(":")
    if len(segments) >= 3:
        return segments[-2]
    return segments[0]


def first_host_port(document: ComposeDocument, default: str = "8080") -> str:
    """Host port of the first service that publishes one."""
    for service in document.services:
        if service.ports:
            return host_port(service.ports[0])
    return default
