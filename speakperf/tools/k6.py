"""k6 command building and JSON metric stream parsing.

k6 ``--out json=<file>`` writes one JSON object per line. Only ``Point``
lines of the HTTP metrics matter here:

    {"type": "Point", "metric": "http_req_duration",
     "data": {"value": 12.3, "tags": {"name": "http://host/path", ...}}}
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

from speakperf.errors import ValidationError
from speakperf.schemas import MetricSummary

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """k6 duration string (``"30s"``, ``"2m"``, ``"1h30m"``) -> seconds.

    A bare number is taken as seconds.
    """
    value = value.strip()
    if not value:
        raise ValidationError("Duration is empty")
    try:
        return float(value)
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position != len(value):
        raise ValidationError(f"Invalid duration: {value!r}")
    return total


def k6_run_command(
    binary: str,
    script_path: str,
    vus: int,
    duration: str,
    output_path: str,
) -> list[str]:
    return [
        binary,
        "run",
        "--vus",
        str(vus),
        "--duration",
        duration,
        "--out",
        f"json={output_path}",
        script_path,
    ]


@dataclass
class _EndpointAccumulator:
    durations: list[float] = field(default_factory=list)
    failures: list[float] = field(default_factory=list)
    requests: int = 0


def endpoint_of(tags: dict) -> str | None:
    """URL path of the request a point belongs to."""
    target = tags.get("name") or tags.get("url")
    if not target:
        return None
    path = urlsplit(str(target)).path
    return path or "/"


def parse_k6_json(path: str | Path, duration_seconds: float) -> list[MetricSummary]:
    """Aggregate a k6 JSON stream into one MetricSummary per endpoint.

    Args:
        path: File written by ``--out json=``
        duration_seconds: Run duration used for requests per second

    Returns:
        Summaries ordered by first appearance of the endpoint; empty if the
        file does not exist
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"k6 output file not found: {path}")
        return []

    endpoints: dict[str, _EndpointAccumulator] = {}
    with path.open(encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                point = json.loads(line)
            except ValueError:
                logger.debug(f"Skipping malformed k6 output line: {line[:80]}")
                continue
            if not isinstance(point, dict) or point.get("type") != "Point":
                continue

            metric = point.get("metric")
            if metric not in ("http_req_duration", "http_req_failed", "http_reqs"):
                continue

            data = point.get("data")
            if not isinstance(data, dict):
                continue
            tags = data.get("tags")
            endpoint = endpoint_of(tags if isinstance(tags, dict) else {})
            if endpoint is None:
                continue
            try:
                value = float(data.get("value", 0))
            except (TypeError, ValueError):
                logger.debug(f"Skipping k6 point with non-numeric value: {line[:80]}")
                continue

            acc = endpoints.setdefault(endpoint, _EndpointAccumulator())
            if metric == "http_req_duration":
                acc.durations.append(value)
            elif metric == "http_req_failed":
                acc.failures.append(value)
            else:
                acc.requests += 1

    summaries = []
    for endpoint, acc in endpoints.items():
        summary = MetricSummary(endpoint=endpoint)
        if acc.durations:
            summary.avg_response_time = sum(acc.durations) / len(acc.durations)
            summary.min_response_time = min(acc.durations)
            summary.max_response_time = max(acc.durations)
        if acc.failures:
            summary.error_rate = sum(acc.failures) / len(acc.failures)
        if duration_seconds > 0:
            summary.requests_per_second = acc.requests / duration_seconds
        summaries.append(summary)
    return summaries
