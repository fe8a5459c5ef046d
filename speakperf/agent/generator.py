"""k6 script generation.

- PROFILES: the single dispatch table from LoadProfile to a k6 executor
- generate_api_test: HTTP test of a spec's endpoints under a load profile
- generate_ui_test: browser test from keyword-matched instructions
- generate_load_script / generate_health_script: fixed scripts of the
  automated and quick flows
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable
from urllib.parse import urlsplit

from speakperf.agent.scripts import (
    API_TEST_SCRIPT,
    BROWSER_TEST_FOOTER,
    BROWSER_TEST_HEADER,
    HEALTH_CHECK_SCRIPT,
    LOAD_TEST_SCRIPT,
)
from speakperf.errors import ValidationError
from speakperf.schemas import LoadProfile

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_ENDPOINTS = ("/", "/api/health", "/api/v3/pet")


# =============================================================================
# Load Profiles
# =============================================================================

@dataclass(frozen=True)
class ExecutionProfile:
    """A k6 scenario executor and its options."""

    executor: str
    options: dict[str, Any] = field(default_factory=dict)


PROFILES: dict[LoadProfile, ExecutionProfile] = {
    LoadProfile.LOAD: ExecutionProfile(
        executor="constant-vus",
        options={"vus": 10, "duration": "30s"},
    ),
    LoadProfile.STRESS: ExecutionProfile(
        executor="ramping-vus",
        options={
            "stages": [
                {"duration": "2m", "target": 100},
                {"duration": "5m", "target": 100},
                {"duration": "2m", "target": 0},
            ],
        },
    ),
    LoadProfile.SPIKE: ExecutionProfile(
        executor="ramping-arrival-rate",
        options={
            "startRate": 10,
            "timeUnit": "1s",
            "preAllocatedVUs": 100,
            "stages": [
                {"duration": "30s", "target": 10},
                {"duration": "10s", "target": 100},
                {"duration": "30s", "target": 10},
            ],
        },
    ),
}


def profile_for(test_type: str) -> LoadProfile:
    """Map a ``testType`` parameter to its LoadProfile.

    Raises:
        ValidationError: Not one of load, stress, spike
    """
    try:
        return LoadProfile(test_type.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in LoadProfile)
        raise ValidationError(f"Unknown test type '{test_type}' (expected one of: {valid})") from None


# =============================================================================
# JavaScript rendering
# =============================================================================

def js_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'").replace("\n", "\\n").replace("\r", "\\r")
    return f"'{escaped}'"


def js_value(value: Any) -> str:
    """Render a Python value as a JavaScript literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return js_string(value)
    if isinstance(value, dict):
        return "{ " + ", ".join(f"{k}: {js_value(v)}" for k, v in value.items()) + " }"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(js_value(v) for v in value) + "]"
    raise TypeError(f"Cannot render {type(value).__name__} as JavaScript")


def _scenario_options(profile: ExecutionProfile, indent: str = "      ") -> str:
    lines = []
    for key, value in profile.options.items():
        if isinstance(value, list):
            lines.append(f"{indent}{key}: [")
            lines.extend(f"{indent}  {js_value(item)}," for item in value)
            lines.append(f"{indent}],")
        else:
            lines.append(f"{indent}{key}: {js_value(value)},")
    return "\n".join(lines)


# =============================================================================
# Endpoints
# =============================================================================

def parse_endpoints(value: str | None, default: Iterable[str] = ("/",)) -> list[str]:
    """Comma-separated endpoints, or ``default`` when none are given."""
    endpoints = [e.strip() for e in (value or "").split(",") if e.strip()]
    return endpoints or list(default)


def base_url_from_spec(spec_url: str) -> str:
    """scheme://host[:port] of an absolute spec URL, else the local default."""
    parts = urlsplit(spec_url)
    if parts.scheme in ("http", "https") and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    return DEFAULT_BASE_URL


# =============================================================================
# Generators
# =============================================================================

def generate_api_test(
    spec_id: int,
    spec_url: str,
    endpoints: list[str],
    profile: LoadProfile,
) -> str:
    """HTTP test hitting every endpoint under the given load profile."""
    execution = PROFILES[profile]
    return API_TEST_SCRIPT.format(
        profile=profile.value,
        executor=execution.executor,
        scenario_options=_scenario_options(execution),
        spec_id=spec_id,
        spec_url=spec_url.replace("\n", " "),
        base_url=base_url_from_spec(spec_url),
        endpoints=js_value(endpoints or ["/"]),
    )


def generate_load_script(base_url: str, endpoints: list[str], vus: int, duration: str) -> str:
    return LOAD_TEST_SCRIPT.format(
        vus=vus,
        duration=duration,
        base_url=base_url,
        endpoints=js_value(endpoints),
    )


def generate_health_script(base_url: str) -> str:
    return HEALTH_CHECK_SCRIPT.format(base_url=base_url)


# =============================================================================
# UI Instructions
# =============================================================================

@dataclass(frozen=True)
class UIActionRule:
    """Substring trigger -> fixed browser action.

    Matches when every ``all_of`` keyword and, if given, at least one
    ``any_of`` keyword occurs in the lowercased instructions.
    """

    action: str
    all_of: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if not all(k in text for k in self.all_of):
            return False
        return not self.any_of or any(k in text for k in self.any_of)


# Deliberately small and non-exhaustive. Actions come out in rule order,
# not in the order they appear in the instructions.
UI_ACTION_RULES: tuple[UIActionRule, ...] = (
    UIActionRule(action="await page.locator('button').click();", all_of=("click", "button")),
    UIActionRule(action="await page.locator('input').type('test data');", any_of=("type", "enter")),
    UIActionRule(action="await page.waitForTimeout(1000);", all_of=("wait",)),
)


def parse_ui_instructions(instructions: str) -> list[str]:
    text = instructions.lower()
    return [rule.action for rule in UI_ACTION_RULES if rule.matches(text)]


def generate_ui_test(url: str, instructions: str) -> str:
    """Browser test: navigate to ``url``, then run the matched actions."""
    script = BROWSER_TEST_HEADER.format(url=url.replace("\\", "\\\\").replace("'", "\\'"))
    for action in parse_ui_instructions(instructions):
        script += f"    {action}\n"
    script += BROWSER_TEST_FOOTER
    return script
