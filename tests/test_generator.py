"""Script generation: load profiles, UI keyword rules and fixed scripts."""

from __future__ import annotations

import pytest

from speakperf.agent.generator import (
    DEFAULT_ENDPOINTS,
    PROFILES,
    UI_ACTION_RULES,
    base_url_from_spec,
    generate_api_test,
    generate_health_script,
    generate_load_script,
    generate_ui_test,
    js_string,
    js_value,
    parse_endpoints,
    parse_ui_instructions,
    profile_for,
)
from speakperf.errors import ValidationError
from speakperf.schemas import LoadProfile

CLICK = "await page.locator('button').click();"
TYPE = "await page.locator('input').type('test data');"
WAIT = "await page.waitForTimeout(1000);"


def test_every_load_profile_has_an_execution_profile():
    assert set(PROFILES) == set(LoadProfile)


@pytest.mark.parametrize(
    "test_type, executor",
    [
        ("load", "constant-vus"),
        ("stress", "ramping-vus"),
        ("spike", "ramping-arrival-rate"),
        ("SPIKE", "ramping-arrival-rate"),
    ],
)
def test_profile_dispatch(test_type, executor):
    assert PROFILES[profile_for(test_type)].executor == executor


@pytest.mark.parametrize("test_type", ["browser", "soak", ""])
def test_unknown_test_type_is_rejected(test_type):
    with pytest.raises(ValidationError):
        profile_for(test_type)


def test_profile_shapes():
    assert PROFILES[LoadProfile.LOAD].options == {"vus": 10, "duration": "30s"}
    stress = PROFILES[LoadProfile.STRESS].options["stages"]
    assert [(s["duration"], s["target"]) for s in stress] == [("2m", 100), ("5m", 100), ("2m", 0)]
    spike = PROFILES[LoadProfile.SPIKE].options
    assert spike["startRate"] == 10
    assert spike["timeUnit"] == "1s"
    assert [(s["duration"], s["target"]) for s in spike["stages"]] == [("30s", 10), ("10s", 100), ("30s", 10)]


def test_api_test_uses_spec_host_and_endpoints():
    script = generate_api_test(3, "http://localhost:8081/openapi.json", ["/pets", "/users"], LoadProfile.STRESS)

    assert "stress_test: {" in script
    assert "executor: 'ramping-vus'," in script
    assert "{ duration: '5m', target: 100 }," in script
    assert "const BASE_URL = 'http://localhost:8081';" in script
    assert "const endpoints = ['/pets', '/users'];" in script
    assert "Generated from spec 3" in script


def test_api_test_defaults():
    script = generate_api_test(1, "/swagger.json", [], LoadProfile.LOAD)

    assert "const BASE_URL = 'http://localhost:8080';" in script
    assert "const endpoints = ['/'];" in script
    assert "vus: 10," in script
    assert "duration: '30s'," in script


def test_base_url_from_spec():
    assert base_url_from_spec("https://api.example.com:8443/v3/openapi.json") == "https://api.example.com:8443"
    assert base_url_from_spec("openapi.json") == "http://localhost:8080"


def test_ui_actions_follow_rule_order_not_text_order():
    actions = parse_ui_instructions("Wait a second, then type the name and click the Submit BUTTON")

    assert actions == [CLICK, TYPE, WAIT]
    assert [rule.action for rule in UI_ACTION_RULES] == [CLICK, TYPE, WAIT]


@pytest.mark.parametrize(
    "instructions, expected",
    [
        ("click the link", []),
        ("press enter", [TYPE]),
        ("scroll down", []),
        ("wait", [WAIT]),
    ],
)
def test_ui_keyword_rules(instructions, expected):
    assert parse_ui_instructions(instructions) == expected


def test_ui_test_navigates_then_acts():
    script = generate_ui_test("http://localhost:3000/login", "click the button")

    assert "import { browser } from 'k6/experimental/browser';" in script
    assert "type: 'chromium'," in script
    assert script.index("await page.goto('http://localhost:3000/login');") < script.index(CLICK)
    assert script.rstrip().endswith("page.close();\n  }\n}")


def test_ui_test_without_matches_only_navigates():
    script = generate_ui_test("http://localhost:3000", "admire the colors")

    assert "await page.goto('http://localhost:3000');" in script
    assert "page.locator" not in script
    assert "waitForTimeout" not in script


def test_load_script_thresholds():
    script = generate_load_script("http://localhost:8080", list(DEFAULT_ENDPOINTS), 50, "2m")

    assert "vus: 50," in script
    assert "duration: '2m'," in script
    assert "http_req_duration: ['p(95)<500']," in script
    assert "http_req_failed: ['rate<0.1']," in script
    assert "const endpoints = ['/', '/api/health', '/api/v3/pet'];" in script


def test_health_script():
    script = generate_health_script("http://localhost:8082")

    assert "http.get('http://localhost:8082/');" in script
    assert "'status ok': (r) => r.status < 400" in script


def test_parse_endpoints():
    assert parse_endpoints(" /a, /b ,,") == ["/a", "/b"]
    assert parse_endpoints("") == ["/"]
    assert parse_endpoints(None, default=DEFAULT_ENDPOINTS) == list(DEFAULT_ENDPOINTS)


def test_js_value_escapes_strings():
    assert js_value("it's") == "'it\\'s'"
    assert js_value({"a": [1, True]}) == "{ a: [1, true] }"


def test_js_string_escapes_quotes_backslashes_and_line_breaks():
    assert js_string("it's") == "'it\\'s'"
    assert js_string("a\\b") == "'a\\\\b'"
    assert js_string("one\r\ntwo") == "'one\\r\\ntwo'"
