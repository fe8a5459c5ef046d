"""k6 script templates for each kind of generated test.

Templates are ``str.format`` strings; literal JavaScript braces are doubled.
"""

from __future__ import annotations

# =============================================================================
# HTTP API Tests
# =============================================================================

API_TEST_SCRIPT = """import http from 'k6/http';
import {{ check, group }} from 'k6';

export const options = {{
  scenarios: {{
    {profile}_test: {{
      executor: '{executor}',
{scenario_options}
    }},
  }},
}};

// Generated from spec {spec_id} ({spec_url})
const BASE_URL = '{base_url}';
const endpoints = {endpoints};

export default function () {{
  endpoints.forEach(endpoint => {{
    group('Testing ' + endpoint, () => {{
      const res = http.get(BASE_URL + endpoint);
      check(res, {{
        'status is 200': (r) => r.status === 200,
      }});
    }});
  }});
}}
"""


# =============================================================================
# Automated Flow
# =============================================================================

LOAD_TEST_SCRIPT = """import http from 'k6/http';
import {{ check, group }} from 'k6';

export const options = {{
  vus: {vus},
  duration: '{duration}',
  thresholds: {{
    http_req_duration: ['p(95)<500'],
    http_req_failed: ['rate<0.1'],
  }},
}};

const BASE_URL = '{base_url}';
const endpoints = {endpoints};

export default function () {{
  endpoints.forEach(endpoint => {{
    group('Testing ' + endpoint, () => {{
      const res = http.get(BASE_URL + endpoint);
      check(res, {{
        'status is 200': (r) => r.status === 200,
        'response time < 500ms': (r) => r.timings.duration < 500,
      }});
    }});
  }});
}}
"""

HEALTH_CHECK_SCRIPT = """import http from 'k6/http';
import {{ check }} from 'k6';

export default function () {{
  const res = http.get('{base_url}/');
  check(res, {{ 'status ok': (r) => r.status < 400 }});
}}
"""


# =============================================================================
# Browser Tests
# =============================================================================

BROWSER_TEST_HEADER = """import {{ browser }} from 'k6/experimental/browser';
import {{ check }} from 'k6';

export const options = {{
  scenarios: {{
    browser: {{
      executor: 'shared-iterations',
      vus: 1,
      iterations: 1,
      options: {{
        browser: {{
          type: 'chromium',
        }},
      }},
    }},
  }},
}};

export default async function () {{
  const page = browser.newPage();

  try {{
    await page.goto('{url}');

"""

BROWSER_TEST_FOOTER = """  } finally {
    page.close();
  }
}
"""
