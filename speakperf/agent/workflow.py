"""Orchestration facade and the LangGraph workflow of the automated flow.

Automated flow graph:
START → setup → discover → generate → execute → finalize → END
          ↓         ↓          ↓          ↓          ↓
          └─────────┴──── fail (session marked failed) ──→ END

Discovery and execution each run inside their own runtime bracket; the
containers started for discovery are gone before the test runs.
"""

from __future__ import annotations

import asyncio
import json
import operator
import time
from datetime import datetime
from typing import Annotated, Any, Literal, TypedDict

from langgraph.graph import END, StateGraph

from speakperf.agent.analyzer import ResultsAnalyzer
from speakperf.agent.executor import TestExecutor
from speakperf.agent.generator import (
    DEFAULT_ENDPOINTS,
    generate_api_test,
    generate_health_script,
    generate_load_script,
    generate_ui_test,
    parse_endpoints,
    profile_for,
)
from speakperf.deps import Dependencies
from speakperf.errors import (
    NotFoundError,
    PerfTestError,
    StoreError,
    ValidationError,
    cleanup_section,
)
from speakperf.schemas import (
    ComposeDocument,
    SessionStatus,
    SpecRef,
    TestDepth,
    TestType,
)
from speakperf.tools.compose import fetch_compose_content, first_host_port, parse_compose
from speakperf.tools.discovery import ApiDiscovery, split_paths
from speakperf.tools.k6 import parse_duration
from speakperf.tools.runtime import RuntimeHandle, RuntimeMaterializer

NO_ENVIRONMENT = "No environment configured. Run setup_test_environment first."
NO_SESSION = "No active session. Run setup_test_environment first."


# =============================================================================
# State Definition
# =============================================================================

class ApplicationTestState(TypedDict, total=False):
    """State of one automated ``test_application`` run.

    Attributes:
        compose_source: URL or path of the Compose file
        depth: Test depth (VUs and duration)
        endpoints: Endpoints the load script hits
        content: Resolved Compose content
        document: Parsed Compose content
        session_id: Session created by the setup node
        specs: Specs found by discovery
        test_id: GeneratedTest of the load script
        script: The load script
        run_id: TestRun of the execution
        output: Raw k6 output
        report: Report sections, appended by every node
        cleanup_warnings: Teardown problems of every bracket
        error: Error that routed the run to ``fail``
    """

    compose_source: str
    depth: TestDepth
    endpoints: list[str]
    content: str
    document: ComposeDocument
    session_id: int | None
    specs: list[SpecRef]
    test_id: int
    script: str
    run_id: int
    output: str
    report: Annotated[list[str], operator.add]
    cleanup_warnings: Annotated[list[str], operator.add]
    error: PerfTestError | None


def _route(state: ApplicationTestState) -> Literal["continue", "fail"]:
    return "fail" if state.get("error") else "continue"


# =============================================================================
# Parameter parsing
# =============================================================================

def parse_id(value: Any, name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid {name}: {value!r}") from None


def parse_vus(value: Any) -> int:
    try:
        vus = int(float(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid vus: {value!r}") from None
    if vus < 1:
        raise ValidationError(f"vus must be at least 1, got {vus}")
    return vus


def parse_flag(value: Any) -> bool:
    """Boolean-as-string parameter; only ``"true"`` is true."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def parse_depth(value: str) -> TestDepth:
    try:
        return TestDepth(value.strip().lower())
    except ValueError:
        valid = ", ".join(d.value for d in TestDepth)
        raise ValidationError(f"Unknown test depth '{value}' (expected one of: {valid})") from None


# =============================================================================
# Orchestrator
# =============================================================================

class PerfTestOrchestrator:
    """One method per MCP operation, plus the resource readers."""

    def __init__(self, deps: Dependencies):
        self.deps = deps
        self.settings = deps.settings
        self.store = deps.store
        self.logger = deps.logger.getChild("orchestrator")
        self.runtime = RuntimeMaterializer(
            deps.settings,
            deps.run_command,
            deps.logger.getChild("runtime"),
            sleep=deps.sleep,
        )
        self.discovery = ApiDiscovery(deps.store, deps.http_client, deps.logger.getChild("discovery"))
        self.executor = TestExecutor(
            deps.settings,
            deps.store,
            self.runtime,
            deps.run_command,
            deps.logger.getChild("executor"),
        )
        self.analyzer = ResultsAnalyzer(deps.store, deps.logger.getChild("analyzer"))
        self.graph = self.build_workflow().compile()

    # =========================================================================
    # Shared steps
    # =========================================================================

    async def _load_compose(self, source: str) -> tuple[str, ComposeDocument]:
        content = await fetch_compose_content(source, self.deps.http_client)
        return content, parse_compose(content)

    async def _start_session(
        self,
        source: str,
        content: str,
        name: str,
        status: SessionStatus,
    ) -> int:
        compose = await self.store.store_compose_file(source, content)
        session = await self.store.create_session(compose.id, name, status)
        return session.id

    async def _record_services(self, session_id: int, document: ComposeDocument) -> int:
        stored = 0
        for service in document.services:
            try:
                await self.store.record_service(session_id, service.name, service.image, service.ports)
            except StoreError as e:
                self.logger.error(f"Failed to store service {service.name}: {e.message}")
                continue
            stored += 1
        return stored

    async def _mark_failed(self, session_id: int | None) -> None:
        if session_id is None:
            return
        try:
            await self.store.update_status(session_id, SessionStatus.FAILED)
        except PerfTestError as e:
            self.logger.error(f"Failed to mark session {session_id} as failed: {e.message}")

    # =========================================================================
    # Step-by-step operations
    # =========================================================================

    async def setup_test_environment(self, compose_path: str) -> str:
        """Resolve and record a Compose source as a new session."""
        content, document = await self._load_compose(compose_path)
        session_id = await self._start_session(
            compose_path,
            content,
            f"session-{int(time.time())}",
            SessionStatus.INITIALIZED,
        )
        stored = await self._record_services(session_id, document)
        self.logger.info(
            f"Session {session_id} configured with {stored}/{len(document.services)} services"
        )

        response = "Test environment configured:\n"
        response += f"- Session ID: {session_id}\n"
        response += f"- Source: {compose_path}\n"
        response += f"- Services: {len(document.services)}\n"
        for service in document.services:
            response += f"  • {service.name} ({service.image})\n"
        return response

    async def discover_api_specs(self, spec_paths: str = "", auto_discover: bool = True) -> str:
        """Discover specs of the latest session; containers only run while probing."""
        session = await self.store.latest_session()
        if session is None:
            raise NotFoundError(NO_ENVIRONMENT)

        explicit = split_paths(spec_paths)
        if auto_discover:
            content = await self.store.compose_content_for_session(session.id)
            if content is None:
                raise NotFoundError(f"No compose content for session {session.id}")
            async with self.runtime.running(
                content,
                session.id,
                "discover",
                self.settings.discovery_settle_seconds,
            ) as handle:
                specs = await self.discovery.discover(session.id, explicit, auto_discover=True)
        else:
            handle = None
            specs = await self.discovery.discover(session.id, explicit, auto_discover=False)

        result = f"Discovered {len(specs)} API specifications:\n"
        for i, spec in enumerate(specs, 1):
            spec_id = spec.spec_id if spec.spec_id is not None else "not stored"
            result += f"{i}. {spec.url} (spec ID: {spec_id})\n"
        if handle is not None:
            result += "\nContainers have been stopped."
            result += cleanup_section(handle.cleanup_errors)
        return result

    async def generate_api_tests(self, spec_id: str, endpoints: str = "", test_type: str = "load") -> str:
        profile = profile_for(test_type)
        spec = await self.store.get_spec(parse_id(spec_id, "specId"))
        if spec is None:
            raise NotFoundError(f"Spec {spec_id} not found")

        endpoint_list = parse_endpoints(endpoints)
        script = generate_api_test(spec.id, spec.spec_url, endpoint_list, profile)
        test = await self.store.record_test(
            spec.session_id,
            f"api-test-{datetime.now():%Y%m%d-%H%M%S}",
            TestType(profile.value),
            script,
        )
        for path in endpoint_list:
            try:
                await self.store.record_endpoint(spec.id, path, "GET")
            except StoreError as e:
                self.logger.error(f"Failed to store endpoint {path}: {e.message}")

        return (
            f"Generated {profile.value} test with ID: {test.id}\n\n"
            f"Script preview:\n{script[:200]}..."
        )

    async def create_ui_test(self, url: str, instructions: str, test_name: str = "ui-test") -> str:
        session = await self.store.latest_session()
        if session is None:
            raise NotFoundError(NO_SESSION)

        script = generate_ui_test(url, instructions)
        test = await self.store.record_test(session.id, test_name, TestType.BROWSER, script)
        return (
            f"Created UI test '{test_name}' with ID: {test.id}\n\n"
            f"Instructions parsed:\n{instructions}"
        )

    async def run_performance_test(self, test_id: str, vus: Any = 10, duration: str = "30s") -> str:
        outcome = await self.executor.run(parse_id(test_id, "testId"), parse_vus(vus), duration)
        text = (
            f"Test completed. Run ID: {outcome.run_id}\n\n"
            f"Containers have been stopped and removed.\n\n{outcome.output}"
        )
        return text + cleanup_section(outcome.cleanup_errors)

    async def analyze_results(self, run_id: str, compare_history: bool = False) -> str:
        report = await self.analyzer.analyze(parse_id(run_id, "runId"), compare_history)
        return report.to_markdown()

    async def query_test_history(self, endpoint: str = "", days: Any = 7) -> str:
        try:
            days = int(float(days))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid days: {days!r}") from None
        samples = await self.store.history(endpoint or None, days)
        return json.dumps([s.model_dump(mode="json", by_alias=True) for s in samples], indent=2)

    # =========================================================================
    # Quick flow
    # =========================================================================

    async def quick_performance_test(
        self,
        compose_source: str,
        vus: Any = 50,
        duration: str = "2m",
    ) -> str:
        """Fixed health-check load against the first published port.

        Nothing but the compose file and the session is persisted.
        """
        vus = parse_vus(vus)
        parse_duration(duration)

        report = "# Quick Performance Test\n\n"
        report += f"- Target: {compose_source}\n"
        report += f"- VUs: {vus}\n"
        report += f"- Duration: {duration}\n\n"

        content, document = await self._load_compose(compose_source)
        session_id = await self._start_session(
            compose_source,
            content,
            f"quick-{int(time.time())}",
            SessionStatus.RUNNING,
        )

        handle: RuntimeHandle | None = None
        try:
            async with self.runtime.running(
                content,
                session_id,
                "quick",
                self.settings.quick_settle_seconds,
            ) as handle:
                base_url = f"http://localhost:{first_host_port(document)}"
                result = await self.executor.run_script(
                    handle,
                    generate_health_script(base_url),
                    vus,
                    duration,
                )
            await self.store.update_status(session_id, SessionStatus.COMPLETED)
        except (Exception, asyncio.CancelledError):
            await self._mark_failed(session_id)
            raise

        report += "## Results\n```\n" + result.output + "\n```\n"
        return report + cleanup_section(handle.cleanup_errors)

    # =========================================================================
    # Automated flow
    # =========================================================================

    async def setup_node(self, state: ApplicationTestState) -> dict:
        """Resolve, validate and record the Compose source."""
        try:
            content, document = await self._load_compose(state["compose_source"])
            session_id = await self._start_session(
                state["compose_source"],
                content,
                f"auto-test-{int(time.time())}",
                SessionStatus.RUNNING,
            )
        except PerfTestError as e:
            return {"error": e}

        await self._record_services(session_id, document)
        self.logger.info(f"[session {session_id}] setup complete")
        return {
            "content": content,
            "document": document,
            "session_id": session_id,
            "report": [
                "## Step 1: Setting up environment\n"
                f"- Created session {session_id} with {len(document.services)} services\n"
            ],
        }

    async def discover_node(self, state: ApplicationTestState) -> dict:
        session_id = state["session_id"]
        try:
            async with self.runtime.running(
                state["content"],
                session_id,
                "auto",
                self.settings.automated_settle_seconds,
            ) as handle:
                specs = await self.discovery.discover(session_id, None, True, first_match_only=True)
        except PerfTestError as e:
            return {"error": e, "cleanup_warnings": list(e.cleanup_errors)}

        section = "\n## Step 2: Discovering APIs\n"
        if specs:
            section += "".join(f"- Found API spec: {s.url}\n" for s in specs)
        else:
            section += "- No API specifications found\n"
        return {"specs": specs, "report": [section], "cleanup_warnings": handle.cleanup_errors}

    async def generate_node(self, state: ApplicationTestState) -> dict:
        depth = state["depth"]
        port = first_host_port(state["document"])
        endpoints = state["endpoints"] or list(DEFAULT_ENDPOINTS)
        script = generate_load_script(f"http://localhost:{port}", endpoints, depth.vus, depth.duration)

        try:
            test = await self.store.record_test(state["session_id"], "auto-load-test", TestType.LOAD, script)
        except PerfTestError as e:
            return {"error": e}

        section = f"\n## Step 3: Running {depth.value} tests\n"
        if state["endpoints"]:
            section += f"- Testing specific endpoints: {', '.join(state['endpoints'])}\n"
        return {"test_id": test.id, "script": script, "report": [section]}

    async def execute_node(self, state: ApplicationTestState) -> dict:
        depth = state["depth"]
        try:
            async with self.runtime.running(
                state["content"],
                state["session_id"],
                "auto",
                self.settings.automated_settle_seconds,
            ) as handle:
                outcome = await self.executor.execute_recorded(
                    handle,
                    test_id=state["test_id"],
                    script=state["script"],
                    test_type=TestType.LOAD,
                    vus=depth.vus,
                    duration=depth.duration,
                )
        except PerfTestError as e:
            return {"error": e, "cleanup_warnings": list(e.cleanup_errors)}

        section = f"- Test completed with {depth.vus} VUs for {depth.duration}\n"
        section += f"- Run ID: {outcome.run_id}\n"
        section += "\n## Results Summary\n```\n" + outcome.output + "\n```\n"
        return {
            "run_id": outcome.run_id,
            "output": outcome.output,
            "report": [section],
            "cleanup_warnings": handle.cleanup_errors,
        }

    async def finalize_node(self, state: ApplicationTestState) -> dict:
        try:
            await self.store.update_status(state["session_id"], SessionStatus.COMPLETED)
        except PerfTestError as e:
            return {"error": e}
        return {"report": [f"\n- Session {state['session_id']} completed\n"]}

    async def fail_node(self, state: ApplicationTestState) -> dict:
        error = state["error"]
        self.logger.error(f"Automated test failed: {error.describe()}")
        await self._mark_failed(state.get("session_id"))
        return {"error": error}

    def build_workflow(self) -> StateGraph:
        """Build the LangGraph workflow of the automated flow."""
        workflow = StateGraph(ApplicationTestState)

        workflow.add_node("setup", self.setup_node)
        workflow.add_node("discover", self.discover_node)
        workflow.add_node("generate", self.generate_node)
        workflow.add_node("execute", self.execute_node)
        workflow.add_node("finalize", self.finalize_node)
        workflow.add_node("fail", self.fail_node)

        workflow.set_entry_point("setup")

        for node, next_node in (
            ("setup", "discover"),
            ("discover", "generate"),
            ("generate", "execute"),
            ("execute", "finalize"),
            ("finalize", END),
        ):
            workflow.add_conditional_edges(node, _route, {"continue": next_node, "fail": "fail"})

        workflow.add_edge("fail", END)
        return workflow

    async def test_application(
        self,
        compose_source: str,
        test_type: str = "standard",
        endpoints: str = "",
    ) -> str:
        """Run the automated flow and return its report.

        Raises:
            PerfTestError: Whatever error routed the run to ``fail``
        """
        depth = parse_depth(test_type)
        initial: ApplicationTestState = {
            "compose_source": compose_source,
            "depth": depth,
            "endpoints": parse_endpoints(endpoints, default=()),
            "session_id": None,
            "report": ["# Automated Application Testing\n\n"],
            "cleanup_warnings": [],
            "error": None,
        }

        state: dict = dict(initial)
        try:
            async for step_state in self.graph.astream(initial, stream_mode="values"):
                state = step_state
        except (Exception, asyncio.CancelledError):
            await self._mark_failed(state.get("session_id"))
            raise

        error = state.get("error")
        if error:
            # Teardown problems of every bracket of the run, not only the failing one.
            error.cleanup_errors = list(state.get("cleanup_warnings", []))
            raise error

        self.logger.info(f"Automated test of session {state['session_id']} completed")
        return "".join(state["report"]) + cleanup_section(state["cleanup_warnings"])

    # =========================================================================
    # Resources
    # =========================================================================

    async def schema_resource(self) -> str:
        return self.store.schema_description()

    async def sessions_resource(self) -> str:
        return json.dumps(await self.store.recent_sessions(), indent=2)

    async def compose_files_resource(self) -> str:
        return json.dumps(await self.store.recent_compose_files(), indent=2)

    async def test_runs_resource(self) -> str:
        return json.dumps(await self.store.recent_runs(), indent=2)
