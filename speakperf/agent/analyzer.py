"""Results analyzer: SLA checks and comparison against historical runs."""

from __future__ import annotations

import logging

from speakperf.database.models import EndpointRecord, MetricSample
from speakperf.database.store import SessionStore
from speakperf.errors import NotFoundError
from speakperf.schemas import AnalysisReport, EndpointAnalysis


def evaluate_sample(
    sample: MetricSample,
    sla: EndpointRecord | None,
    historical_avg: float | None,
    compare_history: bool,
) -> EndpointAnalysis:
    """Verdict for one endpoint sample.

    A missing SLA row or a null threshold means that check is skipped. A
    missing or zero historical average is reported as no historical data.
    """
    analysis = EndpointAnalysis(
        endpoint=sample.endpoint,
        avg_response_time=sample.avg_response_time,
        error_rate=sample.error_rate,
        history_compared=compare_history,
    )

    if sla is not None:
        if sla.sla_response_time_ms is not None:
            analysis.sla_response_time_ms = sla.sla_response_time_ms
            analysis.response_time_violation = sample.avg_response_time > sla.sla_response_time_ms
        if sla.sla_error_rate is not None:
            analysis.sla_error_rate = sla.sla_error_rate
            analysis.error_rate_violation = sample.error_rate > sla.sla_error_rate

    if compare_history and historical_avg:
        analysis.historical_avg_response_time = historical_avg
        analysis.history_delta_percent = (
            (sample.avg_response_time - historical_avg) / historical_avg * 100
        )

    return analysis


class ResultsAnalyzer:
    def __init__(self, store: SessionStore, logger: logging.Logger):
        self.store = store
        self.logger = logger

    async def analyze(self, run_id: int, compare_history: bool = False) -> AnalysisReport:
        """Analyze every endpoint sample of a run.

        Raises:
            NotFoundError: Unknown run
        """
        run = await self.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")

        report = AnalysisReport(run_id=run_id, compare_history=compare_history)
        for sample in await self.store.metrics_for_run(run_id):
            sla = await self.store.endpoint_sla(sample.endpoint)
            historical_avg = None
            if compare_history:
                historical_avg = await self.store.historical_average(sample.endpoint, run_id)
            report.endpoints.append(evaluate_sample(sample, sla, historical_avg, compare_history))

        if report.has_violations:
            self.logger.warning(f"Run {run_id} has SLA violations")
        return report
