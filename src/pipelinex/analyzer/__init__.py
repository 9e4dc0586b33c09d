"""
Report builder: runs every analyzer over a PipelineDag and assembles the
AnalysisReport. Analyzers are pure functions of the DAG; they never raise
on a DAG that `build_dag` accepted.
"""
from __future__ import annotations

import logging
from typing import Callable, List

from ..dag import PipelineDag
from .cache_detector import detect_missing_caches
from .critical_path import analyze_critical_path, longest_path
from .flakiness import detect_flaky_jobs
from .parallel_finder import find_parallelization_opportunities
from .report import AnalysisReport, Finding, Severity, sort_findings
from .runner_cost import detect_runner_costs
from .waste_detector import detect_waste

logger = logging.getLogger(__name__)

ANALYZERS: List[Callable[[PipelineDag], List[Finding]]] = [
    detect_missing_caches,
    find_parallelization_opportunities,
    detect_waste,
    detect_runner_costs,
    detect_flaky_jobs,
]


def collect_findings(dag: PipelineDag) -> List[Finding]:
    """Every Finding for `dag`, highest severity first."""
    path, duration = longest_path(dag)
    findings: List[Finding] = []
    for analyzer in ANALYZERS:
        found = analyzer(dag)
        logger.debug("%s: %d finding(s)", analyzer.__name__, len(found))
        findings.extend(found)
    findings.extend(analyze_critical_path(dag, path, duration))
    return sort_findings(findings)


def analyze(dag: PipelineDag) -> AnalysisReport:
    from .. import health_score
    from ..optimizer import optimize

    path, duration = longest_path(dag)
    findings = collect_findings(dag)
    optimized = optimize(dag, findings).optimized_duration_secs

    return AnalysisReport(
        pipeline_name=dag.name,
        source_file=dag.source_file,
        provider=dag.provider.value,
        job_count=dag.job_count,
        step_count=dag.step_count,
        max_parallelism=dag.max_parallelism(),
        critical_path=tuple(path),
        critical_path_duration_secs=duration,
        total_estimated_duration_secs=duration,
        optimized_duration_secs=optimized,
        findings=tuple(findings),
        health_score=health_score.calculate(dag, duration, optimized, findings),
    )


__all__ = ["ANALYZERS", "AnalysisReport", "Finding", "Severity", "analyze", "collect_findings"]
