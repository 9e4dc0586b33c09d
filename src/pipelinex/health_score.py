"""
Pipeline health score: a 0-100 weighted composite mapped to a letter grade.

    duration         25%  optimized / current critical path
    success rate     30%  history success rate, 95% when unknown
    parallelization  20%  max parallelism / job count
    caching          15%  share of dependency-heavy steps behind a cache
    issues           10%  100 - 15/critical - 8/high - 3/medium
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from . import ecosystems, settings
from .analyzer.report import Finding, HealthScore, Severity
from .dag import PipelineDag


@dataclass(frozen=True)
class Weights:
    duration: float = 0.25
    success_rate: float = 0.30
    parallelization: float = 0.20
    caching: float = 0.15
    issues: float = 0.10


DEFAULT_WEIGHTS = Weights()

# the duration score when no optimized projection exists is relative to this
BASELINE_DURATION_SECS = 600.0

GRADES = ((90.0, "A"), (75.0, "B"), (60.0, "C"), (40.0, "D"))


def grade_for(score: float) -> str:
    for floor, grade in GRADES:
        if score >= floor:
            return grade
    return "F"


def caching_coverage(dag: PipelineDag) -> float:
    """Percent of dependency-heavy steps preceded by a matching cache (100 if none)."""
    heavy = 0
    covered = 0
    for job in dag.jobs:
        restored = []
        for step in job.steps:
            matches = ecosystems.match_step(step)
            if matches:
                heavy += 1
                if all(any(ecosystems.cache_covers(c, eco) for c in restored) for eco, _ in matches):
                    covered += 1
            if step.caches:
                restored.append(step)
    return 100.0 if heavy == 0 else covered / heavy * 100.0


def calculate(
    dag: PipelineDag,
    duration_secs: float,
    optimized_secs: Optional[float],
    findings: Sequence[Finding],
    weights: Weights = DEFAULT_WEIGHTS,
) -> HealthScore:
    if optimized_secs is not None and optimized_secs > 0:
        duration_score = min(optimized_secs / max(duration_secs, 1.0) * 100.0, 100.0)
    else:
        duration_score = min(BASELINE_DURATION_SECS / max(duration_secs, 1.0) * 100.0, 100.0)

    success_rate = settings.DEFAULT_SUCCESS_RATE
    if dag.statistics is not None and dag.statistics.total_runs > 0:
        success_rate = dag.statistics.success_rate
    success_rate_score = success_rate * 100.0

    parallelization_score = dag.max_parallelism() / max(dag.job_count, 1) * 100.0
    caching_score = caching_coverage(dag)

    critical = sum(1 for f in findings if f.severity == Severity.CRITICAL)
    high = sum(1 for f in findings if f.severity == Severity.HIGH)
    medium = sum(1 for f in findings if f.severity == Severity.MEDIUM)
    issue_score = max(100.0 - 15.0 * critical - 8.0 * high - 3.0 * medium, 0.0)

    total = (
        duration_score * weights.duration
        + success_rate_score * weights.success_rate
        + parallelization_score * weights.parallelization
        + caching_score * weights.caching
        + issue_score * weights.issues
    )

    return HealthScore(
        total_score=total,
        duration_score=duration_score,
        success_rate_score=success_rate_score,
        parallelization_score=parallelization_score,
        caching_score=caching_score,
        issue_score=issue_score,
        grade=grade_for(total),
        recommendations=tuple(_recommendations(
            duration_score, success_rate_score, parallelization_score,
            caching_score, issue_score, critical, high,
        )),
    )


def _recommendations(
    duration_score: float,
    success_rate_score: float,
    parallelization_score: float,
    caching_score: float,
    issue_score: float,
    critical: int,
    high: int,
) -> List[str]:
    out: List[str] = []
    if critical:
        out.append(f"Fix {critical} critical issue(s) first; they have the largest impact.")
    if success_rate_score < 90.0:
        out.append(f"Improve the success rate (currently {success_rate_score:.1f}%): investigate flaky jobs.")
    if high and not critical:
        out.append(f"Address {high} high-priority issue(s).")
    if duration_score < 60.0:
        out.append("Pipeline duration is well above what the optimized layout achieves.")
    if caching_score < 50.0:
        out.append("Cache dependencies to cut install and build times.")
    if parallelization_score < 50.0:
        out.append("Increase parallelization; many jobs could run concurrently.")
    if issue_score < 80.0 and not out:
        out.append("Run 'pipelinex optimize' to generate an improved configuration.")
    if not out:
        out.append("Pipeline is in good shape. Keep monitoring for regressions.")
    return out
