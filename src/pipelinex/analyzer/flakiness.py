"""Flaky jobs, from run history. Emits nothing when no history is supplied."""
from __future__ import annotations

from typing import List

from ..dag import PipelineDag
from .report import Category, Finding, Severity

# jobs need this many recorded runs before a failure rate means anything
MIN_RUNS = 10
# a job that fails sometimes but not almost always
FLAKY_FAILURE_RATE = (0.05, 0.9)


def detect_flaky_jobs(dag: PipelineDag) -> List[Finding]:
    stats = dag.statistics
    if stats is None:
        return []

    findings: List[Finding] = []
    named = set(stats.flaky_jobs)
    low, high = FLAKY_FAILURE_RATE
    for job in dag.jobs:
        timing = stats.timing_for(job.name, job.display_name)
        runs = (timing.success_count + timing.failure_count) if timing else 0
        rate = timing.failure_rate if timing else 0.0

        listed = job.name in named or (job.display_name and job.display_name in named)
        measured = runs >= MIN_RUNS and low <= rate < high
        if not (listed or measured):
            continue

        # a failed run is retried, so it costs the job's duration again
        retry_cost = job.estimated_duration * rate if rate else None
        findings.append(Finding(
            severity=Severity.HIGH if rate >= 0.2 else Severity.MEDIUM,
            category=Category.FLAKINESS,
            rule="flaky-job",
            title=f"'{job.name}' is flaky",
            description=(
                f"Job '{job.name}' failed in {rate * 100:.1f}% of {runs} recorded runs "
                f"while also passing."
                if runs else f"Run history lists '{job.name}' as flaky."
            ),
            affected_jobs=(job.name,),
            recommendation="Quarantine or fix the unstable tests; retries hide the problem and double the cost.",
            estimated_savings_secs=retry_cost,
            confidence=0.9 if measured else 0.7,
        ))
    return findings
