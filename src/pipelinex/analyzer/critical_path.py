"""
Critical path: the longest duration-weighted chain of `needs` edges.

finish(J) = duration(J) + max(finish(P) for P in needs(J)), 0 for roots,
evaluated over a topological order. Ties between predecessors (and between
sinks) go to the lexicographically smaller job name so output is stable.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from ..dag import PipelineDag
from .report import Category, Finding, Severity

# a single job above this share of the critical path is called out
DOMINANT_JOB_PCT = 30.0
# flag when the critical path is this much longer than perfect packing
EFFICIENCY_SLACK = 1.5


def finish_times(
    dag: PipelineDag,
    durations: Optional[Dict[str, float]] = None,
    skip_edge: Optional[Tuple[str, str]] = None,
) -> Dict[str, float]:
    """
    Earliest finish time of every job. `skip_edge` = (dependency, dependent)
    evaluates the schedule as if that one `needs` edge were absent.
    """
    durations = durations if durations is not None else dag.durations()
    finish: Dict[str, float] = {}
    for name in dag.topological_order():
        start = 0.0
        for pred in dag.predecessors(name):
            if skip_edge is not None and (pred, name) == skip_edge:
                continue
            start = max(start, finish[pred])
        finish[name] = start + durations[name]
    return finish


def longest_path(
    dag: PipelineDag,
    durations: Optional[Dict[str, float]] = None,
) -> Tuple[List[str], float]:
    """Return (critical path job names in order, its duration)."""
    if dag.job_count == 0:
        return [], 0.0
    durations = durations if durations is not None else dag.durations()
    finish = finish_times(dag, durations)

    end = min(dag.sinks(), key=lambda n: (-finish[n], n))
    path = [end]
    current = end
    while True:
        preds = dag.predecessors(current)
        if not preds:
            break
        best = min(preds, key=lambda n: (-finish[n], n))
        path.append(best)
        current = best
    path.reverse()
    return path, finish[end]


def analyze_critical_path(dag: PipelineDag, path: List[str], duration: float) -> List[Finding]:
    findings: List[Finding] = []
    if not path or duration <= 0:
        return findings

    bottleneck = min(path, key=lambda n: (-dag.job(n).estimated_duration, n))
    own = dag.job(bottleneck).estimated_duration
    pct = own / duration * 100.0
    if pct > DOMINANT_JOB_PCT and len(path) > 1:
        findings.append(Finding(
            severity=Severity.HIGH,
            category=Category.PARALLELIZATION,
            rule="critical-path-bottleneck",
            title=f"'{bottleneck}' dominates the critical path ({pct:.1f}%)",
            description=(
                f"Job '{bottleneck}' takes {own:.0f}s ({pct:.1f}% of the {duration:.0f}s "
                f"critical path). It is the single biggest lever on pipeline time."
            ),
            affected_jobs=(bottleneck,),
            recommendation=(
                f"Shard '{bottleneck}' into parallel sub-jobs or speed up its slowest steps."
            ),
            estimated_savings_secs=own * 0.5,
            confidence=0.85,
        ))

    total_job_time = sum(j.estimated_duration for j in dag.jobs)
    parallelism = dag.max_parallelism()
    theoretical_min = total_job_time / parallelism if parallelism else duration
    if parallelism > 1 and duration > theoretical_min * EFFICIENCY_SLACK:
        findings.append(Finding(
            severity=Severity.MEDIUM,
            category=Category.PARALLELIZATION,
            rule="low-parallelism",
            title=f"Parallelism efficiency is {theoretical_min / duration * 100.0:.0f}%",
            description=(
                f"With {parallelism} parallel slots and {total_job_time:.0f}s of total job "
                f"time the theoretical minimum is {theoretical_min:.0f}s, but the critical "
                f"path is {duration:.0f}s."
            ),
            affected_jobs=tuple(path),
            recommendation="Review job dependencies; some may be unnecessary.",
            estimated_savings_secs=(duration - theoretical_min) * 0.3,
            confidence=0.7,
        ))
    return findings
