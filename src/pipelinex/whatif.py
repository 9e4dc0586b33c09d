"""
What-if scenarios: apply hypothetical changes to a parsed pipeline and
compare critical path, finding count and compute cost before and after.

Changes are applied in order. Each one derives a new PipelineDag from the
previous one (`derived_from` points at the parsed original), so a change
that names an unknown job or would create a cycle is reported as a warning
and the scenario continues without it. The pipeline file is never touched.
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from . import durations, settings
from .analyzer import collect_findings
from .analyzer.critical_path import longest_path
from .cost import cost, pipeline_runner, rate_for_runner
from .dag import PipelineDag, build_dag
from .errors import PipelineError
from .model import Job, Step, StepKind
from .schemas import WhatIfOut

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SAVINGS_SECS = 120.0
# a cached job still checks out and starts up
MIN_CACHED_JOB_SECS = 10.0
# doubling cores speeds up parallel workloads by roughly 0.6x
RUNNER_SCALING_EXPONENT = 0.7


class ChangeKind(str, Enum):
    REMOVE_DEP = "remove-dep"
    ADD_DEP = "add-dep"
    ADD_CACHE = "add-cache"
    REMOVE_CACHE = "remove-cache"
    REMOVE_JOB = "remove-job"
    SET_DURATION = "set-duration"
    CHANGE_RUNNER = "change-runner"
    ADD_PATH_FILTER = "add-path-filter"


USAGE = {
    ChangeKind.REMOVE_DEP: "remove-dep <job>-><dependent>",
    ChangeKind.ADD_DEP: "add-dep <job>-><dependent>",
    ChangeKind.ADD_CACHE: "add-cache <job> [saved seconds]",
    ChangeKind.REMOVE_CACHE: "remove-cache <job>",
    ChangeKind.REMOVE_JOB: "remove-job <job>",
    ChangeKind.SET_DURATION: "set-duration <job> <seconds>",
    ChangeKind.CHANGE_RUNNER: "change-runner <job> <runner>",
    ChangeKind.ADD_PATH_FILTER: "add-path-filter",
}


class ChangeNotApplicable(Exception):
    """The change does not fit the pipeline; it is skipped with a warning."""


@dataclass(frozen=True)
class Change:
    """
    One hypothetical edit. For dependency changes `job` is the job waited
    on and `target` the dependent; for `change-runner` `target` is the new
    runner label.
    """
    kind: ChangeKind
    job: str = ""
    target: str = ""
    seconds: Optional[float] = None

    def render(self) -> str:
        if self.kind in (ChangeKind.REMOVE_DEP, ChangeKind.ADD_DEP):
            return f"{self.kind.value} {self.job}->{self.target}"
        parts = [self.kind.value]
        if self.job:
            parts.append(shlex.quote(self.job))
        if self.target:
            parts.append(shlex.quote(self.target))
        if self.seconds is not None:
            parts.append(f"{self.seconds:g}")
        return " ".join(parts)


def _seconds(value: str, usage: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a number of seconds (expected: {usage})") from None
    if seconds < 0:
        raise ValueError(f"seconds must not be negative (expected: {usage})")
    return seconds


def parse_change(text: str) -> Change:
    """
    Parse one change such as `remove-dep lint->test` or `add-cache build 90`.
    Job names with spaces are quoted: `set-duration "Unit tests" 300`.
    Raises ValueError with the expected form on bad input.
    """
    command, _, rest = text.strip().partition(" ")
    try:
        kind = ChangeKind(command)
    except ValueError:
        known = ", ".join(k.value for k in ChangeKind)
        raise ValueError(f"unknown change '{command}' (one of: {known})") from None
    usage = USAGE[kind]

    if kind in (ChangeKind.REMOVE_DEP, ChangeKind.ADD_DEP):
        ends = [e.strip().strip("\"'") for e in rest.split("->")]
        if len(ends) != 2 or not all(ends):
            raise ValueError(f"expected: {usage}")
        return Change(kind, ends[0], ends[1])

    args = shlex.split(rest)
    if kind == ChangeKind.ADD_PATH_FILTER:
        if args:
            raise ValueError(f"expected: {usage}")
        return Change(kind)
    if kind in (ChangeKind.REMOVE_CACHE, ChangeKind.REMOVE_JOB):
        if len(args) != 1:
            raise ValueError(f"expected: {usage}")
        return Change(kind, args[0])
    if kind == ChangeKind.ADD_CACHE:
        if len(args) not in (1, 2):
            raise ValueError(f"expected: {usage}")
        saved = _seconds(args[1], usage) if len(args) == 2 else DEFAULT_CACHE_SAVINGS_SECS
        return Change(kind, args[0], seconds=saved)
    if kind == ChangeKind.SET_DURATION:
        if len(args) != 2:
            raise ValueError(f"expected: {usage}")
        return Change(kind, args[0], seconds=_seconds(args[1], usage))
    # change-runner
    if len(args) != 2:
        raise ValueError(f"expected: {usage}")
    return Change(kind, args[0], args[1])


# ---------------------------------------------------------------------
# Applying changes
# ---------------------------------------------------------------------

def runner_tier(label: str) -> int:
    lowered = label.lower()
    if "xlarge" in lowered or "x-large" in lowered or "16-core" in lowered:
        return 4
    if "large" in lowered or "8-core" in lowered:
        return 3
    if "medium" in lowered or "4-core" in lowered:
        return 2
    return 1


def runner_speed_factor(old: str, new: str) -> float:
    """Duration multiplier for moving a job from runner `old` to `new`."""
    old_tier, new_tier = runner_tier(old), runner_tier(new)
    if old_tier == new_tier:
        return 1.0
    return (old_tier / new_tier) ** RUNNER_SCALING_EXPONENT


def _job(dag: PipelineDag, name: str) -> Job:
    if name not in dag:
        raise ChangeNotApplicable(f"job '{name}' not found")
    return dag.job(name)


def _with_duration(job: Job, seconds: float) -> Job:
    current = job.estimated_duration
    if current > 0:
        return durations.scale(job, seconds / current)
    return replace(job, steps=(Step(name="estimate", duration_secs=seconds),))


def _rebuild(dag: PipelineDag, jobs: Sequence[Job], origin: PipelineDag, has_path_filter: Optional[bool] = None) -> PipelineDag:
    return build_dag(
        jobs,
        name=dag.name,
        source_file=dag.source_file,
        provider=dag.provider,
        triggers=dag.triggers,
        concurrency=dag.concurrency,
        has_path_filter=dag.has_path_filter if has_path_filter is None else has_path_filter,
        document=dag.document,
        source_text=dag.source_text,
        statistics=dag.statistics,
        calibration=dag.calibration,
        derived_from=origin,
    )


def _replaced(dag: PipelineDag, job: Job) -> List[Job]:
    return [job if j.name == job.name else j for j in dag.jobs]


def remove_dep(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    _job(dag, change.job)
    dependent = _job(dag, change.target)
    if change.job not in dependent.needs:
        raise ChangeNotApplicable(f"'{change.target}' does not depend on '{change.job}'")
    updated = replace(dependent, needs=tuple(n for n in dependent.needs if n != change.job))
    return _rebuild(dag, _replaced(dag, updated), origin), f"Removed dependency {change.job} -> {change.target}"


def add_dep(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    _job(dag, change.job)
    dependent = _job(dag, change.target)
    if change.job in dependent.needs:
        raise ChangeNotApplicable(f"'{change.target}' already depends on '{change.job}'")
    updated = replace(dependent, needs=dependent.needs + (change.job,))
    # a cycle surfaces as CyclicDependencyError from build_dag
    return _rebuild(dag, _replaced(dag, updated), origin), f"Added dependency {change.job} -> {change.target}"


def add_cache(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    job = _job(dag, change.job)
    saved = DEFAULT_CACHE_SAVINGS_SECS if change.seconds is None else change.seconds
    before = job.estimated_duration
    after = max(before - saved, min(before, MIN_CACHED_JOB_SECS))
    updated = _with_duration(job, after)
    return (
        _rebuild(dag, _replaced(dag, updated), origin),
        f"Added cache to '{job.name}' (saves {before - after:.0f}s)",
    )


def remove_cache(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    """Drop the job's cache restores and re-estimate its steps cold."""
    job = _job(dag, change.job)
    restores = [s for s in job.steps if s.caches]
    if not restores:
        raise ChangeNotApplicable(f"job '{job.name}' restores no caches")

    steps = [
        durations.make_step(
            s.name, run=s.run, uses=s.uses, with_args=s.with_args, shallow=s.shallow, kind=s.kind,
        )
        for s in job.steps if s.kind != StepKind.CACHE
    ]
    cold = durations.scale(replace(job, steps=tuple(steps)), dag.calibration.get(job.name, 1.0))
    return (
        _rebuild(dag, _replaced(dag, cold), origin),
        f"Removed {len(restores)} cache restore(s) from '{job.name}' "
        f"({job.estimated_duration:.0f}s -> {cold.estimated_duration:.0f}s)",
    )


def remove_job(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    """Drop a job; its dependents inherit its dependencies."""
    removed = _job(dag, change.job)
    jobs = []
    for job in dag.jobs:
        if job.name == removed.name:
            continue
        if removed.name in job.needs:
            needs = [n for n in job.needs if n != removed.name] + list(removed.needs)
            job = replace(job, needs=tuple(dict.fromkeys(needs)))
        jobs.append(job)
    return _rebuild(dag, jobs, origin), f"Removed job '{removed.name}'"


def set_duration(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    job = _job(dag, change.job)
    updated = _with_duration(job, change.seconds or 0.0)
    return (
        _rebuild(dag, _replaced(dag, updated), origin),
        f"Set '{job.name}' duration: {job.estimated_duration:.0f}s -> {updated.estimated_duration:.0f}s",
    )


def change_runner(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    job = _job(dag, change.job)
    factor = runner_speed_factor(job.runner, change.target)
    updated = replace(durations.scale(job, factor), runner=change.target)
    return (
        _rebuild(dag, _replaced(dag, updated), origin),
        f"Changed '{job.name}' runner: {job.runner} -> {change.target} (speed x{1 / factor:.2f})",
    )


def add_path_filter(dag: PipelineDag, change: Change, origin: PipelineDag) -> Tuple[PipelineDag, str]:
    if dag.has_path_filter:
        raise ChangeNotApplicable("pipeline already filters on paths")
    return _rebuild(dag, dag.jobs, origin, has_path_filter=True), "Added a path filter to the triggers"


APPLIERS: Dict[ChangeKind, Callable[[PipelineDag, Change, PipelineDag], Tuple[PipelineDag, str]]] = {
    ChangeKind.REMOVE_DEP: remove_dep,
    ChangeKind.ADD_DEP: add_dep,
    ChangeKind.ADD_CACHE: add_cache,
    ChangeKind.REMOVE_CACHE: remove_cache,
    ChangeKind.REMOVE_JOB: remove_job,
    ChangeKind.SET_DURATION: set_duration,
    ChangeKind.CHANGE_RUNNER: change_runner,
    ChangeKind.ADD_PATH_FILTER: add_path_filter,
}


# ---------------------------------------------------------------------
# Scenario
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class WhatIfResult:
    original: PipelineDag
    modified: PipelineDag
    original_critical_path: List[str]
    modified_critical_path: List[str]
    original_duration_secs: float
    modified_duration_secs: float
    original_findings_count: int
    modified_findings_count: int
    runs_per_month: int
    original_monthly_cost: float
    modified_monthly_cost: float
    applied: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def duration_delta_secs(self) -> float:
        return self.modified_duration_secs - self.original_duration_secs

    @property
    def improvement_pct(self) -> float:
        if self.original_duration_secs <= 0:
            return 0.0
        return -self.duration_delta_secs / self.original_duration_secs * 100.0

    def to_schema(self) -> WhatIfOut:
        return WhatIfOut(
            pipeline_name=self.original.name,
            original_duration_secs=self.original_duration_secs,
            modified_duration_secs=self.modified_duration_secs,
            duration_delta_secs=self.duration_delta_secs,
            improvement_pct=round(self.improvement_pct, 2),
            original_critical_path=self.original_critical_path,
            modified_critical_path=self.modified_critical_path,
            original_job_count=self.original.job_count,
            modified_job_count=self.modified.job_count,
            original_findings_count=self.original_findings_count,
            modified_findings_count=self.modified_findings_count,
            runs_per_month=self.runs_per_month,
            original_monthly_cost=round(self.original_monthly_cost, 2),
            modified_monthly_cost=round(self.modified_monthly_cost, 2),
            changes_applied=list(self.applied),
            warnings=list(self.warnings),
        )


def _monthly_cost(dag: PipelineDag, duration_secs: float, runs_per_month: int) -> float:
    return cost(duration_secs, runs_per_month, rate_for_runner(pipeline_runner(dag)))


def what_if(dag: PipelineDag, changes: Sequence[Change], runs_per_month: Optional[int] = None) -> WhatIfResult:
    runs = settings.RUNS_PER_MONTH if runs_per_month is None else runs_per_month
    current = dag
    applied: List[str] = []
    warnings: List[str] = []

    for change in changes:
        try:
            current, description = APPLIERS[change.kind](current, change, dag)
        except (ChangeNotApplicable, PipelineError) as e:
            logger.debug("Skipping %s: %s", change.render(), e)
            warnings.append(f"Skipped {change.render()}: {e}")
            continue
        logger.info("Applied %s", change.render())
        applied.append(description)

    before_path, before = longest_path(dag)
    after_path, after = longest_path(current)
    return WhatIfResult(
        original=dag,
        modified=current,
        original_critical_path=before_path,
        modified_critical_path=after_path,
        original_duration_secs=before,
        modified_duration_secs=after,
        original_findings_count=len(collect_findings(dag)),
        modified_findings_count=len(collect_findings(current)),
        runs_per_month=runs,
        original_monthly_cost=_monthly_cost(dag, before, runs),
        modified_monthly_cost=_monthly_cost(current, after, runs),
        applied=applied,
        warnings=warnings,
    )
