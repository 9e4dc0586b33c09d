"""
False dependencies: `needs` edges with no artifact or output coupling.

An edge J -> K is coupled when K reads J's outputs/result, downloads an
artifact J uploads, downloads every artifact while J uploads one, or
(GitLab) lists J in `dependencies`. Edges into gated jobs (deployments,
environments, conditional jobs) are release gates and never flagged.

An uncoupled edge is still kept when it is the only thing ordering an
upstream producer before a job further down that downloads its artifact.
"""
from __future__ import annotations

import logging
import math
from enum import Enum
from typing import List, Optional

from ..dag import PipelineDag
from ..model import Job, Provider, StepKind
from .critical_path import finish_times
from .report import Category, Finding, FixAction, FixKind, Severity, can_rewrite

logger = logging.getLogger(__name__)

CONFIDENCE_KNOWN_PAIR = 0.85
CONFIDENCE_UNCOUPLED = 0.65

# serial test jobs above this are worth sharding
SHARD_THRESHOLD_SECS = 300.0
SHARD_TARGET_SECS = 120.0
MAX_SHARDS = 8


class JobType(Enum):
    LINT = "lint"
    TEST = "test"
    BUILD = "build"
    DEPLOY = "deploy"
    OTHER = "other"


# (dependency type, dependent type) pairs that never exchange data
_INDEPENDENT_PAIRS = {
    (JobType.LINT, JobType.TEST),
    (JobType.LINT, JobType.BUILD),
    (JobType.TEST, JobType.BUILD),
}


def classify_job(job: Job) -> JobType:
    names = f"{job.name} {job.display_name}".lower()
    text = job.step_text()
    kinds = {s.kind for s in job.steps}

    if any(w in names for w in ("lint", "format", "style")) or any(
        w in text for w in ("eslint", "clippy", "prettier", "ruff", "flake8")
    ):
        return JobType.LINT
    if "test" in names or any(w in text for w in ("pytest", "jest", "npm test", "cargo test", "go test")):
        return JobType.TEST
    if any(w in names for w in ("build", "compile")) or StepKind.BUILD in kinds:
        return JobType.BUILD
    if any(w in names for w in ("deploy", "release")) or StepKind.DEPLOY in kinds:
        return JobType.DEPLOY
    return JobType.OTHER


def artifact_coupled(dep: Job, dependent: Job, provider: Provider) -> bool:
    """True when `dependent` uses data produced by `dep`."""
    if dep.name in dependent.reads_outputs_of:
        return True
    if dep.name in dependent.skips_artifacts_of:
        return False
    if dep.name in dependent.consumes:
        return True

    uploaded = set(dep.produces)
    if provider == Provider.GITHUB:
        # job outputs travel through `needs.<job>.outputs`, not downloads
        uploaded.discard("outputs")
    if uploaded & dependent.consumes:
        return True
    return "*" in dependent.consumes and bool(uploaded)


def _implicit_edge_safe(dag: PipelineDag, dep: Job, dependent: Job) -> bool:
    """
    A stage-order edge is dropped by giving the job an explicit `needs:` of
    its other predecessors, which also stops artifact downloads from every
    other earlier-stage job. That is only safe when none of those jobs feed it.
    """
    keep = set(dag.predecessors(dependent.name)) - {dep.name}
    later = dag.descendants(dependent.name) | {dependent.name}
    for other in dag.jobs:
        if other.name in keep or other.name in later:
            continue
        if artifact_coupled(other, dependent, dag.provider):
            return False
    return True


def feeds(dag: PipelineDag, producer: str, consumer: str) -> bool:
    """True when `consumer` picks up data `producer` leaves behind."""
    if dag.provider == Provider.GITLAB and producer not in dag.predecessors(consumer):
        # GitLab only hands over artifacts of direct needs or earlier stages
        return False
    return artifact_coupled(dag.job(producer), dag.job(consumer), dag.provider)


def keeps_producers(dag: PipelineDag, dep_name: str, dependent_name: str) -> bool:
    """
    Dropping dep -> dependent must not let any consumer at or below
    `dependent` start before a job whose artifact it downloads. Producers
    reached through another path are still ordered first.
    """
    upstream = dag.ancestors(dep_name) | {dep_name}
    edge = (dep_name, dependent_name)
    for consumer in dag.descendants(dependent_name) | {dependent_name}:
        remaining = None
        for producer in sorted(upstream):
            if not feeds(dag, producer, consumer):
                continue
            if remaining is None:
                remaining = dag.ancestors(consumer, skip_edge=edge)
            if producer not in remaining:
                logger.debug("%s -> %s keeps %s ahead of %s", dep_name, dependent_name, producer, consumer)
                return False
    return True


def false_dependency(dag: PipelineDag, dep_name: str, dependent_name: str) -> bool:
    """True when the edge dep -> dependent can be dropped without losing data or a gate."""
    dep, dependent = dag.job(dep_name), dag.job(dependent_name)
    if dependent.is_gated:
        return False
    if artifact_coupled(dep, dependent, dag.provider):
        return False
    stage_ordered = dag.provider == Provider.GITLAB and not dependent.explicit_needs
    if stage_ordered and not _implicit_edge_safe(dag, dep, dependent):
        return False
    return keeps_producers(dag, dep_name, dependent_name)


_DEPENDENCY_KEYS = {
    Provider.GITHUB: "needs",
    Provider.GITLAB: "needs",
    Provider.CIRCLECI: "requires",
    Provider.AZURE: "dependsOn",
}


def removal_rewritable(dag: PipelineDag, dep_name: str, dependent_name: str) -> bool:
    """True when the config writer can drop this one edge."""
    if not can_rewrite(dag.provider, FixKind.REMOVE_NEEDS):
        return False
    if dag.provider == Provider.AZURE:
        # stage ordering is shared by every job in the stage
        return dag.job(dep_name).stage == dag.job(dependent_name).stage
    return True


def _removal_hint(dag: PipelineDag, dep_name: str, dependent_name: str) -> str:
    key = _DEPENDENCY_KEYS.get(dag.provider)
    if key is None:
        return f"Move '{dep_name}' and '{dependent_name}' into one `parallel` block."
    if dag.provider == Provider.AZURE and dag.job(dep_name).stage != dag.job(dependent_name).stage:
        return (
            f"Let stage '{dag.job(dependent_name).stage}' stop depending on "
            f"'{dag.job(dep_name).stage}' (`dependsOn`), or move '{dependent_name}' to an earlier stage."
        )
    return f"Remove '{dep_name}' from the `{key}` of '{dependent_name}'."


def _severity(savings: float) -> Severity:
    if savings >= 120:
        return Severity.HIGH
    if savings >= 30:
        return Severity.MEDIUM
    return Severity.LOW


def find_parallelization_opportunities(dag: PipelineDag) -> List[Finding]:
    findings: List[Finding] = []
    durations = dag.durations()
    finish = finish_times(dag, durations)

    for dep_name, dependent_name in dag.edges():
        if not false_dependency(dag, dep_name, dependent_name):
            continue
        dep, dependent = dag.job(dep_name), dag.job(dependent_name)

        start = finish[dependent_name] - durations[dependent_name]
        relaxed = finish_times(dag, durations, skip_edge=(dep_name, dependent_name))
        savings = start - (relaxed[dependent_name] - durations[dependent_name])

        pair = (classify_job(dep), classify_job(dependent))
        confidence = CONFIDENCE_KNOWN_PAIR if pair in _INDEPENDENT_PAIRS else CONFIDENCE_UNCOUPLED
        logger.debug("False dependency %s -> %s saves %.0fs", dep_name, dependent_name, savings)
        fixable = removal_rewritable(dag, dep_name, dependent_name)

        findings.append(Finding(
            severity=_severity(savings),
            category=Category.PARALLELIZATION,
            rule="false-dependency",
            title=f"'{dependent_name}' depends on '{dep_name}' unnecessarily",
            description=(
                f"Job '{dependent_name}' waits for '{dep_name}' but uses none of its "
                f"artifacts or outputs. The two jobs could run in parallel."
            ),
            affected_jobs=(dependent_name, dep_name),
            recommendation=_removal_hint(dag, dep_name, dependent_name),
            estimated_savings_secs=max(savings, 0.0),
            confidence=confidence,
            auto_fixable=fixable,
            fix=FixAction(FixKind.REMOVE_NEEDS, dependent_name, (("needs", dep_name),)) if fixable else None,
        ))

    for job in dag.jobs:
        finding = _shard_suggestion(job)
        if finding is not None:
            findings.append(finding)
    return findings


def _shard_suggestion(job: Job) -> Optional[Finding]:
    if job.matrix is not None or classify_job(job) != JobType.TEST:
        return None
    secs = job.estimated_duration
    if secs <= SHARD_THRESHOLD_SECS:
        return None
    shards = min(max(math.ceil(secs / SHARD_TARGET_SECS), 2), MAX_SHARDS)
    return Finding(
        severity=Severity.MEDIUM,
        category=Category.PARALLELIZATION,
        rule="test-sharding",
        title=f"'{job.name}' could be sharded into {shards} parallel jobs",
        description=(
            f"Test job '{job.name}' takes ~{secs:.0f}s and runs serially. Splitting it "
            f"into {shards} shards cuts its wall time."
        ),
        affected_jobs=(job.name,),
        recommendation=f"Add a matrix (or `parallel:`) to run the tests in {shards} shards.",
        estimated_savings_secs=secs - secs / shards,
        confidence=0.6,
    )
