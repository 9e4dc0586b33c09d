"""
Waste rules. Each rule looks at one property of the pipeline and emits at
most one Finding per offending job (or one for the whole trigger set).
"""
from __future__ import annotations

from typing import Callable, List

from .. import durations, settings
from ..dag import PipelineDag
from ..model import Job, Provider, StepKind
from ..matrix import reduced_size
from .report import Category, Finding, FixAction, FixKind, Severity, can_rewrite

# events where superseded runs pile up
QUEUEING_EVENTS = ("push", "pull_request", "merge_request_event")

# commands that need more than the tip commit
_HISTORY_MARKERS = (
    "git log", "git describe", "git tag", "git rev-list", "git merge-base",
    "git blame", "changelog", "semantic-release", "setuptools_scm", "gitversion",
)

# an explicit clone setting, even a full one, is left alone
DEPTH_PARAMS = ("fetch-depth", "GIT_DEPTH", "fetchDepth", "depth", "method")

_PATH_FILTER_HINTS = {
    Provider.GITHUB: "Add `paths-ignore` (docs/**, *.md, .gitignore, LICENSE) to the push and pull_request triggers.",
    Provider.GITLAB: "Skip documentation-only changes with `rules: changes` on the workflow or jobs.",
    Provider.CIRCLECI: "Use the circleci/path-filtering orb to run workflows only for changed paths.",
    Provider.AZURE: "Add `paths: exclude` (docs/*, *.md) to the `trigger` and `pr` sections.",
    Provider.BITBUCKET: "Add `condition: changesets: includePaths` to steps that only matter for some paths.",
}

_SHALLOW_HINTS = {
    Provider.GITHUB: "Set `fetch-depth: 1` on actions/checkout",
    Provider.GITLAB: "Set `GIT_DEPTH: 1` in the job variables",
    Provider.CIRCLECI: "Use `checkout: {method: blobless}`",
    Provider.AZURE: "Set `fetchDepth: 1` on the checkout step",
    Provider.BITBUCKET: "Set `clone: depth:` to a small number",
}

# Bitbucket has no setting that cancels superseded runs
_CONCURRENCY_HINTS = {
    Provider.GITHUB: "Add a workflow `concurrency` group with `cancel-in-progress`",
    Provider.GITLAB: "Mark jobs `interruptible: true`",
    Provider.CIRCLECI: "Enable 'Auto-cancel redundant workflows' in the project settings",
    Provider.AZURE: "Set `batch: true` on the CI trigger so queued pushes are built together",
}


def _reads_git_history(job: Job) -> bool:
    text = job.step_text()
    return any(marker in text for marker in _HISTORY_MARKERS)


def missing_path_filter(dag: PipelineDag) -> List[Finding]:
    if dag.job_count <= 1 or dag.has_path_filter:
        return []
    if not any(t.event in QUEUEING_EVENTS for t in dag.triggers):
        return []
    fixable = can_rewrite(dag.provider, FixKind.ADD_PATH_FILTER)
    return [Finding(
        severity=Severity.MEDIUM,
        category=Category.WASTE,
        rule="missing-path-filter",
        title="No path-based filtering on triggers",
        description=(
            "The full pipeline runs on every push and pull request, including "
            "documentation-only changes."
        ),
        affected_jobs=tuple(dag.job_names),
        recommendation=_PATH_FILTER_HINTS[dag.provider],
        confidence=0.85,
        auto_fixable=fixable,
        fix=FixAction(FixKind.ADD_PATH_FILTER) if fixable else None,
    )]


def full_git_clone(dag: PipelineDag) -> List[Finding]:
    findings = []
    savings = durations.CHECKOUT_SECS - durations.SHALLOW_CHECKOUT_SECS
    fixable = can_rewrite(dag.provider, FixKind.SHALLOW_CLONE)
    for job in dag.jobs:
        checkout = next((s for s in job.steps if s.kind == StepKind.CHECKOUT), None)
        if checkout is None or checkout.shallow:
            continue
        if any(p in checkout.with_args for p in DEPTH_PARAMS) or _reads_git_history(job):
            continue
        findings.append(Finding(
            severity=Severity.LOW,
            category=Category.WASTE,
            rule="full-git-clone",
            title=f"Full git clone in job '{job.name}'",
            description=(
                f"Job '{job.name}' clones without a depth limit. Fetching full history "
                f"is slow on large repositories and the job never reads it."
            ),
            affected_jobs=(job.name,),
            recommendation=_SHALLOW_HINTS[dag.provider],
            estimated_savings_secs=savings,
            confidence=0.8,
            auto_fixable=fixable,
            fix=FixAction(FixKind.SHALLOW_CLONE, job.name) if fixable else None,
        ))
    return findings


def missing_concurrency(dag: PipelineDag) -> List[Finding]:
    if dag.concurrency is not None or dag.provider not in _CONCURRENCY_HINTS:
        return []
    if not any(t.event in QUEUEING_EVENTS for t in dag.triggers):
        return []
    if dag.jobs and all(j.concurrency for j in dag.jobs if not j.is_gated):
        return []
    fixable = can_rewrite(dag.provider, FixKind.ADD_CONCURRENCY)
    return [Finding(
        severity=Severity.LOW,
        category=Category.WASTE,
        rule="missing-concurrency",
        title="No concurrency control configured",
        description=(
            "Rapid pushes to the same ref queue additional runs instead of cancelling "
            "the superseded one, burning compute on stale commits."
        ),
        affected_jobs=tuple(dag.job_names),
        recommendation=_CONCURRENCY_HINTS[dag.provider],
        confidence=0.7,
        auto_fixable=fixable,
        fix=FixAction(FixKind.ADD_CONCURRENCY) if fixable else None,
    )]


def matrix_explosion(dag: PipelineDag) -> List[Finding]:
    findings = []
    threshold = settings.MATRIX_COMBINATION_THRESHOLD
    for job in dag.jobs:
        matrix = job.matrix
        if matrix is None or not matrix.variables or matrix.total_combinations <= threshold:
            continue
        total = matrix.total_combinations
        reduced = reduced_size(matrix.variables)
        fixable = matrix.is_plain and reduced < total and can_rewrite(dag.provider, FixKind.REDUCE_MATRIX)
        findings.append(Finding(
            severity=Severity.MEDIUM,
            category=Category.WASTE,
            rule="matrix-explosion",
            title=f"Large matrix in '{job.name}' ({total} combinations)",
            description=(
                f"Job '{job.name}' expands to {total} matrix jobs (threshold {threshold}). "
                f"{reduced} combinations still cover every value of every variable."
            ),
            affected_jobs=(job.name,),
            recommendation=(
                "Run the full set only on the primary platform and cover the remaining "
                "values once each."
            ),
            # compute time, not wall clock: matrix jobs run side by side
            estimated_savings_secs=job.estimated_duration * max(total - reduced, 0),
            confidence=0.75,
            auto_fixable=fixable,
            fix=FixAction(FixKind.REDUCE_MATRIX, job.name) if fixable else None,
        ))
    return findings


def redundant_installs(dag: PipelineDag) -> List[Finding]:
    installers = [j.name for j in dag.jobs if any(s.kind == StepKind.INSTALL for s in j.steps)]
    if len(installers) <= 2:
        return []
    return [Finding(
        severity=Severity.INFO,
        category=Category.WASTE,
        rule="redundant-installs",
        title=f"{len(installers)} jobs independently install dependencies",
        description=f"Jobs [{', '.join(installers)}] each install dependencies from scratch.",
        affected_jobs=tuple(installers),
        recommendation="Share one cache key across these jobs or install once and pass an artifact.",
        confidence=0.6,
    )]


RULES: List[Callable[[PipelineDag], List[Finding]]] = [
    missing_path_filter,
    full_git_clone,
    missing_concurrency,
    matrix_explosion,
    redundant_installs,
]


def detect_waste(dag: PipelineDag) -> List[Finding]:
    findings: List[Finding] = []
    for rule in RULES:
        findings.extend(rule(dag))
    return findings
