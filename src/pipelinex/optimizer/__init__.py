"""
Optimizer: applies the auto-fixable findings to the pipeline document.

Fixes are applied one at a time, caching first, then dependency removal,
then waste fixes (job name breaks ties). Each fix edits a deep copy of the
current document through the provider's writer; the copy is dumped and
re-parsed with the original history calibration. A fix that lengthens the
critical path, or that the writer cannot express, is skipped and the
previous document is kept.
"""
from __future__ import annotations

import copy
import difflib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .. import yamlio
from ..analyzer.critical_path import longest_path
from ..analyzer.parallel_finder import artifact_coupled, false_dependency, feeds
from ..analyzer.report import Finding, FixAction, FixKind
from ..dag import PipelineDag
from ..errors import PipelineError
from ..model import Provider
from ..parser import parse
from . import azure, bitbucket, circleci, github, gitlab
from .common import FixNotApplicable

logger = logging.getLogger(__name__)

_WRITERS: Dict[Provider, Callable[[dict, FixAction, PipelineDag], str]] = {
    Provider.GITHUB: github.apply_fix,
    Provider.GITLAB: gitlab.apply_fix,
    Provider.CIRCLECI: circleci.apply_fix,
    Provider.AZURE: azure.apply_fix,
    Provider.BITBUCKET: bitbucket.apply_fix,
}

# float slack when comparing critical path durations
EPSILON = 1e-6


@dataclass(frozen=True)
class AppliedChange:
    fix: FixAction
    description: str
    duration_before: float
    duration_after: float

    @property
    def saved_secs(self) -> float:
        return self.duration_before - self.duration_after


@dataclass(frozen=True)
class SkippedFix:
    fix: FixAction
    reason: str


@dataclass(frozen=True)
class OptimizationResult:
    original: PipelineDag
    optimized: PipelineDag
    config_text: str
    diff: str
    applied: List[AppliedChange] = field(default_factory=list)
    skipped: List[SkippedFix] = field(default_factory=list)

    @property
    def original_duration_secs(self) -> float:
        return longest_path(self.original)[1]

    @property
    def optimized_duration_secs(self) -> float:
        return longest_path(self.optimized)[1]

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def planned_fixes(findings: Sequence[Finding]) -> List[FixAction]:
    """Distinct fixes of the auto-fixable findings, in application order."""
    fixes = {f.fix for f in findings if f.auto_fixable and f.fix is not None}
    return sorted(fixes, key=lambda fx: fx.sort_key())


def optimize(dag: PipelineDag, findings: Optional[Sequence[Finding]] = None) -> OptimizationResult:
    if findings is None:
        from ..analyzer import collect_findings
        findings = collect_findings(dag)

    writer = _WRITERS[dag.provider]
    document = copy.deepcopy(dag.document)
    current = dag
    applied: List[AppliedChange] = []
    skipped: List[SkippedFix] = []

    for fix in planned_fixes(findings):
        if fix.kind == FixKind.REMOVE_NEEDS:
            dep = fix.param("needs")
            # coupling is a property of the two jobs; no fix changes it
            assert not artifact_coupled(dag.job(dep), dag.job(fix.job), dag.provider), (
                f"refusing to drop artifact-coupled edge {dep} -> {fix.job}"
            )
            if dep not in current.predecessors(fix.job) or not false_dependency(current, dep, fix.job):
                skipped.append(SkippedFix(fix, "dependency is no longer removable"))
                continue

        candidate = copy.deepcopy(document)
        try:
            description = writer(candidate, fix, current)
        except FixNotApplicable as e:
            logger.debug("Skipping %s: %s", fix.render(), e)
            skipped.append(SkippedFix(fix, str(e)))
            continue

        text = yamlio.dump(candidate)
        try:
            rewritten = parse(
                text,
                dag.provider,
                dag.source_file,
                statistics=dag.statistics,
                calibration=dag.calibration,
                derived_from=dag,
            )
        except PipelineError as e:
            logger.warning("Fix %s produced an invalid pipeline, skipping: %s", fix.render(), e)
            skipped.append(SkippedFix(fix, f"rewritten pipeline does not parse: {e}"))
            continue

        before = longest_path(current)[1]
        after = longest_path(rewritten)[1]
        if after > before + EPSILON:
            logger.debug("Rolling back %s: critical path %.0fs -> %.0fs", fix.render(), before, after)
            skipped.append(SkippedFix(fix, "would lengthen the critical path"))
            continue

        document, current = candidate, rewritten
        applied.append(AppliedChange(fix, description, before, after))
        logger.info("Applied %s (%.0fs -> %.0fs)", fix.render(), before, after)

    _check_result(dag, current)

    if applied:
        config_text = _header(applied) + yamlio.dump(document)
    else:
        config_text = dag.source_text
    return OptimizationResult(
        original=dag,
        optimized=current,
        config_text=config_text,
        diff=unified_diff(dag.source_text, config_text, dag.source_file),
        applied=applied,
        skipped=skipped,
    )


def _check_result(original: PipelineDag, optimized: PipelineDag) -> None:
    assert set(optimized.job_names) == set(original.job_names), "optimizer changed the job set"
    assert len(optimized.topological_order()) == optimized.job_count, "optimized pipeline has a cycle"

    kept = set(optimized.edges())
    for dep, dependent in original.edges():
        if artifact_coupled(original.job(dep), original.job(dependent), original.provider):
            assert (dep, dependent) in kept, f"artifact-coupled edge {dep} -> {dependent} was removed"

    for consumer in original.job_names:
        still_before = optimized.ancestors(consumer)
        for producer in sorted(original.ancestors(consumer)):
            if feeds(original, producer, consumer):
                assert producer in still_before, (
                    f"{consumer} no longer waits for {producer}, whose artifact it downloads"
                )

    before = longest_path(original)[1]
    after = longest_path(optimized)[1]
    assert after <= before + EPSILON, f"optimized critical path {after:.0f}s exceeds original {before:.0f}s"


def _header(applied: Sequence[AppliedChange]) -> str:
    lines = [
        "# Optimized by pipelinex",
        f"# {len(applied)} change(s) applied:",
    ]
    lines.extend(f"#   - {change.description}" for change in applied)
    return "\n".join(lines) + "\n\n"


def unified_diff(before: str, after: str, source_file: str = "") -> str:
    name = Path(source_file).name if source_file else "pipeline.yml"
    return "".join(difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{name}",
        tofile=f"b/{name}",
    ))


__all__ = [
    "AppliedChange",
    "FixNotApplicable",
    "OptimizationResult",
    "SkippedFix",
    "optimize",
    "planned_fixes",
    "unified_diff",
]
