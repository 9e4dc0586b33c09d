"""Missing dependency caches: install/compile steps with no matching cache restore before them."""
from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from .. import ecosystems
from ..dag import PipelineDag
from ..model import Ecosystem, Job, Provider, Step
from .report import Category, Finding, FixAction, FixKind, Severity

logger = logging.getLogger(__name__)

_RECOMMENDATIONS: Dict[Ecosystem, str] = {
    Ecosystem.NPM: "Cache node_modules keyed on the lockfile hash, or use setup-node's built-in cache.",
    Ecosystem.PIP: "Cache ~/.cache/pip keyed on the requirements file hash, or use setup-python's built-in cache.",
    Ecosystem.CARGO: "Cache ~/.cargo and target/, e.g. with Swatinem/rust-cache.",
    Ecosystem.GRADLE: "Cache ~/.gradle and ~/.m2 keyed on the build file hashes.",
    Ecosystem.DOCKER: "Enable layer caching (cache-from/cache-to or a layer cache action).",
}

# writers that can emit a cache for an ecosystem
_FIXABLE: Dict[Provider, frozenset] = {
    Provider.GITHUB: frozenset({Ecosystem.NPM, Ecosystem.PIP, Ecosystem.CARGO, Ecosystem.GRADLE, Ecosystem.DOCKER}),
    Provider.GITLAB: frozenset({Ecosystem.NPM, Ecosystem.PIP, Ecosystem.CARGO, Ecosystem.GRADLE}),
    Provider.CIRCLECI: frozenset({Ecosystem.NPM, Ecosystem.PIP, Ecosystem.CARGO, Ecosystem.GRADLE}),
    Provider.AZURE: frozenset({Ecosystem.NPM, Ecosystem.PIP, Ecosystem.CARGO, Ecosystem.GRADLE}),
    # predefined caches only: node, pip, gradle/maven, docker
    Provider.BITBUCKET: frozenset({Ecosystem.NPM, Ecosystem.PIP, Ecosystem.GRADLE, Ecosystem.DOCKER}),
}


def severity_for(savings_secs: float) -> Severity:
    if savings_secs >= 120:
        return Severity.CRITICAL
    if savings_secs >= 60:
        return Severity.HIGH
    if savings_secs >= 20:
        return Severity.MEDIUM
    if savings_secs > 0:
        return Severity.LOW
    return Severity.INFO


def uncached_installs(job: Job) -> List[Tuple[Ecosystem, Step, float]]:
    """
    (ecosystem, first uncached step, match confidence) for each ecosystem
    whose dependency work runs in `job` without a preceding cache restore.
    """
    restored: List[Step] = []
    seen: Dict[Ecosystem, Tuple[Ecosystem, Step, float]] = {}
    for step in job.steps:
        for eco, confidence in ecosystems.match_step(step):
            if eco in seen:
                continue
            if any(ecosystems.cache_covers(c, eco) for c in restored):
                continue
            seen[eco] = (eco, step, confidence)
        if step.caches:
            restored.append(step)
    return list(seen.values())


def detect_missing_caches(dag: PipelineDag) -> List[Finding]:
    findings: List[Finding] = []
    fixable = _FIXABLE.get(dag.provider, frozenset())

    for job in dag.jobs:
        for eco, step, confidence in uncached_installs(job):
            label = ecosystems.BY_ECOSYSTEM[eco].label
            savings = ecosystems.savings_for(eco)
            auto = eco in fixable
            command = step.text.strip().splitlines()[0] if step.text.strip() else step.name
            logger.debug("Job %s: uncached %s step %r", job.name, eco.value, step.name)
            findings.append(Finding(
                severity=severity_for(savings),
                category=Category.CACHING,
                rule="missing-cache",
                title=f"No dependency caching for {label}",
                description=(
                    f"Job '{job.name}' runs '{command}' without restoring a {label} cache, "
                    f"so dependencies are fetched or rebuilt from scratch on every run."
                ),
                affected_jobs=(job.name,),
                recommendation=_RECOMMENDATIONS[eco],
                estimated_savings_secs=savings,
                confidence=confidence,
                auto_fixable=auto,
                fix=FixAction(FixKind.ADD_CACHE, job.name, (("ecosystem", eco.value),)) if auto else None,
            ))
    return findings
