"""Rewrites a `bitbucket-pipelines.yml` document. Only dependency caches are added."""
from __future__ import annotations

from typing import Any, Dict

from ..analyzer.cache_detector import uncached_installs
from ..analyzer.report import FixAction, FixKind
from ..dag import PipelineDag
from ..model import Ecosystem
from ..parser.bitbucket import step_entries
from .common import FixNotApplicable

_PREDEFINED: Dict[Ecosystem, str] = {
    Ecosystem.NPM: "node",
    Ecosystem.PIP: "pip",
    Ecosystem.GRADLE: "gradle",
    Ecosystem.DOCKER: "docker",
}


def add_cache(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    eco = Ecosystem(fix.param("ecosystem"))
    if eco not in _PREDEFINED:
        raise FixNotApplicable(f"Bitbucket has no predefined cache for {eco.value}")
    target = next((step for e, step, _ in uncached_installs(dag.job(fix.job)) if e == eco), None)
    if target is None:
        raise FixNotApplicable(f"step '{fix.job}' already caches {eco.value}")

    entry = next((e for e in step_entries(doc) if e.node == fix.job), None)
    if entry is None:
        raise FixNotApplicable(f"step '{fix.job}' not found in document")
    caches = entry.config.get("caches")
    if caches is None:
        caches = []
        entry.config["caches"] = caches
    if not isinstance(caches, list):
        raise FixNotApplicable(f"'caches' of step '{fix.job}' is not a list")

    name = _PREDEFINED[eco]
    if eco == Ecosystem.GRADLE and "mvn" in target.text:
        name = "maven"
    caches.append(name)
    return f"Added the '{name}' cache to step '{fix.job}'"


WRITERS = {
    FixKind.ADD_CACHE: add_cache,
}


def apply_fix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    writer = WRITERS.get(fix.kind)
    if writer is None:
        raise FixNotApplicable(f"{fix.kind.value} is not rewritten for Bitbucket Pipelines")
    return writer(doc, fix, dag)
