"""Rewrites a CircleCI config document in place, one FixAction at a time."""
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Tuple

from ..analyzer.cache_detector import uncached_installs
from ..analyzer.report import FixAction, FixKind
from ..dag import PipelineDag
from ..matrix import reduced_combinations
from ..model import Ecosystem
from ..parser.circleci import Instance, parse_step, workflow_instances
from .common import FixNotApplicable, job_config, raw_index

CACHE_VERSION = "v1"

# (lockfile the key hashes, saved paths)
_CACHES: Dict[Ecosystem, Tuple[str, List[str]]] = {
    Ecosystem.NPM: ("package-lock.json", ["~/.npm"]),
    Ecosystem.PIP: ("requirements.txt", ["~/.cache/pip"]),
    Ecosystem.CARGO: ("Cargo.lock", ["~/.cargo", "target"]),
    Ecosystem.GRADLE: ("build.gradle", ["~/.gradle/caches", "~/.m2"]),
}


def _instance(doc: Dict[str, Any], node: str) -> Instance:
    for instance in workflow_instances(doc):
        if instance.node == node:
            return instance
    raise FixNotApplicable(f"job '{node}' not found in any workflow")


def _definition(doc: Dict[str, Any], node: str) -> Dict[str, Any]:
    jobs = doc.get("jobs")
    if not isinstance(jobs, dict):
        raise FixNotApplicable("config has no jobs mapping")
    return job_config(jobs, _instance(doc, node).job_id)


def _steps(config: Dict[str, Any], node: str) -> List[Any]:
    steps = config.get("steps")
    if not isinstance(steps, list):
        raise FixNotApplicable(f"job '{node}' has no steps")
    return steps


def add_cache(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    eco = Ecosystem(fix.param("ecosystem"))
    if eco not in _CACHES:
        raise FixNotApplicable(f"no CircleCI cache layout for {eco.value}")
    target = next((step for e, step, _ in uncached_installs(dag.job(fix.job)) if e == eco), None)
    if target is None:
        raise FixNotApplicable(f"job '{fix.job}' already caches {eco.value}")

    steps = _steps(_definition(doc, fix.job), fix.job)
    position = raw_index(steps, parse_step, target)
    lockfile, paths = _CACHES[eco]
    prefix = f"{CACHE_VERSION}-{eco.value}-"
    key = prefix + '{{ checksum "' + lockfile + '" }}'
    steps.insert(position + 1, {"save_cache": {"key": key, "paths": list(paths)}})
    steps.insert(position, {"restore_cache": {"keys": [key, prefix]}})
    return f"Added {eco.value} restore_cache/save_cache to '{fix.job}'"


def remove_needs(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    dep = fix.param("needs")
    instance = _instance(doc, fix.job)
    requires = instance.params.get("requires")
    if not isinstance(requires, list):
        raise FixNotApplicable(f"'{fix.job}' has no requires list")

    def name_of(entry: Any) -> str:
        return str(next(iter(entry))) if isinstance(entry, dict) else str(entry)

    remaining = [e for e in requires if instance.requires.get(name_of(e), name_of(e)) != dep]
    if len(remaining) == len(requires):
        raise FixNotApplicable(f"'{fix.job}' does not require '{dep}'")
    if remaining:
        instance.params["requires"] = remaining
    else:
        del instance.params["requires"]
    return f"Removed '{dep}' from requires of '{fix.job}'"


def shallow_clone(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    steps = _steps(_definition(doc, fix.job), fix.job)
    for i, raw in enumerate(steps):
        if raw == "checkout":
            steps[i] = {"checkout": {"method": "blobless"}}
            return f"Switched checkout to a blobless clone in '{fix.job}'"
        if isinstance(raw, dict) and "checkout" in raw:
            if not isinstance(raw["checkout"], dict):
                raw["checkout"] = {}
            raw["checkout"]["method"] = "blobless"
            return f"Switched checkout to a blobless clone in '{fix.job}'"
    raise FixNotApplicable(f"job '{fix.job}' has no checkout step of its own")


def reduce_matrix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    job = dag.job(fix.job)
    if job.matrix is None or not job.matrix.is_plain or not job.matrix.variables:
        raise FixNotApplicable(f"job '{fix.job}' has no plain parameter matrix")
    matrix = _instance(doc, fix.job).params.get("matrix")
    if not isinstance(matrix, dict):
        raise FixNotApplicable(f"matrix of '{fix.job}' is not written on the workflow entry")

    axes = job.matrix.variables
    kept = reduced_combinations(axes)
    keys = list(axes)
    dropped = [
        combo for combo in (dict(zip(keys, values)) for values in itertools.product(*axes.values()))
        if combo not in kept
    ]
    if not dropped:
        raise FixNotApplicable(f"matrix of '{fix.job}' cannot be reduced")
    matrix["exclude"] = dropped
    return f"Excluded {len(dropped)} matrix combinations from '{fix.job}' ({len(kept)} remain)"


WRITERS = {
    FixKind.ADD_CACHE: add_cache,
    FixKind.REMOVE_NEEDS: remove_needs,
    FixKind.SHALLOW_CLONE: shallow_clone,
    FixKind.REDUCE_MATRIX: reduce_matrix,
}


def apply_fix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    writer = WRITERS.get(fix.kind)
    if writer is None:
        raise FixNotApplicable(f"{fix.kind.value} is not rewritten for CircleCI")
    return writer(doc, fix, dag)
