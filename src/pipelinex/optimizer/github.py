"""Rewrites a GitHub Actions workflow document in place, one FixAction at a time."""
from __future__ import annotations

import copy
from typing import Any, Dict, List

from ..analyzer.cache_detector import uncached_installs
from ..analyzer.report import FixAction, FixKind
from ..dag import PipelineDag
from ..matrix import reduced_combinations
from ..model import Ecosystem
from ..parser.common import as_list
from ..parser.github import CHECKOUT, action_name
from .common import FixNotApplicable, insert_after, job_config

PATHS_IGNORE = ["docs/**", "*.md", ".gitignore", "LICENSE"]

CONCURRENCY_GROUP = "${{ github.workflow }}-${{ github.ref }}"
# never cancel a run that may be deploying
CANCEL_PULL_REQUESTS_ONLY = "${{ github.event_name == 'pull_request' }}"

_CACHE_STEPS: Dict[Ecosystem, Dict[str, Any]] = {
    Ecosystem.NPM: {
        "name": "Cache node modules",
        "uses": "actions/cache@v4",
        "with": {
            "path": "~/.npm\nnode_modules\n",
            "key": "${{ runner.os }}-npm-${{ hashFiles('**/package-lock.json', '**/yarn.lock', '**/pnpm-lock.yaml') }}",
            "restore-keys": "${{ runner.os }}-npm-",
        },
    },
    Ecosystem.PIP: {
        "name": "Cache pip",
        "uses": "actions/cache@v4",
        "with": {
            "path": "~/.cache/pip",
            "key": "${{ runner.os }}-pip-${{ hashFiles('**/requirements*.txt', '**/pyproject.toml', '**/poetry.lock') }}",
            "restore-keys": "${{ runner.os }}-pip-",
        },
    },
    Ecosystem.CARGO: {
        "name": "Cache cargo",
        "uses": "Swatinem/rust-cache@v2",
    },
    Ecosystem.GRADLE: {
        "name": "Cache Gradle and Maven",
        "uses": "actions/cache@v4",
        "with": {
            "path": "~/.gradle/caches\n~/.gradle/wrapper\n~/.m2/repository\n",
            "key": "${{ runner.os }}-gradle-${{ hashFiles('**/*.gradle*', '**/gradle-wrapper.properties', '**/pom.xml') }}",
            "restore-keys": "${{ runner.os }}-gradle-",
        },
    },
    Ecosystem.DOCKER: {
        "name": "Cache Docker layers",
        "uses": "satackey/action-docker-layer-caching@v0.0.11",
        "continue-on-error": True,
    },
}


def _jobs(doc: Dict[str, Any]) -> Dict[str, Any]:
    jobs = doc.get("jobs")
    if not isinstance(jobs, dict):
        raise FixNotApplicable("workflow has no jobs mapping")
    return jobs


def _steps(config: Dict[str, Any], job: str) -> List[Any]:
    steps = config.get("steps")
    if not isinstance(steps, list):
        raise FixNotApplicable(f"job '{job}' has no steps")
    return steps


def add_cache(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    eco = Ecosystem(fix.param("ecosystem"))
    job = dag.job(fix.job)
    target = next((step for e, step, _ in uncached_installs(job) if e == eco), None)
    if target is None:
        raise FixNotApplicable(f"job '{fix.job}' already caches {eco.value}")

    position = next(i for i, s in enumerate(job.steps) if s is target)
    steps = _steps(job_config(_jobs(doc), fix.job), fix.job)
    steps.insert(position, copy.deepcopy(_CACHE_STEPS[eco]))
    return f"Added {eco.value} cache to '{fix.job}'"


def remove_needs(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    dep = fix.param("needs")
    config = job_config(_jobs(doc), fix.job)
    needs = as_list(config.get("needs"))
    if dep not in needs:
        raise FixNotApplicable(f"'{fix.job}' does not need '{dep}'")
    remaining = [n for n in needs if n != dep]
    if not remaining:
        del config["needs"]
    elif len(remaining) == 1 and isinstance(config["needs"], str):
        config["needs"] = remaining[0]
    else:
        config["needs"] = remaining
    return f"Removed '{dep}' from needs of '{fix.job}'"


def shallow_clone(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    steps = _steps(job_config(_jobs(doc), fix.job), fix.job)
    for step in steps:
        if isinstance(step, dict) and action_name(step.get("uses")) == CHECKOUT:
            with_args = step.get("with")
            if not isinstance(with_args, dict):
                with_args = {}
                step["with"] = with_args
            with_args["fetch-depth"] = 1
            return f"Set fetch-depth: 1 on checkout in '{fix.job}'"
    raise FixNotApplicable(f"job '{fix.job}' has no actions/checkout step")


def add_concurrency(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    if "concurrency" in doc:
        raise FixNotApplicable("workflow already declares concurrency")
    deploys = any(j.is_gated for j in dag.jobs)
    group = {
        "group": CONCURRENCY_GROUP,
        "cancel-in-progress": CANCEL_PULL_REQUESTS_ONLY if deploys else True,
    }
    insert_after(doc, "on", "concurrency", group)
    return "Added workflow concurrency group with cancel-in-progress"


def add_path_filter(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    on = doc.get("on")
    if isinstance(on, str):
        on = {on: None}
    elif isinstance(on, list):
        on = {str(e): None for e in on}
    elif not isinstance(on, dict):
        raise FixNotApplicable("workflow has no triggers")

    changed = []
    for event in ("push", "pull_request"):
        if event not in on:
            continue
        config = on[event] if isinstance(on[event], dict) else {}
        if "paths" in config or "paths-ignore" in config:
            continue
        config["paths-ignore"] = list(PATHS_IGNORE)
        on[event] = config
        changed.append(event)
    if not changed:
        raise FixNotApplicable("no push/pull_request trigger to filter")
    doc["on"] = on
    return f"Added paths-ignore to {', '.join(changed)}"


def reduce_matrix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    job = dag.job(fix.job)
    if job.matrix is None or not job.matrix.is_plain:
        raise FixNotApplicable(f"job '{fix.job}' has no plain matrix")
    combos = reduced_combinations(job.matrix.variables)
    if len(combos) >= job.matrix.total_combinations:
        raise FixNotApplicable(f"matrix of '{fix.job}' cannot be reduced")

    strategy = job_config(_jobs(doc), fix.job).get("strategy")
    if not isinstance(strategy, dict) or not isinstance(strategy.get("matrix"), dict):
        raise FixNotApplicable(f"job '{fix.job}' has no strategy.matrix")
    strategy["matrix"] = {"include": combos}
    return (
        f"Reduced matrix of '{fix.job}' from {job.matrix.total_combinations} "
        f"to {len(combos)} combinations"
    )


WRITERS = {
    FixKind.ADD_CACHE: add_cache,
    FixKind.REMOVE_NEEDS: remove_needs,
    FixKind.SHALLOW_CLONE: shallow_clone,
    FixKind.ADD_CONCURRENCY: add_concurrency,
    FixKind.ADD_PATH_FILTER: add_path_filter,
    FixKind.REDUCE_MATRIX: reduce_matrix,
}


def apply_fix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    return WRITERS[fix.kind](doc, fix, dag)
