"""Rewrites a `.gitlab-ci.yml` document in place, one FixAction at a time."""
from __future__ import annotations

import copy
from typing import Any, Dict, List

from ..analyzer.cache_detector import uncached_installs
from ..analyzer.report import FixAction, FixKind
from ..dag import PipelineDag
from ..matrix import reduced_combinations
from ..model import Ecosystem
from ..parser.gitlab import resolved_job
from .common import FixNotApplicable, insert_after, job_config

# GitLab rejects jobs with more cache entries than this
MAX_CACHES = 4

CACHE_KEY_SUFFIX = "-$CI_COMMIT_REF_SLUG"

# (cache paths, variable pointing the tool at a project-local directory)
_CACHES: Dict[Ecosystem, tuple] = {
    Ecosystem.NPM: (["node_modules/", ".npm/"], {"npm_config_cache": "$CI_PROJECT_DIR/.npm"}),
    Ecosystem.PIP: ([".cache/pip"], {"PIP_CACHE_DIR": "$CI_PROJECT_DIR/.cache/pip"}),
    Ecosystem.CARGO: ([".cargo/", "target/"], {"CARGO_HOME": "$CI_PROJECT_DIR/.cargo"}),
    Ecosystem.GRADLE: (
        [".gradle/caches", ".gradle/wrapper", ".m2/repository"],
        {"GRADLE_USER_HOME": "$CI_PROJECT_DIR/.gradle"},
    ),
}


def _variables(config: Dict[str, Any]) -> Dict[str, Any]:
    variables = config.get("variables")
    if variables is None:
        variables = {}
        config["variables"] = variables
    if not isinstance(variables, dict):
        raise FixNotApplicable("job 'variables' is not a mapping")
    return variables


def add_cache(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    eco = Ecosystem(fix.param("ecosystem"))
    if eco not in _CACHES:
        raise FixNotApplicable(f"no GitLab cache layout for {eco.value}")
    if not any(e == eco for e, _, _ in uncached_installs(dag.job(fix.job))):
        raise FixNotApplicable(f"job '{fix.job}' already caches {eco.value}")

    config = job_config(doc, fix.job)
    inherited = copy.deepcopy(resolved_job(doc, fix.job).get("cache"))
    if isinstance(inherited, list):
        caches: List[Any] = list(inherited)
    elif isinstance(inherited, dict):
        caches = [inherited]
    else:
        caches = []
    if len(caches) >= MAX_CACHES:
        raise FixNotApplicable(f"job '{fix.job}' already has {MAX_CACHES} caches")

    paths, variables = _CACHES[eco]
    caches.append({"key": f"{eco.value}{CACHE_KEY_SUFFIX}", "paths": list(paths)})
    config["cache"] = caches[0] if len(caches) == 1 else caches
    job_vars = _variables(config)
    for name, value in variables.items():
        job_vars.setdefault(name, value)
    return f"Added {eco.value} cache to '{fix.job}'"


def remove_needs(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    dep = fix.param("needs")
    job = dag.job(fix.job)
    config = job_config(doc, fix.job)

    if not job.explicit_needs:
        # stage ordering: pin the job to the predecessors it keeps
        config["needs"] = [p for p in dag.predecessors(fix.job) if p != dep]
        return f"Replaced stage ordering of '{fix.job}' with explicit needs (dropped '{dep}')"

    needs = copy.deepcopy(resolved_job(doc, fix.job).get("needs") or [])
    remaining = [
        entry for entry in needs
        if (entry.get("job") if isinstance(entry, dict) else entry) != dep
    ]
    if len(remaining) == len(needs):
        raise FixNotApplicable(f"'{fix.job}' does not need '{dep}'")
    config["needs"] = remaining
    return f"Removed '{dep}' from needs of '{fix.job}'"


def shallow_clone(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    config = job_config(doc, fix.job)
    _variables(config)["GIT_DEPTH"] = "1"
    return f"Set GIT_DEPTH: 1 in '{fix.job}'"


def add_concurrency(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    default = doc.get("default")
    if default is None:
        default = {}
        insert_after(doc, "stages", "default", default)
    if not isinstance(default, dict):
        raise FixNotApplicable("'default' is not a mapping")
    default["interruptible"] = True

    pinned = []
    for job in dag.jobs:
        if job.is_gated:
            job_config(doc, job.name)["interruptible"] = False
            pinned.append(job.name)
    if pinned:
        return f"Made jobs interruptible by default (kept {', '.join(pinned)} uninterruptible)"
    return "Made jobs interruptible by default"


def add_path_filter(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    # `rules: changes` replaces the implicit pipeline rules; not rewritten automatically
    raise FixNotApplicable("path filters need hand-written `rules: changes`")


def reduce_matrix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    job = dag.job(fix.job)
    if job.matrix is None or not job.matrix.is_plain:
        raise FixNotApplicable(f"job '{fix.job}' has no plain parallel matrix")
    combos = reduced_combinations(job.matrix.variables)
    if len(combos) >= job.matrix.total_combinations:
        raise FixNotApplicable(f"matrix of '{fix.job}' cannot be reduced")

    config = job_config(doc, fix.job)
    parallel = config.get("parallel")
    if not isinstance(parallel, dict):
        parallel = copy.deepcopy(resolved_job(doc, fix.job).get("parallel") or {})
    parallel["matrix"] = combos
    config["parallel"] = parallel
    return (
        f"Reduced parallel matrix of '{fix.job}' from {job.matrix.total_combinations} "
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
