"""Rewrites an Azure Pipelines document in place, one FixAction at a time."""
from __future__ import annotations

from typing import Any, Dict, List

from ..analyzer.cache_detector import uncached_installs
from ..analyzer.report import FixAction, FixKind
from ..dag import PipelineDag
from ..model import Ecosystem
from ..parser.azure import JobEntry, job_entries, parse_step
from ..parser.common import as_list
from .common import FixNotApplicable, insert_after, raw_index

PATHS_EXCLUDE = ["docs/*", "*.md", ".gitignore", "LICENSE"]

# (cache key, restore key, path, variable pointing the tool at the path)
_CACHES: Dict[Ecosystem, tuple] = {
    Ecosystem.NPM: (
        'npm | "$(Agent.OS)" | **/package-lock.json', 'npm | "$(Agent.OS)"',
        "$(Pipeline.Workspace)/.npm", ("npm_config_cache", "$(Pipeline.Workspace)/.npm"),
    ),
    Ecosystem.PIP: (
        'pip | "$(Agent.OS)" | **/requirements*.txt', 'pip | "$(Agent.OS)"',
        "$(Pipeline.Workspace)/.cache/pip", ("PIP_CACHE_DIR", "$(Pipeline.Workspace)/.cache/pip"),
    ),
    Ecosystem.CARGO: (
        'cargo | "$(Agent.OS)" | **/Cargo.lock', 'cargo | "$(Agent.OS)"',
        "$(Pipeline.Workspace)/.cargo", ("CARGO_HOME", "$(Pipeline.Workspace)/.cargo"),
    ),
    Ecosystem.GRADLE: (
        'gradle | "$(Agent.OS)" | **/*.gradle*', 'gradle | "$(Agent.OS)"',
        "$(Pipeline.Workspace)/.gradle", ("GRADLE_USER_HOME", "$(Pipeline.Workspace)/.gradle"),
    ),
}


def _entry(doc: Dict[str, Any], node: str) -> JobEntry:
    for entry in job_entries(doc):
        if entry.node == node:
            return entry
    raise FixNotApplicable(f"job '{node}' not found in document")


def _steps(entry: JobEntry) -> List[Any]:
    steps = entry.config.get("steps")
    if "deployment" in entry.config or not isinstance(steps, list):
        raise FixNotApplicable(f"job '{entry.node}' has no plain steps list")
    return steps


def _set_variable(config: Dict[str, Any], name: str, value: str) -> None:
    variables = config.get("variables")
    if variables is None:
        config["variables"] = {name: value}
    elif isinstance(variables, dict):
        variables.setdefault(name, value)
    elif isinstance(variables, list):
        if not any(isinstance(v, dict) and v.get("name") == name for v in variables):
            variables.append({"name": name, "value": value})
    else:
        raise FixNotApplicable("job 'variables' is neither a mapping nor a list")


def add_cache(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    eco = Ecosystem(fix.param("ecosystem"))
    if eco not in _CACHES:
        raise FixNotApplicable(f"no Azure cache layout for {eco.value}")
    target = next((step for e, step, _ in uncached_installs(dag.job(fix.job)) if e == eco), None)
    if target is None:
        raise FixNotApplicable(f"job '{fix.job}' already caches {eco.value}")

    entry = _entry(doc, fix.job)
    steps = _steps(entry)
    position = raw_index(steps, parse_step, target)
    key, restore, path, (variable, value) = _CACHES[eco]
    steps.insert(position, {
        "task": "Cache@2",
        "displayName": f"Cache {eco.value}",
        "inputs": {"key": key, "restoreKeys": restore, "path": path},
    })
    _set_variable(entry.config, variable, value)
    return f"Added {eco.value} Cache@2 task to '{fix.job}'"


def remove_needs(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    dep = fix.param("needs")
    entry = _entry(doc, fix.job)
    upstream = _entry(doc, dep)
    if upstream.stage != entry.stage:
        raise FixNotApplicable(f"'{dep}' is in another stage; stage order is not rewritten")

    depends = as_list(entry.config.get("dependsOn"))
    if upstream.local not in depends:
        raise FixNotApplicable(f"'{fix.job}' does not depend on '{dep}'")
    remaining = [d for d in depends if d != upstream.local]
    if remaining:
        entry.config["dependsOn"] = remaining
    else:
        del entry.config["dependsOn"]
    return f"Removed '{upstream.local}' from dependsOn of '{fix.job}'"


def shallow_clone(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    steps = _steps(_entry(doc, fix.job))
    for raw in steps:
        if isinstance(raw, dict) and "checkout" in raw:
            if str(raw["checkout"]) == "none":
                raise FixNotApplicable(f"job '{fix.job}' does not check out")
            raw["fetchDepth"] = 1
            return f"Set fetchDepth: 1 on checkout in '{fix.job}'"
    steps.insert(0, {"checkout": "self", "fetchDepth": 1})
    return f"Added a shallow checkout (fetchDepth: 1) to '{fix.job}'"


def _filtered(value: Any) -> Any:
    """The trigger section with the docs paths excluded; None when it needs no change."""
    if value == "none" or value is False:
        return None
    if value is None:
        value = {"branches": {"include": ["*"]}}
    elif isinstance(value, list):
        value = {"branches": {"include": list(value)}}
    elif not isinstance(value, dict):
        return None
    paths = value.get("paths")
    if isinstance(paths, dict) and (paths.get("include") or paths.get("exclude")):
        return None
    value["paths"] = {"exclude": list(PATHS_EXCLUDE)}
    return value


def add_path_filter(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    changed = []
    for key in ("trigger", "pr"):
        value = _filtered(doc.get(key))
        if value is None:
            continue
        if key in doc:
            doc[key] = value
        elif key == "pr" and "trigger" in doc:
            insert_after(doc, "trigger", "pr", value)
        else:
            # trigger sections lead the file
            items = list(doc.items())
            doc.clear()
            doc[key] = value
            doc.update(items)
        changed.append(key)
    if not changed:
        raise FixNotApplicable("no CI or PR trigger to filter")
    return f"Excluded documentation paths from {' and '.join(changed)}"


WRITERS = {
    FixKind.ADD_CACHE: add_cache,
    FixKind.REMOVE_NEEDS: remove_needs,
    FixKind.SHALLOW_CLONE: shallow_clone,
    FixKind.ADD_PATH_FILTER: add_path_filter,
}


def apply_fix(doc: Dict[str, Any], fix: FixAction, dag: PipelineDag) -> str:
    writer = WRITERS.get(fix.kind)
    if writer is None:
        raise FixNotApplicable(f"{fix.kind.value} is not rewritten for Azure Pipelines")
    return writer(doc, fix, dag)
