"""GitLab CI (`.gitlab-ci.yml`) parser."""
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Set, Tuple

from .. import durations, ecosystems
from ..model import Job, MatrixStrategy, Step, StepKind, Trigger
from .common import ParsedPipeline, as_list, build_matrix, flatten_script, step_label, structure_error

# Top-level keywords that are not job definitions.
RESERVED_KEYWORDS = {
    "image", "services", "stages", "types", "before_script", "after_script",
    "variables", "cache", "default", "include", "workflow", "spec",
}

DEFAULT_STAGES = ["build", "test", "deploy"]
DEFAULT_STAGE = "test"

# keys a job inherits from `default:` (or the legacy global keys) when unset
_INHERITED = ("image", "before_script", "after_script", "cache", "interruptible", "tags")

# pipelines GitLab creates without any `rules`/`only` configuration
_DEFAULT_EVENTS = ("push", "merge_request_event")


def parse_document(doc: Dict[str, Any], text: str, source_file: str) -> ParsedPipeline:
    stages = _stages(doc, text, source_file)
    defaults = _defaults(doc)
    global_vars = doc.get("variables") if isinstance(doc.get("variables"), dict) else {}

    templates = {str(k): v for k, v in doc.items() if isinstance(v, dict)}
    job_ids = [
        str(k) for k, v in doc.items()
        if str(k) not in RESERVED_KEYWORDS and not str(k).startswith(".") and isinstance(v, dict)
    ]
    if not job_ids:
        raise structure_error("No jobs defined in GitLab CI config", text, source_file)

    configs = {jid: _resolve_extends(jid, templates, text, source_file) for jid in job_ids}

    stage_of: Dict[str, str] = {}
    for jid in job_ids:
        stage = str(configs[jid].get("stage") or DEFAULT_STAGE)
        if stage not in stages:
            raise structure_error(
                f"Job '{jid}' uses undefined stage '{stage}' (stages: {stages})",
                text, source_file, "stage",
            )
        stage_of[jid] = stage

    jobs: List[Job] = []
    for jid in job_ids:
        config = configs[jid]
        needs, explicit, skips = _needs(jid, config, job_ids, stage_of, stages, text, source_file)
        jobs.append(_parse_job(jid, config, defaults, global_vars, stage_of[jid], needs, explicit, skips))

    workflow = doc.get("workflow") if isinstance(doc.get("workflow"), dict) else {}
    workflow_changes = _changes(workflow.get("rules"))
    job_changes = any(_changes(configs[j].get("rules")) or _only_changes(configs[j]) for j in job_ids)
    paths = tuple(workflow_changes) or None
    triggers = [Trigger(event, paths=paths) for event in _DEFAULT_EVENTS]

    auto_cancel = workflow.get("auto_cancel") if isinstance(workflow.get("auto_cancel"), dict) else {}
    cancels = defaults.get("interruptible") is True and auto_cancel.get("on_new_commit") != "none"

    return ParsedPipeline(
        name=source_file or "GitLab CI",
        jobs=jobs,
        triggers=triggers,
        concurrency="interruptible" if cancels else None,
        has_path_filter=bool(workflow_changes) or job_changes,
    )


# ---------------------------------------------------------------------
# Top-level structure
# ---------------------------------------------------------------------

def _stages(doc: Dict[str, Any], text: str, source_file: str) -> List[str]:
    raw = doc.get("stages", doc.get("types"))
    if raw is None:
        declared = list(DEFAULT_STAGES)
    elif isinstance(raw, list):
        declared = [str(s) for s in raw]
    else:
        raise structure_error("'stages' must be a list", text, source_file, "stages")
    return [".pre"] + [s for s in declared if s not in (".pre", ".post")] + [".post"]


def _defaults(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: doc[k] for k in _INHERITED if k in doc}
    default = doc.get("default")
    if isinstance(default, dict):
        out.update({k: default[k] for k in _INHERITED if k in default})
    return out


def _resolve_extends(job_id: str, templates: Dict[str, Any], text: str, source_file: str,
                     seen: Tuple[str, ...] = ()) -> Dict[str, Any]:
    config = templates[job_id]
    parents = as_list(config.get("extends"))
    if not parents:
        return dict(config)
    if job_id in seen:
        raise structure_error(
            f"Circular 'extends' chain: {' -> '.join(seen + (job_id,))}",
            text, source_file, "extends",
        )

    merged: Dict[str, Any] = {}
    for parent in parents:
        if parent not in templates:
            raise structure_error(
                f"Job '{job_id}' extends unknown template '{parent}'", text, source_file, "extends",
            )
        base = _resolve_extends(parent, templates, text, source_file, seen + (job_id,))
        merged = _deep_merge(merged, base)
    own = {k: v for k, v in config.items() if k != "extends"}
    return _deep_merge(merged, own)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """GitLab merges hashes recursively; any other value is replaced."""
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------

def _needs(
    job_id: str,
    config: Dict[str, Any],
    job_ids: List[str],
    stage_of: Dict[str, str],
    stages: List[str],
    text: str,
    source_file: str,
) -> Tuple[List[str], bool, Set[str]]:
    """Return (needs, explicit, jobs whose artifacts are explicitly skipped)."""
    if "needs" in config:
        if config["needs"] is not None and not isinstance(config["needs"], list):
            raise structure_error(f"Job '{job_id}': 'needs' must be a list", text, source_file, job_id)
        needs: List[str] = []
        skips: Set[str] = set()
        for entry in config.get("needs") or []:
            if isinstance(entry, dict):
                if "project" in entry or "pipeline" in entry:
                    continue  # cross-project / parent pipeline artifacts
                name = entry.get("job")
                if name is None:
                    continue
                name = str(name)
                if entry.get("optional") and name not in job_ids:
                    continue
                if entry.get("artifacts") is False:
                    skips.add(name)
            else:
                name = str(entry)
            if name not in needs:
                needs.append(name)
        return needs, True, skips

    # No `needs:`: wait for the nearest earlier stage that has jobs.
    position = stages.index(stage_of[job_id])
    for earlier in reversed(stages[:position]):
        previous = [j for j in job_ids if stage_of[j] == earlier]
        if previous:
            return previous, False, set()
    return [], False, set()


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _parse_job(
    job_id: str,
    config: Dict[str, Any],
    defaults: Dict[str, Any],
    global_vars: Dict[str, Any],
    stage: str,
    needs: List[str],
    explicit: bool,
    skips: Set[str],
) -> Job:
    def inherited(key: str):
        return config[key] if key in config else defaults.get(key)

    variables = dict(global_vars)
    if isinstance(config.get("variables"), dict):
        variables.update(config["variables"])

    steps: List[Step] = []
    if str(variables.get("GIT_STRATEGY", "")).lower() != "none":
        depth = variables.get("GIT_DEPTH")
        steps.append(durations.make_step(
            "checkout",
            kind=StepKind.CHECKOUT,
            with_args={"GIT_DEPTH": depth} if depth is not None else None,
            shallow=depth is not None and str(depth).strip() != "0",
        ))

    cache_paths = _cache_paths(inherited("cache"))
    if cache_paths:
        steps.append(durations.make_step(
            "cache",
            kind=StepKind.CACHE,
            with_args={"paths": cache_paths},
            caches=ecosystems.classify_cache_paths(cache_paths),
        ))

    for key in ("before_script", "script", "after_script"):
        for command in flatten_script(inherited(key)):
            steps.append(durations.make_step(step_label(None, command, None), run=command))
    steps = durations.apply_cache_discounts(steps)

    artifacts = config.get("artifacts") if isinstance(config.get("artifacts"), dict) else {}
    produces = set(as_list(artifacts.get("paths")))
    reports = artifacts.get("reports")
    if isinstance(reports, dict):
        if "dotenv" in reports:
            produces.add("outputs")
        produces.update(f"reports:{k}" for k in reports if k != "dotenv")

    if "dependencies" in config:
        consumes = frozenset(as_list(config.get("dependencies")))
    else:
        consumes = frozenset({"*"})

    interruptible = inherited("interruptible")
    tags = as_list(inherited("tags"))
    image = inherited("image")
    if isinstance(image, dict):
        image = image.get("name")

    return Job(
        name=job_id,
        steps=tuple(steps),
        needs=tuple(needs),
        runner=", ".join(tags) if tags else str(image or "gitlab-shared"),
        stage=stage,
        matrix=_parallel(config.get("parallel")),
        condition=_condition(config),
        environment=_environment(config.get("environment")),
        concurrency="interruptible" if interruptible is True else None,
        explicit_needs=explicit,
        produces=frozenset(produces),
        consumes=consumes,
        skips_artifacts_of=frozenset(skips),
    )


def _cache_paths(cache: Any) -> List[str]:
    entries = cache if isinstance(cache, list) else [cache]
    paths: List[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            paths.extend(as_list(entry.get("paths")))
    return paths


def _parallel(value: Any) -> Optional[MatrixStrategy]:
    if value is None:
        return None
    if isinstance(value, int):
        # plain sharding: N identical copies, nothing to reduce
        return MatrixStrategy({}, (), (), max(value, 1))
    if not isinstance(value, dict) or not isinstance(value.get("matrix"), list):
        return None

    entries = [e for e in value["matrix"] if isinstance(e, dict)]
    if len(entries) == 1:
        axes = {str(k): tuple(v if isinstance(v, list) else [v]) for k, v in entries[0].items()}
        return build_matrix(axes)

    total = 0
    axes: Dict[str, Tuple[Any, ...]] = {}
    for entry in entries:
        total += math.prod(len(v) if isinstance(v, list) else 1 for v in entry.values())
        for k, v in entry.items():
            values = v if isinstance(v, list) else [v]
            axes[str(k)] = tuple(dict.fromkeys(axes.get(str(k), ()) + tuple(values)))
    return MatrixStrategy(axes, tuple(entries), (), total)


def _environment(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        name = value.get("name")
        return str(name) if name else None
    return str(value)


def _condition(config: Dict[str, Any]) -> Optional[str]:
    if config.get("when") == "manual":
        return "when: manual"
    rules = config.get("rules")
    if isinstance(rules, list):
        conditions = [str(r["if"]) for r in rules if isinstance(r, dict) and "if" in r]
        if conditions:
            return " || ".join(conditions)
    return None


def _changes(rules: Any) -> List[str]:
    out: List[str] = []
    if not isinstance(rules, list):
        return out
    for rule in rules:
        if isinstance(rule, dict) and "changes" in rule:
            changes = rule["changes"]
            if isinstance(changes, dict):
                changes = changes.get("paths")
            out.extend(as_list(changes))
    return out


def _only_changes(config: Dict[str, Any]) -> bool:
    only = config.get("only")
    return isinstance(only, dict) and bool(only.get("changes"))


def resolved_job(doc: Dict[str, Any], job_id: str) -> Dict[str, Any]:
    """A job's configuration after `extends` and `default:` inheritance."""
    templates = {str(k): v for k, v in doc.items() if isinstance(v, dict)}
    config = _resolve_extends(job_id, templates, "", "")
    for key, value in _defaults(doc).items():
        config.setdefault(key, value)
    return config
