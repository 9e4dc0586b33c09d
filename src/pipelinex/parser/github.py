"""GitHub Actions workflow parser."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Set

from .. import durations, ecosystems
from ..model import Job, MatrixStrategy, Step, Trigger
from .common import (
    ParsedPipeline,
    as_list,
    build_matrix,
    matrix_values,
    step_label,
    structure_error,
    walk_strings,
)

UPLOAD_ARTIFACT = "actions/upload-artifact"
DOWNLOAD_ARTIFACT = "actions/download-artifact"
CHECKOUT = "actions/checkout"
DEFAULT_ARTIFACT_NAME = "artifact"

_NEEDS_REF = re.compile(r"needs\.([A-Za-z_][A-Za-z0-9_-]*)\.(?:outputs|result)\b")


def action_name(uses: Optional[str]) -> str:
    return (uses or "").split("@", 1)[0].strip().lower()


def parse_document(doc: Dict[str, Any], text: str, source_file: str) -> ParsedPipeline:
    jobs_raw = doc.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise structure_error("No 'jobs' section found in workflow", text, source_file, "jobs")

    triggers = parse_triggers(doc.get("on"))
    jobs: List[Job] = []
    for job_id, config in jobs_raw.items():
        job_id = str(job_id)
        if not isinstance(config, dict):
            raise structure_error(f"Job '{job_id}' must be a mapping", text, source_file, job_id)
        if "uses" in config and "steps" not in config:
            # reusable workflow call: opaque, no steps to estimate
            jobs.append(_parse_job(job_id, config, text, source_file, reusable=True))
            continue
        jobs.append(_parse_job(job_id, config, text, source_file))

    return ParsedPipeline(
        name=str(doc.get("name") or "Unnamed Workflow"),
        jobs=jobs,
        triggers=triggers,
        concurrency=_concurrency_group(doc.get("concurrency")),
        has_path_filter=any(t.has_path_filter for t in triggers),
    )


def parse_triggers(on: Any) -> List[Trigger]:
    if on is None:
        return []
    if isinstance(on, str):
        return [Trigger(on)]
    if isinstance(on, list):
        return [Trigger(str(e)) for e in on if e is not None]
    if not isinstance(on, dict):
        return []

    triggers = []
    for event, config in on.items():
        config = config if isinstance(config, dict) else {}
        branches = config.get("branches")
        paths = config.get("paths")
        paths_ignore = config.get("paths-ignore")
        triggers.append(Trigger(
            event=str(event),
            branches=tuple(as_list(branches)) if branches is not None else None,
            paths=tuple(as_list(paths)) if paths is not None else None,
            paths_ignore=tuple(as_list(paths_ignore)) if paths_ignore is not None else None,
        ))
    return triggers


def _concurrency_group(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        group = value.get("group")
        return str(group) if group is not None else None
    return str(value)


def _runner(runs_on: Any) -> str:
    if runs_on is None:
        return "ubuntu-latest"
    if isinstance(runs_on, dict):
        # {group: ..., labels: [...]}
        labels = as_list(runs_on.get("labels")) or as_list(runs_on.get("group"))
        return ", ".join(labels) or "ubuntu-latest"
    return ", ".join(as_list(runs_on))


def _parse_matrix(strategy: Any) -> Optional[MatrixStrategy]:
    if not isinstance(strategy, dict):
        return None
    raw = strategy.get("matrix")
    if not isinstance(raw, dict):
        return None
    axes, include, exclude = matrix_values(raw)
    return build_matrix(axes, include, exclude)


def parse_step(raw: Any, index: int) -> Step:
    if not isinstance(raw, dict):
        return durations.make_step(f"step {index + 1}")

    uses = raw.get("uses")
    uses = str(uses) if uses is not None else None
    run = raw.get("run")
    run = str(run) if run is not None else None
    with_args = raw.get("with") if isinstance(raw.get("with"), dict) else {}

    shallow = None
    if action_name(uses) == CHECKOUT:
        depth = with_args.get("fetch-depth")
        # fetch-depth: 0 is an explicit full clone
        shallow = depth is not None and str(depth).strip() != "0"

    return durations.make_step(
        step_label(raw.get("name"), run, uses),
        run=run,
        uses=uses,
        with_args=with_args,
        shallow=shallow,
        caches=ecosystems.restored_caches(uses, with_args),
    )


def _artifacts(steps: List[Step]) -> tuple:
    produces: Set[str] = set()
    consumes: Set[str] = set()
    for step in steps:
        name = action_name(step.uses)
        if name == UPLOAD_ARTIFACT:
            produces.add(str(step.with_args.get("name") or DEFAULT_ARTIFACT_NAME))
        elif name == DOWNLOAD_ARTIFACT:
            wanted = step.with_args.get("name")
            # no name (or a pattern) downloads everything
            consumes.add(str(wanted) if wanted and "pattern" not in step.with_args else "*")
    return produces, consumes


def _environment(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        name = value.get("name")
        return str(name) if name else None
    return str(value)


def _parse_job(job_id: str, config: Dict[str, Any], text: str, source_file: str, reusable: bool = False) -> Job:
    raw_steps = config.get("steps") or []
    if not isinstance(raw_steps, list):
        raise structure_error(f"Job '{job_id}': 'steps' must be a list", text, source_file, "steps")

    if reusable:
        steps = [durations.make_step(str(config["uses"]), uses=str(config["uses"]))]
    else:
        steps = durations.apply_cache_discounts([parse_step(s, i) for i, s in enumerate(raw_steps)])

    produces, consumes = _artifacts(steps)
    if config.get("outputs"):
        produces.add("outputs")

    reads = {
        m.group(1)
        for s in walk_strings({k: v for k, v in config.items() if k != "needs"})
        for m in _NEEDS_REF.finditer(s)
    }

    condition = config.get("if")
    return Job(
        name=job_id,
        display_name=str(config.get("name") or ""),
        steps=tuple(steps),
        needs=tuple(dict.fromkeys(as_list(config.get("needs")))),
        runner=_runner(config.get("runs-on")),
        matrix=_parse_matrix(config.get("strategy")),
        condition=str(condition) if condition is not None else None,
        environment=_environment(config.get("environment")),
        concurrency=_concurrency_group(config.get("concurrency")),
        produces=frozenset(produces),
        consumes=frozenset(consumes),
        reads_outputs_of=frozenset(reads),
    )
