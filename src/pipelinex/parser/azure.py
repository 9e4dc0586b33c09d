"""
Azure Pipelines parser.

Three layouts are accepted: `stages:` holding `jobs:`, a top-level `jobs:`
list, or a bare `steps:` list (one implicit job). Stages run one after
another unless `dependsOn` says otherwise (`dependsOn: []` starts a stage
right away). Jobs inside a stage run side by side unless their own
`dependsOn` orders them. With stages, node names are `<stage>.<job>`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from .. import durations, ecosystems
from ..model import Job, MatrixStrategy, Step, StepKind, Trigger
from .common import ParsedPipeline, as_list, flatten_script, step_label, structure_error, walk_strings

DEFAULT_POOL = "ubuntu-latest"
IMPLICIT_JOB = "Job"
DEFAULT_ARTIFACT = "drop"

_JOB_OUTPUTS = re.compile(r"\bdependencies\.([A-Za-z_]\w*)\.(?:outputs|result)\b")
_STAGE_JOB_OUTPUTS = re.compile(r"\bstageDependencies\.([A-Za-z_]\w*)\.([A-Za-z_]\w*)\.(?:outputs|result)\b")
# stage-level: dependencies.<stage>.outputs['<job>.<step>.<var>']
_STAGE_OUTPUTS = re.compile(r"\bdependencies\.([A-Za-z_]\w*)\.outputs\[\s*['\"]([A-Za-z_]\w*)\.")

_SCRIPT_KEYS = ("script", "bash", "pwsh", "powershell")
_CACHE_TASKS = {"cache", "cachebeta"}
_PUBLISH_TASKS = {"publishpipelineartifact", "publishbuildartifacts"}
_DOWNLOAD_TASKS = {"downloadpipelineartifact", "downloadbuildartifacts"}
_SETUP_TASKS = {"usepythonversion", "nodetool", "usenode", "usedotnet", "javatoolinstaller", "gotool", "userubyversion"}
_DEPLOY_TASKS = {
    "azurewebapp", "azurermwebappdeployment", "azurefunctionapp",
    "kubernetesmanifest", "kubernetes", "helmdeploy",
}
_DEPLOY_HOOKS = ("preDeploy", "deploy", "routeTraffic", "postRouteTraffic")


@dataclass
class JobEntry:
    node: str
    local: str
    stage: Optional[str]
    # the job mapping inside the document itself; writers edit it in place
    config: Dict[str, Any]
    needs: Tuple[str, ...]
    stage_config: Optional[Dict[str, Any]] = None


def _job_name(config: Dict[str, Any], index: int) -> str:
    for key in ("job", "deployment"):
        if config.get(key):
            return str(config[key])
    if "template" in config:
        return f"template{index + 1}"
    return f"job{index + 1}"


def _local_jobs(jobs: Any) -> List[Tuple[str, Dict[str, Any]]]:
    if not isinstance(jobs, list):
        return []
    return [(_job_name(j, i), j) for i, j in enumerate(jobs) if isinstance(j, dict)]


def job_entries(doc: Dict[str, Any], text: str = "", source_file: str = "") -> List[JobEntry]:
    """Every job in the document with its node name and the nodes it waits for."""
    stages = doc.get("stages")
    if isinstance(stages, list):
        return _staged_entries([s for s in stages if isinstance(s, dict)], text, source_file)
    if isinstance(doc.get("jobs"), list):
        return [
            JobEntry(name, name, None, config, tuple(as_list(config.get("dependsOn"))))
            for name, config in _local_jobs(doc["jobs"])
        ]
    if isinstance(doc.get("steps"), list):
        return [JobEntry(IMPLICIT_JOB, IMPLICIT_JOB, None, doc, ())]
    if isinstance(doc.get("extends"), dict):
        return [JobEntry("extends", "extends", None, doc["extends"], ())]
    return []


def _staged_entries(stages: List[Dict[str, Any]], text: str, source_file: str) -> List[JobEntry]:
    names = [str(s.get("stage") or f"stage{i + 1}") for i, s in enumerate(stages)]
    jobs_of: Dict[str, List[Tuple[str, Dict[str, Any]]]] = {}
    for name, stage in zip(names, stages):
        if "template" in stage and "jobs" not in stage:
            jobs_of[name] = [("template", stage)]
        else:
            jobs_of[name] = _local_jobs(stage.get("jobs"))

    entries: List[JobEntry] = []
    for i, (name, stage) in enumerate(zip(names, stages)):
        if "dependsOn" in stage:
            depends = as_list(stage["dependsOn"])
        else:
            depends = names[i - 1:i]
        for dep in depends:
            if dep not in jobs_of:
                raise structure_error(
                    f"Stage '{name}' depends on unknown stage '{dep}'", text, source_file, "dependsOn"
                )
        upstream = [f"{dep}.{job}" for dep in depends for job, _ in jobs_of[dep]]

        for local, config in jobs_of[name]:
            own = [f"{name}.{d}" for d in as_list(config.get("dependsOn"))] if config is not stage else []
            needs = tuple(dict.fromkeys(upstream + own))
            entries.append(JobEntry(f"{name}.{local}", local, name, config, needs, stage))
    return entries


def parse_document(doc: Dict[str, Any], text: str, source_file: str) -> ParsedPipeline:
    entries = job_entries(doc, text, source_file)
    if not entries:
        raise structure_error("No stages, jobs or steps found in Azure Pipelines config", text, source_file)

    triggers, batch = _triggers(doc)
    return ParsedPipeline(
        name=source_file or "Azure Pipelines",
        jobs=[_parse_job(e, doc.get("pool")) for e in entries],
        triggers=triggers,
        concurrency="batch" if batch else None,
        has_path_filter=any(t.has_path_filter for t in triggers),
    )


def _triggers(doc: Dict[str, Any]) -> Tuple[List[Trigger], bool]:
    triggers: List[Trigger] = []
    batch = False
    for key, event in (("trigger", "push"), ("pr", "pull_request")):
        value = doc.get(key)
        if value is None:
            # omitted: every branch triggers
            triggers.append(Trigger(event))
            continue
        if value == "none" or value is False:
            continue
        if isinstance(value, list):
            triggers.append(Trigger(event, branches=tuple(as_list(value))))
            continue
        if not isinstance(value, dict):
            triggers.append(Trigger(event))
            continue
        branches = value.get("branches")
        include = as_list(branches.get("include")) if isinstance(branches, dict) else as_list(branches)
        paths = value.get("paths") if isinstance(value.get("paths"), dict) else {}
        triggers.append(Trigger(
            event,
            branches=tuple(include) or None,
            paths=tuple(as_list(paths.get("include"))) or None,
            paths_ignore=tuple(as_list(paths.get("exclude"))) or None,
        ))
        if key == "trigger" and value.get("batch") is True:
            batch = True
    if doc.get("schedules"):
        triggers.append(Trigger("schedule"))
    return triggers, batch


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _pool(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        label = value.get("vmImage") or value.get("name")
        return str(label) if label else None
    return str(value) if value else None


def _condition(*values: Any) -> Optional[str]:
    for value in values:
        # the default condition gates nothing
        if value is not None and str(value).replace(" ", "") != "succeeded()":
            return str(value)
    return None


def _environment(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("name") or value.get("resourceName")
    return str(value) if value else None


def _matrix(strategy: Any) -> Optional[MatrixStrategy]:
    if not isinstance(strategy, dict):
        return None
    legs = strategy.get("matrix")
    if isinstance(legs, dict) and legs:
        include = tuple(dict(v) if isinstance(v, dict) else {} for v in legs.values())
        return MatrixStrategy({}, include, (), len(include))
    parallel = strategy.get("parallel")
    if isinstance(parallel, int) and parallel > 1:
        return MatrixStrategy({}, (), (), parallel)
    return None


def deployment_steps(config: Dict[str, Any]) -> List[Any]:
    strategy = config.get("strategy")
    if not isinstance(strategy, dict):
        return []
    steps: List[Any] = []
    for kind in ("runOnce", "rolling", "canary"):
        block = strategy.get(kind)
        if not isinstance(block, dict):
            continue
        for hook in _DEPLOY_HOOKS:
            if isinstance(block.get(hook), dict):
                steps.extend(block[hook].get("steps") or [])
    return steps


def _reads(entry: JobEntry) -> Set[str]:
    reads: Set[str] = set()
    job_strings = walk_strings({k: v for k, v in entry.config.items() if k != "dependsOn"})
    for s in job_strings:
        for m in _JOB_OUTPUTS.finditer(s):
            reads.add(f"{entry.stage}.{m.group(1)}" if entry.stage else m.group(1))
        for m in _STAGE_JOB_OUTPUTS.finditer(s):
            reads.add(f"{m.group(1)}.{m.group(2)}")
    if entry.stage_config is not None:
        stage_level = {k: v for k, v in entry.stage_config.items() if k not in ("jobs", "dependsOn")}
        for s in walk_strings(stage_level):
            for m in _STAGE_OUTPUTS.finditer(s):
                reads.add(f"{m.group(1)}.{m.group(2)}")
    return reads


def _parse_job(entry: JobEntry, top_pool: Any) -> Job:
    config = entry.config
    stage_config = entry.stage_config or {}
    if entry.local == "extends" or ("template" in config and "job" not in config and "deployment" not in config):
        template = str(config.get("template"))
        return Job(
            name=entry.node,
            steps=(durations.make_step(template, uses=template),),
            needs=entry.needs,
            stage=entry.stage,
        )

    deployment = "deployment" in config
    raw_steps = deployment_steps(config) if deployment else (config.get("steps") or [])
    steps = [s for s in (parse_step(raw, i) for i, raw in enumerate(raw_steps)) if s is not None]
    if not deployment and not any(isinstance(r, dict) and "checkout" in r for r in raw_steps):
        steps.insert(0, durations.make_step("checkout self", kind=StepKind.CHECKOUT, shallow=False))
    steps = durations.apply_cache_discounts(steps)

    produces, consumes = _artifacts(raw_steps, deployment)
    if any("isOutput=true" in s.text for s in steps):
        produces.add("outputs")

    runner = _pool(config.get("pool")) or _pool(stage_config.get("pool")) or _pool(top_pool) or DEFAULT_POOL
    return Job(
        name=entry.node,
        steps=tuple(steps),
        needs=entry.needs,
        display_name=str(config.get("displayName") or ""),
        runner=runner,
        stage=entry.stage,
        matrix=None if deployment else _matrix(config.get("strategy")),
        condition=_condition(config.get("condition"), stage_config.get("condition")),
        environment=_environment(config.get("environment")) if deployment else None,
        produces=frozenset(produces),
        consumes=frozenset(consumes),
        reads_outputs_of=frozenset(_reads(entry)),
    )


def _inputs(raw: Dict[str, Any]) -> Dict[str, Any]:
    inputs = raw.get("inputs")
    return {str(k).lower(): v for k, v in inputs.items()} if isinstance(inputs, dict) else {}


def _task_name(raw: Dict[str, Any]) -> str:
    return str(raw.get("task", "")).split("@", 1)[0].strip().lower()


def _artifacts(raw_steps: List[Any], deployment: bool) -> Tuple[Set[str], Set[str]]:
    produces: Set[str] = set()
    consumes: Set[str] = set()
    auto_download = deployment
    for raw in raw_steps:
        if not isinstance(raw, dict):
            continue
        if "publish" in raw:
            produces.add(str(raw.get("artifact") or DEFAULT_ARTIFACT))
        elif "download" in raw:
            source = str(raw["download"])
            if source == "none":
                auto_download = False
            elif source == "current":
                consumes.add(str(raw.get("artifact") or "*"))
        elif "task" in raw:
            task, inputs = _task_name(raw), _inputs(raw)
            name = inputs.get("artifact") or inputs.get("artifactname")
            if task in _PUBLISH_TASKS:
                produces.add(str(name or DEFAULT_ARTIFACT))
            elif task in _DOWNLOAD_TASKS and str(inputs.get("buildtype", "current")) == "current":
                consumes.add(str(name or "*"))
    if auto_download:
        # deployment jobs download every artifact of the run first
        consumes.add("*")
    return produces, consumes


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def _task_command(task: str, inputs: Dict[str, Any]) -> Optional[str]:
    """Shell equivalent of build tasks, so they classify like scripts."""
    if task == "npm":
        command = str(inputs.get("command", "install"))
        if command == "custom":
            return f"npm {inputs.get('customcommand', '')}".strip()
        return f"npm {command}"
    if task == "dotnetcorecli":
        return f"dotnet {inputs.get('command', 'build')}"
    if task == "maven":
        return f"mvn {inputs.get('goals', 'package')}"
    if task == "gradle":
        return f"./gradlew {inputs.get('tasks', 'build')}"
    if task == "docker":
        command = str(inputs.get("command", "buildAndPush"))
        return "docker build" if "build" in command.lower() else f"docker {command}"
    return None


def _task_step(raw: Dict[str, Any]) -> Step:
    task, inputs = str(raw["task"]), _inputs(raw)
    name = _task_name(raw)
    label = str(raw.get("displayName") or task)
    with_args = {"task": task, **inputs}

    if name in _CACHE_TASKS:
        paths = as_list(inputs.get("path"))
        return durations.make_step(
            label,
            kind=StepKind.CACHE,
            with_args=with_args,
            caches=ecosystems.classify_cache_paths(paths),
        )
    if name in _PUBLISH_TASKS or name in _DOWNLOAD_TASKS:
        return durations.make_step(label, kind=StepKind.ARTIFACT, with_args=with_args)
    command = _task_command(name, inputs)
    if command is not None:
        return durations.make_step(label, run=command, with_args=with_args)
    if name in _SETUP_TASKS:
        return durations.make_step(label, uses=task, with_args=inputs, kind=StepKind.SETUP)
    if name in _DEPLOY_TASKS:
        return durations.make_step(label, uses=task, with_args=inputs, kind=StepKind.DEPLOY)
    return durations.make_step(label, uses=task, with_args=inputs)


def parse_step(raw: Any, index: int) -> Optional[Step]:
    """One step; None for steps that do nothing (`checkout: none`, `download: none`)."""
    if not isinstance(raw, dict):
        return durations.make_step(f"step {index + 1}")
    name = raw.get("displayName")

    if "checkout" in raw:
        target = str(raw["checkout"])
        if target == "none":
            return None
        depth = raw.get("fetchDepth")
        return durations.make_step(
            str(name or f"checkout {target}"),
            kind=StepKind.CHECKOUT,
            with_args={k: raw[k] for k in ("fetchDepth", "fetchFilter") if k in raw},
            # fetchDepth: 0 is an explicit full clone
            shallow=depth is not None and str(depth).strip() != "0",
        )
    for key in _SCRIPT_KEYS:
        if key in raw:
            run = "\n".join(flatten_script(raw[key]))
            return durations.make_step(step_label(name, run, None), run=run)
    if "task" in raw:
        return _task_step(raw)
    if "publish" in raw or "download" in raw:
        if raw.get("download") == "none":
            return None
        with_args = {k: raw[k] for k in ("publish", "download", "artifact") if k in raw}
        return durations.make_step(str(name or next(iter(with_args))), kind=StepKind.ARTIFACT, with_args=with_args)
    if "template" in raw:
        return durations.make_step(str(name or raw["template"]), uses=str(raw["template"]))
    return durations.make_step(str(name or f"step {index + 1}"))
