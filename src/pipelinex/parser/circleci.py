"""
CircleCI config parser.

Nodes are workflow job instances, not job definitions: one definition run
twice under different `name:`s gives two nodes. Dependencies come from
`requires:` in the workflows. A config without workflows runs every job on
its own.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .. import durations, ecosystems
from ..model import Ecosystem, Job, MatrixStrategy, Step, StepKind, Trigger
from .common import ParsedPipeline, as_list, build_matrix, flatten_script, step_label, structure_error

DEFAULT_IMAGE = "cimg/base:stable"
PATH_FILTERING_ORB = "circleci/path-filtering"
# nesting limit for reusable `commands:` that call each other
MAX_COMMAND_DEPTH = 8

_ARTIFACT_STEPS = ("store_artifacts", "store_test_results", "persist_to_workspace", "attach_workspace")


@dataclass
class Instance:
    """One job entry of one workflow."""
    node: str
    job_id: str
    workflow: str
    params: Dict[str, Any] = field(default_factory=dict)
    # raw `requires` entry -> node name it resolves to
    requires: Dict[str, str] = field(default_factory=dict)


def workflow_instances(doc: Dict[str, Any]) -> List[Instance]:
    """Every job instance in the config, in document order."""
    jobs = doc.get("jobs") if isinstance(doc.get("jobs"), dict) else {}
    raw_workflows = doc.get("workflows") if isinstance(doc.get("workflows"), dict) else {}
    # 2.0 configs keep a `version:` key next to the workflows
    workflows = {
        str(name): wf for name, wf in raw_workflows.items()
        if isinstance(wf, dict) and isinstance(wf.get("jobs"), list)
    }

    if not workflows:
        return [Instance(node=str(j), job_id=str(j), workflow="") for j in jobs]

    instances: List[Instance] = []
    taken: Set[str] = set()
    for wf_name, wf in workflows.items():
        local: Dict[str, str] = {}
        pending: List[Tuple[Instance, List[str]]] = []
        for entry in wf["jobs"]:
            if isinstance(entry, dict) and len(entry) == 1:
                job_id, params = next(iter(entry.items()))
                params = params if isinstance(params, dict) else {}
            elif isinstance(entry, str):
                job_id, params = entry, {}
            else:
                continue
            name = str(params.get("name") or job_id)
            node = name if name not in taken else f"{wf_name}/{name}"
            taken.add(node)
            local[name] = node
            pending.append((Instance(node, str(job_id), wf_name, params), _requires(params.get("requires"))))

        for instance, requires in pending:
            # unresolved names are left for the DAG builder to report
            instance.requires = {r: local.get(r, r) for r in requires}
            instances.append(instance)
    return instances


def _requires(value: Any) -> List[str]:
    out: List[str] = []
    for entry in value if isinstance(value, list) else as_list(value):
        if isinstance(entry, dict):
            # `- build: [success, failed]`
            out.extend(str(k) for k in entry)
        elif entry is not None:
            out.append(str(entry))
    return out


def parse_document(doc: Dict[str, Any], text: str, source_file: str) -> ParsedPipeline:
    jobs_raw = doc.get("jobs")
    if not isinstance(jobs_raw, dict):
        jobs_raw = {}
    instances = workflow_instances(doc)
    if not instances:
        raise structure_error("No jobs defined in CircleCI config", text, source_file, "jobs")

    executors = doc.get("executors") if isinstance(doc.get("executors"), dict) else {}
    commands = doc.get("commands") if isinstance(doc.get("commands"), dict) else {}

    jobs: List[Job] = []
    for instance in instances:
        config = jobs_raw.get(instance.job_id)
        if config is not None and not isinstance(config, dict):
            raise structure_error(f"Job '{instance.job_id}' must be a mapping", text, source_file, instance.job_id)
        jobs.append(_parse_instance(instance, config, executors, commands, text, source_file))

    orbs = doc.get("orbs") if isinstance(doc.get("orbs"), dict) else {}
    path_filtered = any(str(ref).startswith(PATH_FILTERING_ORB) for ref in orbs.values())

    triggers = [Trigger("push")]
    workflows = doc.get("workflows") if isinstance(doc.get("workflows"), dict) else {}
    if any(isinstance(wf, dict) and wf.get("triggers") for wf in workflows.values()):
        triggers.append(Trigger("schedule"))

    return ParsedPipeline(
        name=source_file or "CircleCI",
        jobs=jobs,
        triggers=triggers,
        has_path_filter=path_filtered,
    )


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _parse_instance(
    instance: Instance,
    config: Optional[Dict[str, Any]],
    executors: Dict[str, Any],
    commands: Dict[str, Any],
    text: str,
    source_file: str,
) -> Job:
    params = instance.params
    needs = tuple(dict.fromkeys(instance.requires.values()))
    condition = _filters(params.get("filters"))
    display = instance.job_id if instance.node != instance.job_id else ""

    if params.get("type") == "approval":
        return Job(name=instance.node, needs=needs, display_name=display, runner="approval", condition="approval")
    if config is None:
        # orb job (`node/test`) or a name the config never defines
        step = durations.make_step(instance.job_id, uses=instance.job_id, with_args=params)
        return Job(
            name=instance.node,
            steps=(step,),
            needs=needs,
            display_name=display,
            runner="orb",
            condition=condition,
        )

    raw_steps = config.get("steps") or []
    if not isinstance(raw_steps, list):
        raise structure_error(f"Job '{instance.job_id}': 'steps' must be a list", text, source_file, instance.job_id)

    expanded = list(expand_steps(raw_steps, commands))
    save_paths = _save_cache_paths(expanded)
    steps = durations.apply_cache_discounts([parse_step(s, i, save_paths) for i, s in enumerate(expanded)])

    produces: Set[str] = set()
    consumes: Set[str] = set()
    for raw in expanded:
        key, value = _step_key(raw)
        if key == "persist_to_workspace":
            paths = as_list(value.get("paths")) if isinstance(value, dict) else []
            produces.update(paths or ["workspace"])
        elif key == "attach_workspace":
            # a workspace carries every upstream layer
            consumes.add("*")

    return Job(
        name=instance.node,
        steps=tuple(steps),
        needs=needs,
        display_name=display,
        runner=_runner(config, executors),
        matrix=_matrix(params.get("matrix"), config.get("parallelism")),
        condition=condition,
        produces=frozenset(produces),
        consumes=frozenset(consumes),
    )


def _filters(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    parts = []
    for kind in ("branches", "tags"):
        rules = value.get(kind)
        if isinstance(rules, dict):
            for mode in ("only", "ignore"):
                if rules.get(mode) is not None:
                    parts.append(f"{kind}.{mode}: {', '.join(as_list(rules[mode]))}")
    return "; ".join(parts) or None


def _runner(config: Dict[str, Any], executors: Dict[str, Any]) -> str:
    executor = config.get("executor")
    if isinstance(executor, dict):
        executor = executor.get("name")
    source = config
    if executor is not None:
        defined = executors.get(str(executor))
        if not isinstance(defined, dict):
            # orb executor such as `node/default` or `win/default`
            return str(executor)
        source = defined

    label = DEFAULT_IMAGE
    docker = source.get("docker")
    machine = source.get("machine")
    macos = source.get("macos")
    if isinstance(docker, list) and docker and isinstance(docker[0], dict):
        label = str(docker[0].get("image") or DEFAULT_IMAGE)
    elif machine is not None:
        label = str(machine.get("image") or "machine") if isinstance(machine, dict) else "machine"
    elif isinstance(macos, dict):
        label = f"macos (xcode {macos.get('xcode', '?')})"

    resource_class = config.get("resource_class") or source.get("resource_class")
    if resource_class:
        label = f"{label} [{resource_class}]"
    return label


def _matrix(value: Any, parallelism: Any) -> Optional[MatrixStrategy]:
    shards = parallelism if isinstance(parallelism, int) and parallelism > 1 else 1
    matrix = None
    if isinstance(value, dict) and isinstance(value.get("parameters"), dict):
        axes = {
            str(k): tuple(v) if isinstance(v, list) else (v,)
            for k, v in value["parameters"].items()
        }
        exclude = value.get("exclude") if isinstance(value.get("exclude"), list) else []
        matrix = build_matrix(axes, exclude=exclude)
    if shards == 1:
        return matrix
    if matrix is None:
        return MatrixStrategy({}, (), (), shards)
    return replace(matrix, total_combinations=matrix.total_combinations * shards)


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def _step_key(raw: Any) -> Tuple[str, Any]:
    if isinstance(raw, str):
        return raw, {}
    if isinstance(raw, dict) and len(raw) == 1:
        key, value = next(iter(raw.items()))
        return str(key), value
    return "", raw


def expand_steps(raw_steps: List[Any], commands: Dict[str, Any], depth: int = 0) -> Iterator[Any]:
    """Inline reusable `commands:` and `when`/`unless` blocks."""
    for raw in raw_steps:
        key, value = _step_key(raw)
        if key in ("when", "unless") and isinstance(value, dict):
            yield from expand_steps(value.get("steps") or [], commands, depth + 1)
        elif key in commands and isinstance(commands[key], dict) and depth < MAX_COMMAND_DEPTH:
            yield from expand_steps(commands[key].get("steps") or [], commands, depth + 1)
        else:
            yield raw


def _key_stem(key: str) -> str:
    return key.split("{{", 1)[0].strip()


def _save_cache_paths(raw_steps: List[Any]) -> Dict[str, List[str]]:
    """save_cache key prefix -> saved paths."""
    out: Dict[str, List[str]] = {}
    for raw in raw_steps:
        key, value = _step_key(raw)
        if key == "save_cache" and isinstance(value, dict):
            out.setdefault(_key_stem(str(value.get("key", ""))), []).extend(as_list(value.get("paths")))
    return out


def parse_step(raw: Any, index: int, save_paths: Optional[Dict[str, List[str]]] = None) -> Step:
    key, value = _step_key(raw)
    save_paths = save_paths or {}

    if key == "checkout":
        with_args = value if isinstance(value, dict) else {}
        return durations.make_step(
            "checkout",
            kind=StepKind.CHECKOUT,
            with_args=with_args,
            shallow=with_args.get("method") == "blobless",
        )
    if key == "run":
        if isinstance(value, dict):
            run = "\n".join(flatten_script(value.get("command")))
            return durations.make_step(step_label(value.get("name"), run, None), run=run)
        run = str(value)
        return durations.make_step(step_label(None, run, None), run=run)
    if key == "restore_cache" and isinstance(value, dict):
        keys = as_list(value.get("keys")) + as_list(value.get("key"))
        paths = [p for k in keys for p in save_paths.get(_key_stem(k), [])]
        return durations.make_step(
            str(value.get("name") or "restore_cache"),
            kind=StepKind.CACHE,
            with_args=value,
            caches=ecosystems.classify_cache_paths(paths or keys),
        )
    if key == "save_cache":
        return durations.make_step("save_cache", kind=StepKind.CACHE, with_args=value if isinstance(value, dict) else {})
    if key == "setup_remote_docker":
        with_args = value if isinstance(value, dict) else {}
        if with_args.get("docker_layer_caching"):
            return durations.make_step(key, kind=StepKind.CACHE, with_args=with_args, caches={Ecosystem.DOCKER})
        return durations.make_step(key, kind=StepKind.SETUP, with_args=with_args)
    if key in _ARTIFACT_STEPS:
        return durations.make_step(key, kind=StepKind.ARTIFACT, with_args=value if isinstance(value, dict) else {})
    if key:
        # orb command such as `node/install-packages`
        with_args = value if isinstance(value, dict) else {}
        return durations.make_step(step_label(with_args.get("name"), None, key), uses=key, with_args=with_args)
    return durations.make_step(f"step {index + 1}")
