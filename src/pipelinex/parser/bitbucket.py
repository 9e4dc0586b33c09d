"""
Bitbucket Pipelines parser.

Each pipeline (`default`, every `branches:` / `pull-requests:` / `tags:` /
`custom:` pattern) is a sequence of steps; a `parallel:` block runs its
steps side by side and a `stage:` runs its steps in order. Every step waits
for the whole group before it and, unless it sets `artifacts: download:
false`, downloads every artifact produced earlier in the run.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from .. import durations, ecosystems
from ..model import Ecosystem, Job, Step, StepKind, Trigger
from .common import ParsedPipeline, as_list, flatten_script, step_label, structure_error

DEFAULT_IMAGE = "atlassian/default-image:4"
# Bitbucket clones the last 50 commits unless told otherwise
DEFAULT_CLONE_DEPTH = 50

PREDEFINED_CACHES: Dict[str, Ecosystem] = {
    "node": Ecosystem.NPM,
    "pip": Ecosystem.PIP,
    "gradle": Ecosystem.GRADLE,
    "maven": Ecosystem.GRADLE,
    "docker": Ecosystem.DOCKER,
}

_SECTION_EVENTS = {
    "default": "push",
    "branches": "push",
    "tags": "push",
    "pull-requests": "pull_request",
    "custom": "workflow_dispatch",
}


@dataclass
class StepEntry:
    node: str
    pipeline: str
    config: Dict[str, Any]
    needs: Tuple[str, ...]


def _pipelines(doc: Dict[str, Any]) -> Iterator[Tuple[str, str, List[Any]]]:
    """(section, label, items) for every pipeline in the file."""
    sections = doc.get("pipelines")
    if not isinstance(sections, dict):
        return
    for section, body in sections.items():
        section = str(section)
        if section == "default":
            if isinstance(body, list):
                yield section, "default", body
        elif isinstance(body, dict):
            for pattern, items in body.items():
                if isinstance(items, list):
                    yield section, f"{section}/{pattern}", items


def _groups(items: List[Any]) -> Iterator[List[Dict[str, Any]]]:
    """Step configs grouped by what runs together, in run order."""
    for item in items:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("step"), dict):
            yield [item["step"]]
        elif "parallel" in item:
            block = item["parallel"]
            if isinstance(block, dict):
                # `parallel: {fail-fast: true, steps: [...]}`
                block = block.get("steps")
            yield [e["step"] for e in block or [] if isinstance(e, dict) and isinstance(e.get("step"), dict)]
        elif isinstance(item.get("stage"), dict):
            for entry in item["stage"].get("steps") or []:
                if isinstance(entry, dict) and isinstance(entry.get("step"), dict):
                    yield [entry["step"]]


def step_entries(doc: Dict[str, Any]) -> List[StepEntry]:
    """Every step in the file with its unique node name and the steps it waits for."""
    entries: List[StepEntry] = []
    taken: Set[str] = set()
    for _section, label, items in _pipelines(doc):
        previous: Tuple[str, ...] = ()
        count = 0
        for group in _groups(items):
            names = []
            for config in group:
                count += 1
                base = str(config.get("name") or f"step {count}")
                node = base if base not in taken else f"{label}: {base}"
                suffix = 2
                while node in taken:
                    node = f"{label}: {base} ({suffix})"
                    suffix += 1
                taken.add(node)
                names.append(node)
                entries.append(StepEntry(node, label, config, previous))
            if names:
                previous = tuple(names)
    return entries


def parse_document(doc: Dict[str, Any], text: str, source_file: str) -> ParsedPipeline:
    entries = step_entries(doc)
    if not entries:
        raise structure_error("No pipelines defined in bitbucket-pipelines.yml", text, source_file, "pipelines")

    global_image = _image(doc.get("image")) or DEFAULT_IMAGE
    global_clone = doc.get("clone") if isinstance(doc.get("clone"), dict) else {}
    definitions = doc.get("definitions") if isinstance(doc.get("definitions"), dict) else {}
    custom_caches = definitions.get("caches") if isinstance(definitions.get("caches"), dict) else {}

    jobs = [_parse_step(e, global_image, global_clone, custom_caches, text, source_file) for e in entries]

    events = []
    for section, _label, _items in _pipelines(doc):
        event = _SECTION_EVENTS.get(section)
        if event and event not in events:
            events.append(event)

    return ParsedPipeline(
        name=source_file or "Bitbucket Pipelines",
        jobs=jobs,
        triggers=[Trigger(e) for e in events],
        has_path_filter=any(_changeset_paths(e.config) for e in entries),
    )


def _image(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("name")
    return str(value) if value else None


def _changeset_paths(config: Dict[str, Any]) -> List[str]:
    condition = config.get("condition")
    if not isinstance(condition, dict) or not isinstance(condition.get("changesets"), dict):
        return []
    return as_list(condition["changesets"].get("includePaths"))


def cache_ecosystems(names: List[str], custom: Dict[str, Any]) -> FrozenSet[Ecosystem]:
    found: Set[Ecosystem] = set()
    for name in names:
        if name in custom:
            path = custom[name].get("path") if isinstance(custom[name], dict) else custom[name]
            found |= ecosystems.classify_cache_paths(as_list(path))
        elif name in PREDEFINED_CACHES:
            found.add(PREDEFINED_CACHES[name])
        else:
            # composer, dotnet, sbt, ... restore something, just not a tracked ecosystem
            found.add(Ecosystem.ANY)
    return frozenset(found)


def _clone_step(clone: Dict[str, Any]) -> Optional[Step]:
    if clone.get("enabled") is False:
        return None
    depth = clone.get("depth", DEFAULT_CLONE_DEPTH)
    with_args = {"depth": depth} if "depth" in clone else {}
    return durations.make_step(
        "clone",
        kind=StepKind.CHECKOUT,
        with_args=with_args,
        shallow=str(depth).strip().lower() != "full",
    )


def _script_steps(script: Any) -> List[Step]:
    steps = []
    for entry in script if isinstance(script, list) else flatten_script(script):
        if isinstance(entry, dict) and entry.get("pipe"):
            pipe = str(entry["pipe"])
            variables = entry.get("variables") if isinstance(entry.get("variables"), dict) else {}
            steps.append(durations.make_step(pipe, uses=pipe, with_args=variables))
        elif isinstance(entry, (list, tuple)):
            steps.extend(_script_steps(list(entry)))
        elif entry is not None:
            run = str(entry)
            steps.append(durations.make_step(step_label(None, run, None), run=run))
    return steps


def _parse_step(
    entry: StepEntry,
    global_image: str,
    global_clone: Dict[str, Any],
    custom_caches: Dict[str, Any],
    text: str,
    source_file: str,
) -> Job:
    config = entry.config
    if config.get("script") is None:
        raise structure_error(f"Step '{entry.node}' has no script", text, source_file, "script")

    steps: List[Step] = []
    clone = dict(global_clone)
    if isinstance(config.get("clone"), dict):
        clone.update(config["clone"])
    checkout = _clone_step(clone)
    if checkout is not None:
        steps.append(checkout)

    cache_names = as_list(config.get("caches"))
    if cache_names:
        steps.append(durations.make_step(
            "restore caches",
            kind=StepKind.CACHE,
            with_args={"caches": cache_names},
            caches=cache_ecosystems(cache_names, custom_caches),
        ))
    steps.extend(_script_steps(config.get("script")))
    steps.extend(_script_steps(config.get("after-script")))
    steps = durations.apply_cache_discounts(steps)

    artifacts = config.get("artifacts")
    download = True
    if isinstance(artifacts, dict):
        download = artifacts.get("download") is not False
        produced = as_list(artifacts.get("paths"))
    else:
        produced = as_list(artifacts)

    runner = _image(config.get("image")) or global_image
    if config.get("runs-on"):
        runner = ", ".join(as_list(config["runs-on"]))
    if config.get("size"):
        runner = f"{runner} [{config['size']}]"

    condition = None
    if config.get("trigger") == "manual":
        condition = "manual"
    elif _changeset_paths(config):
        condition = f"changesets: {', '.join(_changeset_paths(config))}"

    deployment = config.get("deployment")
    return Job(
        name=entry.node,
        steps=tuple(steps),
        needs=entry.needs,
        display_name=str(config.get("name") or ""),
        runner=runner,
        stage=entry.pipeline,
        condition=condition,
        environment=str(deployment) if deployment else None,
        # sequence order, not a declared dependency
        explicit_needs=False,
        produces=frozenset(produced),
        consumes=frozenset({"*"}) if download else frozenset(),
    )
