from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from ..model import Step


class FixNotApplicable(Exception):
    """The writer cannot express this fix for the document; the fix is skipped."""


def insert_after(mapping: Dict[Any, Any], after: Any, key: Any, value: Any) -> None:
    """Set `key` in place, right after `after` (or at the end) when it is new."""
    if key in mapping or after not in mapping:
        mapping[key] = value
        return
    items = list(mapping.items())
    mapping.clear()
    for k, v in items:
        mapping[k] = v
        if k == after:
            mapping[key] = value


def job_config(container: Dict[str, Any], job: str) -> Dict[str, Any]:
    config = container.get(job)
    if not isinstance(config, dict):
        raise FixNotApplicable(f"job '{job}' not found in document")
    return config


def raw_index(raw_steps: List[Any], parse: Callable[[Any, int], Optional[Step]], target: Step) -> int:
    """Position of the raw step that parses to `target`, matched on name, command and action."""
    wanted = (target.name, target.run, target.uses)
    for i, raw in enumerate(raw_steps):
        step = parse(raw, i)
        if step is not None and (step.name, step.run, step.uses) == wanted:
            return i
    raise FixNotApplicable(f"step '{target.name}' is not written out in the job")
