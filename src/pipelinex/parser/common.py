from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ..errors import ConfigParseError
from ..model import Job, MatrixStrategy, Trigger
from .. import yamlio

# expanding a matrix past this many combinations to count include/exclude
# matches is not worth it; the plain product is reported instead
_MAX_EXPANDED = 4096


@dataclass
class ParsedPipeline:
    """Provider-neutral parse result, before calibration and DAG validation."""
    name: str
    jobs: List[Job]
    triggers: List[Trigger] = field(default_factory=list)
    concurrency: Optional[str] = None
    has_path_filter: bool = False


def as_list(value: Any) -> List[str]:
    """`x` -> ["x"], `[x, y]` -> ["x", "y"], None -> []."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def flatten_script(value: Any) -> List[str]:
    """Script blocks may nest lists (YAML anchors); flatten to command strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    out: List[str] = []
    if isinstance(value, (list, tuple)):
        for v in value:
            out.extend(flatten_script(v))
    else:
        out.append(str(value))
    return out


def walk_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield str(k)
            yield from walk_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from walk_strings(v)


def step_label(name: Any, run: Optional[str], uses: Optional[str]) -> str:
    if name:
        return str(name)
    if uses:
        return uses
    if run:
        first = run.strip().splitlines()[0] if run.strip() else ""
        return first[:60] or "run"
    return "Unnamed step"


def structure_error(message: str, text: str, source_file: str, key: Optional[str] = None) -> ConfigParseError:
    line = yamlio.find_line(text, key) if key else None
    return ConfigParseError(message, source_file, line)


def build_matrix(
    variables: Dict[str, Sequence[Any]],
    include: Sequence[Dict[str, Any]] = (),
    exclude: Sequence[Dict[str, Any]] = (),
) -> MatrixStrategy:
    """
    Count the jobs a GitHub-style matrix expands to.

    Excludes remove every combination they partially match. An include entry
    extends every combination it does not contradict on an original variable;
    when it contradicts all of them it becomes a combination of its own.
    """
    axes = {k: tuple(v) for k, v in variables.items()}
    include = tuple(dict(i) for i in include if isinstance(i, dict))
    exclude = tuple(dict(e) for e in exclude if isinstance(e, dict))

    if not axes:
        total = len(include) or 1
        return MatrixStrategy({}, include, exclude, total)

    product = 1
    for values in axes.values():
        product *= len(values)

    if product > _MAX_EXPANDED:
        return MatrixStrategy(axes, include, exclude, product)

    keys = list(axes)
    combos: List[Dict[str, Any]] = [
        dict(zip(keys, values)) for values in itertools.product(*(axes[k] for k in keys))
    ]
    combos = [c for c in combos if not any(_matches(c, e) for e in exclude)]

    extra = 0
    for inc in include:
        originals = {k: v for k, v in inc.items() if k in axes}
        if not any(_matches(c, originals) for c in combos):
            extra += 1

    return MatrixStrategy(axes, include, exclude, len(combos) + extra)


def _matches(combo: Dict[str, Any], partial: Dict[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in partial.items())


def matrix_values(raw: Dict[str, Any]) -> Tuple[Dict[str, Tuple[Any, ...]], list, list]:
    """Split a `strategy.matrix` mapping into (axes, include, exclude)."""
    axes: Dict[str, Tuple[Any, ...]] = {}
    for k, v in raw.items():
        if k in ("include", "exclude"):
            continue
        if isinstance(v, list):
            axes[str(k)] = tuple(v)
        elif isinstance(v, (str, int, float, bool)):
            # `${{ fromJSON(...) }}` and friends: one opaque value
            axes[str(k)] = (v,)
    include = raw.get("include") or []
    exclude = raw.get("exclude") or []
    if not isinstance(include, list):
        include = []
    if not isinstance(exclude, list):
        exclude = []
    return axes, include, exclude
