"""
Matrix reduction.

Keeps every value of every variable while dropping most of the cartesian
product: the largest axis runs against the primary (first) value of every
other axis, and each remaining value of another axis runs once next to the
primary value of the largest axis.
"""
from __future__ import annotations

from typing import Any, Dict, List, Sequence


def reduced_combinations(axes: Dict[str, Sequence[Any]]) -> List[Dict[str, Any]]:
    axes = {k: list(v) for k, v in axes.items() if len(v) > 0}
    if not axes:
        return []

    # first declared axis wins ties
    largest = max(axes, key=lambda k: len(axes[k]))
    primary = {k: v[0] for k, v in axes.items()}

    combos = [dict(primary, **{largest: value}) for value in axes[largest]]
    for key, values in axes.items():
        if key == largest:
            continue
        for value in values[1:]:
            combos.append(dict(primary, **{key: value}))
    return combos


def reduced_size(axes: Dict[str, Sequence[Any]]) -> int:
    return len(reduced_combinations(axes))
