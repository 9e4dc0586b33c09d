# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import ConfigParseError, CyclicDependencyError, UnknownJobReferenceError
from .model import Job, Provider, Trigger

WHITE, GRAY, BLACK = 0, 1, 2


@dataclass(frozen=True)
class PipelineDag:
    """
    Jobs stored in an arena, edges stored as index sets.

    preds[i] holds the jobs job i needs (they run BEFORE it), succs[i] the
    jobs that need job i. Built once by `build_dag`; never mutated. The
    optimizer derives a new instance with `derived_from` set.
    """
    name: str
    source_file: str
    provider: Provider
    jobs: Tuple[Job, ...]
    index: Dict[str, int]
    preds: Tuple[FrozenSet[int], ...]
    succs: Tuple[FrozenSet[int], ...]
    level_names: Tuple[Tuple[str, ...], ...]

    triggers: Tuple[Trigger, ...] = ()
    # workflow-level cancellation group
    concurrency: Optional[str] = None
    has_path_filter: bool = False
    document: Dict[str, Any] = field(default_factory=dict)
    source_text: str = field(default="", repr=False)
    statistics: Optional[Any] = None
    # job name -> factor applied to heuristic step durations from history
    calibration: Dict[str, float] = field(default_factory=dict)
    derived_from: Optional["PipelineDag"] = field(default=None, repr=False)

    # -----------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------
    def job(self, name: str) -> Job:
        return self.jobs[self.index[name]]

    def __contains__(self, name: str) -> bool:
        return name in self.index

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]

    @property
    def job_count(self) -> int:
        return len(self.jobs)

    @property
    def step_count(self) -> int:
        return sum(len(j.steps) for j in self.jobs)

    def predecessors(self, name: str) -> List[str]:
        return sorted(self.jobs[i].name for i in self.preds[self.index[name]])

    def successors(self, name: str) -> List[str]:
        return sorted(self.jobs[i].name for i in self.succs[self.index[name]])

    def roots(self) -> List[str]:
        return sorted(j.name for i, j in enumerate(self.jobs) if not self.preds[i])

    def sinks(self) -> List[str]:
        return sorted(j.name for i, j in enumerate(self.jobs) if not self.succs[i])

    def edges(self) -> List[Tuple[str, str]]:
        """All (dependency, dependent) pairs, sorted."""
        out = []
        for i, job in enumerate(self.jobs):
            for p in self.preds[i]:
                out.append((self.jobs[p].name, job.name))
        return sorted(out)

    def ancestors(self, name: str, skip_edge: Optional[Tuple[str, str]] = None) -> FrozenSet[str]:
        """
        Every job that must finish before `name` starts. With `skip_edge`
        set to (dep, dependent), answers as if that one edge were removed.
        """
        skip = None
        if skip_edge is not None:
            skip = (self.index[skip_edge[0]], self.index[skip_edge[1]])
        seen = set()
        stack = [self.index[name]]
        while stack:
            i = stack.pop()
            for p in self.preds[i]:
                if (p, i) != skip and p not in seen:
                    seen.add(p)
                    stack.append(p)
        return frozenset(self.jobs[i].name for i in seen)

    def descendants(self, name: str) -> FrozenSet[str]:
        seen = set()
        stack = [self.index[name]]
        while stack:
            for s in self.succs[stack.pop()]:
                if s not in seen:
                    seen.add(s)
                    stack.append(s)
        return frozenset(self.jobs[i].name for i in seen)

    # -----------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------
    def levels(self) -> List[List[str]]:
        """Topological levels; every job in a level can run in parallel."""
        return [list(level) for level in self.level_names]

    def topological_order(self) -> List[str]:
        return [name for level in self.level_names for name in level]

    def max_parallelism(self) -> int:
        return max((len(level) for level in self.level_names), default=0)

    def durations(self) -> Dict[str, float]:
        return {j.name: j.estimated_duration for j in self.jobs}


def _find_cycle(jobs: List[Job], preds: List[FrozenSet[int]]) -> Optional[List[str]]:
    """
    Iterative DFS along `needs` edges with white/gray/black colouring.
    A needs-edge into a gray job closes a cycle; the path on the stack from
    that job onwards is the cycle.
    """
    color = [WHITE] * len(jobs)
    for start in range(len(jobs)):
        if color[start] != WHITE:
            continue
        color[start] = GRAY
        stack = [(start, iter(sorted(preds[start])))]
        while stack:
            node, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                color[node] = BLACK
                stack.pop()
                continue
            if color[nxt] == GRAY:
                path = [n for n, _ in stack]
                cycle = path[path.index(nxt):] + [nxt]
                return [jobs[i].name for i in cycle]
            if color[nxt] == WHITE:
                color[nxt] = GRAY
                stack.append((nxt, iter(sorted(preds[nxt]))))
    return None


def _topo_levels(names: List[str], succs: List[FrozenSet[int]], indeg: List[int]) -> List[Tuple[str, ...]]:
    indeg = list(indeg)  # copy (we mutate it)
    q = deque(sorted((i for i, d in enumerate(indeg) if d == 0), key=lambda i: names[i]))

    levels: List[Tuple[str, ...]] = []
    while q:
        level_size = len(q)
        level: List[int] = []
        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            for child in sorted(succs[node], key=lambda i: names[i]):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(tuple(sorted(names[i] for i in level)))
    return levels


def build_dag(
    jobs: Iterable[Job],
    *,
    name: str,
    source_file: str,
    provider: Provider,
    triggers: Iterable[Trigger] = (),
    concurrency: Optional[str] = None,
    has_path_filter: bool = False,
    document: Optional[Dict[str, Any]] = None,
    source_text: str = "",
    statistics: Optional[Any] = None,
    calibration: Optional[Dict[str, float]] = None,
    derived_from: Optional[PipelineDag] = None,
) -> PipelineDag:
    """
    Build a PipelineDag from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigParseError(f"Duplicate job names found: {dupes}", source_file)

    index = {n: i for i, n in enumerate(names)}
    preds: List[FrozenSet[int]] = []
    for job in jobs:
        for need in job.needs:
            if need not in index:
                raise UnknownJobReferenceError(job.name, need, names)
        preds.append(frozenset(index[n] for n in job.needs))

    succ_sets: List[set] = [set() for _ in jobs]
    for i, ps in enumerate(preds):
        for p in ps:
            succ_sets[p].add(i)
    succs = [frozenset(s) for s in succ_sets]

    cycle = _find_cycle(jobs, preds)
    if cycle is not None:
        raise CyclicDependencyError(cycle)

    levels = _topo_levels(names, succs, [len(p) for p in preds])

    return PipelineDag(
        name=name,
        source_file=source_file,
        provider=provider,
        jobs=tuple(jobs),
        index=index,
        preds=tuple(preds),
        succs=tuple(succs),
        level_names=tuple(levels),
        triggers=tuple(triggers),
        concurrency=concurrency,
        has_path_filter=has_path_filter,
        document=document if document is not None else {},
        source_text=source_text,
        statistics=statistics,
        calibration=dict(calibration or {}),
        derived_from=derived_from,
    )
