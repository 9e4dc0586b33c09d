"""
Monte Carlo simulation of pipeline wall time.

Every trial samples each job's duration from a normal distribution around
its estimate, clipped to [base * max(0.1, 1 - 3v), base * (1 + 3v)], and
evaluates the critical path with those durations. Trial i draws from its own
`random.Random(derive_seed(seed, i))`, so results do not depend on how the
trials are split across worker threads.
"""
from __future__ import annotations

import hashlib
import logging
import math
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from . import settings
from .analyzer.critical_path import longest_path
from .dag import PipelineDag
from .schemas import HistogramBucketOut, JobSimulationOut, SimulationOut

logger = logging.getLogger(__name__)

HISTOGRAM_BUCKETS = 20
CHUNK_SIZE = 250

# (pipeline duration, sampled job durations, critical path job names)
Trial = Tuple[float, Dict[str, float], Tuple[str, ...]]


@dataclass(frozen=True)
class JobStats:
    job_name: str
    mean_secs: float
    p50_secs: float
    p90_secs: float
    on_critical_path_pct: float


@dataclass(frozen=True)
class HistogramBucket:
    lower_secs: float
    upper_secs: float
    count: int


@dataclass(frozen=True)
class SimulationResult:
    pipeline_name: str
    runs: int
    variance: float
    seed: int
    mean_secs: float
    std_dev_secs: float
    min_secs: float
    max_secs: float
    p50_secs: float
    p75_secs: float
    p90_secs: float
    p99_secs: float
    histogram: Tuple[HistogramBucket, ...]
    job_stats: Tuple[JobStats, ...]

    def to_schema(self) -> SimulationOut:
        return SimulationOut(
            pipeline_name=self.pipeline_name,
            runs=self.runs,
            variance=self.variance,
            seed=self.seed,
            mean_secs=self.mean_secs,
            std_dev_secs=self.std_dev_secs,
            min_secs=self.min_secs,
            max_secs=self.max_secs,
            p50_secs=self.p50_secs,
            p75_secs=self.p75_secs,
            p90_secs=self.p90_secs,
            p99_secs=self.p99_secs,
            histogram=[
                HistogramBucketOut(lower_secs=b.lower_secs, upper_secs=b.upper_secs, count=b.count)
                for b in self.histogram
            ],
            job_stats=[
                JobSimulationOut(
                    job_name=s.job_name,
                    mean_secs=s.mean_secs,
                    p50_secs=s.p50_secs,
                    p90_secs=s.p90_secs,
                    on_critical_path_pct=s.on_critical_path_pct,
                )
                for s in self.job_stats
            ],
        )


def derive_seed(seed: int, trial: int) -> int:
    digest = hashlib.blake2b(f"{seed}:{trial}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big")


def sample_duration(rng: random.Random, base: float, variance: float) -> float:
    if base <= 0:
        return 0.0
    low = base * max(0.1, 1.0 - 3.0 * variance)
    high = base * (1.0 + 3.0 * variance)
    return min(max(rng.gauss(base, base * variance), low), high)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    index = round(p / 100.0 * (len(sorted_values) - 1))
    return sorted_values[min(max(index, 0), len(sorted_values) - 1)]


def _run_chunk(dag: PipelineDag, base: Dict[str, float], seed: int, variance: float,
               start: int, stop: int) -> List[Trial]:
    trials: List[Trial] = []
    for i in range(start, stop):
        rng = random.Random(derive_seed(seed, i))
        sampled = {name: sample_duration(rng, base[name], variance) for name in dag.job_names}
        path, duration = longest_path(dag, sampled)
        trials.append((duration, sampled, tuple(path)))
    return trials


def histogram(sorted_values: Sequence[float], buckets: int = HISTOGRAM_BUCKETS) -> List[HistogramBucket]:
    if not sorted_values:
        return []
    low, high = sorted_values[0], sorted_values[-1]
    if high <= low:
        return [HistogramBucket(low, high, len(sorted_values))]

    width = (high - low) / buckets
    counts = [0] * buckets
    for value in sorted_values:
        counts[min(int((value - low) / width), buckets - 1)] += 1
    return [
        HistogramBucket(low + i * width, low + (i + 1) * width, count)
        for i, count in enumerate(counts)
    ]


def simulate(
    dag: PipelineDag,
    runs: Optional[int] = None,
    variance: Optional[float] = None,
    seed: Optional[int] = None,
    workers: Optional[int] = None,
) -> SimulationResult:
    runs = settings.SIMULATION_RUNS if runs is None else runs
    variance = settings.SIMULATION_VARIANCE if variance is None else variance
    seed = settings.SIMULATION_SEED if seed is None else seed
    workers = settings.SIMULATION_WORKERS if workers is None else workers
    if runs < 1:
        raise ValueError(f"runs must be at least 1, got {runs}")
    if variance < 0:
        raise ValueError(f"variance must not be negative, got {variance}")

    base = dag.durations()
    bounds = [(s, min(s + CHUNK_SIZE, runs)) for s in range(0, runs, CHUNK_SIZE)]
    logger.debug("Simulating %s: %d runs in %d chunk(s)", dag.name, runs, len(bounds))

    trials: List[Trial] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_run_chunk, dag, base, seed, variance, s, e) for s, e in bounds]
        # collected in submission order: trial index order
        for fut in futures:
            trials.extend(fut.result())

    totals = sorted(t[0] for t in trials)
    mean = math.fsum(totals) / runs
    std_dev = math.sqrt(math.fsum((d - mean) ** 2 for d in totals) / runs)

    on_path: Dict[str, int] = {name: 0 for name in dag.job_names}
    for _, _, path in trials:
        for name in path:
            on_path[name] += 1

    stats = []
    for name in dag.job_names:
        samples = sorted(t[1][name] for t in trials)
        stats.append(JobStats(
            job_name=name,
            mean_secs=math.fsum(samples) / runs,
            p50_secs=percentile(samples, 50),
            p90_secs=percentile(samples, 90),
            on_critical_path_pct=on_path[name] / runs * 100.0,
        ))
    stats.sort(key=lambda s: (-s.on_critical_path_pct, s.job_name))

    return SimulationResult(
        pipeline_name=dag.name,
        runs=runs,
        variance=variance,
        seed=seed,
        mean_secs=mean,
        std_dev_secs=std_dev,
        min_secs=totals[0],
        max_secs=totals[-1],
        p50_secs=percentile(totals, 50),
        p75_secs=percentile(totals, 75),
        p90_secs=percentile(totals, 90),
        p99_secs=percentile(totals, 99),
        histogram=tuple(histogram(totals)),
        job_stats=tuple(stats),
    )
