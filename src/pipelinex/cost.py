"""
Cost estimation.

Billing rounds every run up to whole minutes:
    cost = ceil(duration_secs / 60) * rate_per_minute * runs_per_month
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import List, Optional

from . import settings
from .dag import PipelineDag
from .model import Job
from .schemas import CostEstimateOut

# Hosted-runner list prices, USD per minute.
RUNNER_RATES = {
    "linux": 0.008,
    "windows": 0.016,
    "macos": 0.08,
}

# `${{ matrix.os }}` (GitHub) or `$(imageName)` (Azure matrix legs)
_MATRIX_REF = re.compile(r"matrix\.([A-Za-z0-9_-]+)|\$\(([A-Za-z0-9_.-]+)\)")


def runner_family(label: str) -> str:
    lowered = label.lower()
    if "macos" in lowered or "mac-" in lowered or "osx" in lowered:
        return "macos"
    if "windows" in lowered or "win-" in lowered or lowered.startswith("win/"):
        return "windows"
    return "linux"


def rate_for_runner(label: str) -> float:
    return RUNNER_RATES[runner_family(label)]


def job_runner_labels(job: Job) -> List[str]:
    """Runner labels a job can land on, expanding matrix variable references."""
    refs = [github_ref or azure_ref for github_ref, azure_ref in _MATRIX_REF.findall(job.runner)]
    if not refs or job.matrix is None:
        return [job.runner]
    labels: List[str] = []
    for ref in refs:
        labels.extend(str(v) for v in job.matrix.variables.get(ref, ()))
        labels.extend(str(inc[ref]) for inc in job.matrix.include if ref in inc)
    return labels or [job.runner]


def pipeline_runner(dag: PipelineDag) -> str:
    """The most expensive runner label the pipeline uses."""
    labels = [label for job in dag.jobs for label in job_runner_labels(job)]
    if not labels:
        return "ubuntu-latest"
    return max(labels, key=lambda label: (rate_for_runner(label), -labels.index(label)))


def billable_minutes(duration_secs: float) -> int:
    return int(math.ceil(max(duration_secs, 0.0) / 60.0))


def cost(duration_secs: float, runs_per_month: int, rate_per_minute: float) -> float:
    return billable_minutes(duration_secs) * rate_per_minute * runs_per_month


@dataclass(frozen=True)
class CostEstimate:
    pipeline_name: str
    runner: str
    rate_per_minute: float
    runs_per_month: int
    current_duration_secs: float
    optimized_duration_secs: float
    current_monthly_cost: float
    optimized_monthly_cost: float
    developer_hours_lost_per_month: float
    opportunity_cost_per_month: float
    waste_ratio: float

    @property
    def monthly_savings(self) -> float:
        return self.current_monthly_cost - self.optimized_monthly_cost

    @property
    def annual_savings(self) -> float:
        return self.monthly_savings * 12

    def to_schema(self) -> CostEstimateOut:
        return CostEstimateOut(
            pipeline_name=self.pipeline_name,
            runner=self.runner,
            rate_per_minute=self.rate_per_minute,
            runs_per_month=self.runs_per_month,
            current_duration_secs=self.current_duration_secs,
            optimized_duration_secs=self.optimized_duration_secs,
            current_billable_minutes=billable_minutes(self.current_duration_secs),
            optimized_billable_minutes=billable_minutes(self.optimized_duration_secs),
            current_monthly_cost=round(self.current_monthly_cost, 2),
            optimized_monthly_cost=round(self.optimized_monthly_cost, 2),
            monthly_savings=round(self.monthly_savings, 2),
            annual_savings=round(self.annual_savings, 2),
            developer_hours_lost_per_month=round(self.developer_hours_lost_per_month, 2),
            opportunity_cost_per_month=round(self.opportunity_cost_per_month, 2),
            waste_ratio=round(self.waste_ratio, 4),
        )


def estimate_costs(
    current_secs: float,
    optimized_secs: float,
    *,
    pipeline_name: str = "",
    runner: str = "ubuntu-latest",
    runs_per_month: Optional[int] = None,
    team_size: Optional[int] = None,
    hourly_rate: Optional[float] = None,
    rate_per_minute: Optional[float] = None,
) -> CostEstimate:
    runs = settings.RUNS_PER_MONTH if runs_per_month is None else runs_per_month
    team = settings.TEAM_SIZE if team_size is None else team_size
    hourly = settings.HOURLY_RATE if hourly_rate is None else hourly_rate
    rate = rate_for_runner(runner) if rate_per_minute is None else rate_per_minute

    # each developer waits on the runs they trigger
    wait_hours_per_dev = current_secs / 3600.0 * runs / max(team, 1)
    hours_lost = wait_hours_per_dev * max(team, 1)
    waste = max(current_secs - optimized_secs, 0.0) / current_secs if current_secs > 0 else 0.0

    return CostEstimate(
        pipeline_name=pipeline_name,
        runner=runner,
        rate_per_minute=rate,
        runs_per_month=runs,
        current_duration_secs=current_secs,
        optimized_duration_secs=optimized_secs,
        current_monthly_cost=cost(current_secs, runs, rate),
        optimized_monthly_cost=cost(optimized_secs, runs, rate),
        developer_hours_lost_per_month=hours_lost,
        opportunity_cost_per_month=hours_lost * hourly,
        waste_ratio=waste,
    )
