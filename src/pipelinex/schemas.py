"""
Wire schemas.

`PipelineStatistics` is the history input produced by an external run-history
fetcher and passed in with `--history`. The `*Out` models are the stable JSON
shapes written by `analyze --format json`, `cost`, `simulate` and `what-if`.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, Field

# -------------------- History input --------------------


class JobTimingData(BaseModel):
    job_name: str
    durations_sec: list[float] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    avg_duration_sec: float = 0.0
    p50_duration_sec: float = 0.0
    p90_duration_sec: float = 0.0
    p99_duration_sec: float = 0.0
    variance: float = 0.0

    @property
    def failure_rate(self) -> float:
        total = self.success_count + self.failure_count
        return self.failure_count / total if total else 0.0


class PipelineStatistics(BaseModel):
    workflow_name: str = ""
    total_runs: int = 0
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    avg_duration_sec: float = 0.0
    p50_duration_sec: float = 0.0
    p90_duration_sec: float = 0.0
    p99_duration_sec: float = 0.0
    job_timings: list[JobTimingData] = Field(default_factory=list)
    flaky_jobs: list[str] = Field(default_factory=list)

    def timing_for(self, *names: str) -> Optional[JobTimingData]:
        """First timing entry matching any of `names` (job id or display name)."""
        wanted = [n for n in names if n]
        for n in wanted:
            for t in self.job_timings:
                if t.job_name == n:
                    return t
        return None


# -------------------- Report output --------------------


class FindingOut(BaseModel):
    severity: str
    category: str
    title: str
    description: str
    affected_jobs: list[str]
    recommendation: str
    fix_command: Optional[str] = None
    estimated_savings_secs: Optional[float] = None
    confidence: float = Field(ge=0.0, le=1.0)
    auto_fixable: bool


class HealthScoreOut(BaseModel):
    total_score: float
    duration_score: float
    success_rate_score: float
    parallelization_score: float
    caching_score: float
    issue_score: float
    grade: str
    recommendations: list[str] = Field(default_factory=list)


class AnalysisReportOut(BaseModel):
    pipeline_name: str
    source_file: str
    provider: str
    job_count: int
    step_count: int
    max_parallelism: int
    critical_path: list[str]
    critical_path_duration_secs: float
    total_estimated_duration_secs: float
    optimized_duration_secs: float
    findings: list[FindingOut]
    health_score: Optional[HealthScoreOut] = None


class CostEstimateOut(BaseModel):
    pipeline_name: str
    runner: str
    rate_per_minute: float
    runs_per_month: int
    current_duration_secs: float
    optimized_duration_secs: float
    current_billable_minutes: int
    optimized_billable_minutes: int
    current_monthly_cost: float
    optimized_monthly_cost: float
    monthly_savings: float
    annual_savings: float
    developer_hours_lost_per_month: float
    opportunity_cost_per_month: float
    waste_ratio: float


class JobSimulationOut(BaseModel):
    job_name: str
    mean_secs: float
    p50_secs: float
    p90_secs: float
    on_critical_path_pct: float


class HistogramBucketOut(BaseModel):
    lower_secs: float
    upper_secs: float
    count: int


class SimulationOut(BaseModel):
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
    histogram: list[HistogramBucketOut]
    job_stats: list[JobSimulationOut]


class WhatIfOut(BaseModel):
    pipeline_name: str
    original_duration_secs: float
    modified_duration_secs: float
    duration_delta_secs: float
    improvement_pct: float
    original_critical_path: list[str]
    modified_critical_path: list[str]
    original_job_count: int
    modified_job_count: int
    original_findings_count: int
    modified_findings_count: int
    runs_per_month: int
    original_monthly_cost: float
    modified_monthly_cost: float
    changes_applied: list[str]
    warnings: list[str]


def dump_json(model: BaseModel) -> str:
    return model.model_dump_json(indent=2)


def dump_many(models: list[BaseModel]) -> str:
    """Several reports as one JSON array (directory input)."""
    data: list[Any] = [m.model_dump(mode="json") for m in models]
    return json.dumps(data, indent=2)
