from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from ..model import Provider
from ..schemas import AnalysisReportOut, FindingOut, HealthScoreOut


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]


_PRIORITY = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
    Severity.INFO: 1,
}


class Category(str, Enum):
    CACHING = "caching"
    PARALLELIZATION = "parallelization"
    WASTE = "waste"
    COST = "cost"
    FLAKINESS = "flakiness"


class FixKind(str, Enum):
    ADD_CACHE = "add-cache"
    REMOVE_NEEDS = "remove-needs"
    SHALLOW_CLONE = "shallow-clone"
    ADD_CONCURRENCY = "add-concurrency"
    ADD_PATH_FILTER = "add-path-filter"
    REDUCE_MATRIX = "reduce-matrix"


# Optimizer application order: caching, then parallelization, then waste.
FIX_ORDER: Dict[FixKind, int] = {
    FixKind.ADD_CACHE: 0,
    FixKind.REMOVE_NEEDS: 1,
    FixKind.SHALLOW_CLONE: 2,
    FixKind.ADD_CONCURRENCY: 2,
    FixKind.ADD_PATH_FILTER: 2,
    FixKind.REDUCE_MATRIX: 2,
}

# fix kinds each provider's config writer can express
REWRITABLE: Dict[Provider, FrozenSet[FixKind]] = {
    Provider.GITHUB: frozenset(FixKind),
    Provider.GITLAB: frozenset(FixKind) - {FixKind.ADD_PATH_FILTER},
    Provider.CIRCLECI: frozenset({
        FixKind.ADD_CACHE, FixKind.REMOVE_NEEDS, FixKind.SHALLOW_CLONE, FixKind.REDUCE_MATRIX,
    }),
    Provider.AZURE: frozenset({
        FixKind.ADD_CACHE, FixKind.REMOVE_NEEDS, FixKind.SHALLOW_CLONE, FixKind.ADD_PATH_FILTER,
    }),
    Provider.BITBUCKET: frozenset({FixKind.ADD_CACHE}),
}


def can_rewrite(provider: Provider, kind: FixKind) -> bool:
    return kind in REWRITABLE.get(provider, frozenset())


@dataclass(frozen=True)
class FixAction:
    """
    A machine-applicable fix. `job` is empty for pipeline-level fixes;
    `params` carries the kind-specific arguments (e.g. the ecosystem for a
    cache, the dependency to drop for remove-needs).
    """
    kind: FixKind
    job: str = ""
    params: Tuple[Tuple[str, Any], ...] = ()

    def param(self, key: str, default: Any = None) -> Any:
        return dict(self.params).get(key, default)

    def render(self) -> str:
        parts = [f"pipelinex fix {self.kind.value}"]
        if self.job:
            parts.append(f"--job {shlex.quote(self.job)}")
        for k, v in self.params:
            parts.append(f"--{k} {shlex.quote(str(v))}")
        return " ".join(parts)

    def sort_key(self) -> Tuple[int, str, str]:
        return FIX_ORDER[self.kind], self.job, self.render()


@dataclass(frozen=True)
class Finding:
    severity: Severity
    category: Category
    title: str
    description: str
    affected_jobs: Tuple[str, ...]
    recommendation: str
    estimated_savings_secs: Optional[float] = None
    confidence: float = 1.0
    auto_fixable: bool = False
    fix: Optional[FixAction] = None
    rule: str = ""

    @property
    def fix_command(self) -> Optional[str]:
        return self.fix.render() if self.fix is not None else None

    def savings_display(self) -> str:
        if self.estimated_savings_secs is None:
            return "unknown"
        return format_duration(self.estimated_savings_secs)

    def to_schema(self) -> FindingOut:
        return FindingOut(
            severity=self.severity.value,
            category=self.category.value,
            title=self.title,
            description=self.description,
            affected_jobs=list(self.affected_jobs),
            recommendation=self.recommendation,
            fix_command=self.fix_command,
            estimated_savings_secs=self.estimated_savings_secs,
            confidence=self.confidence,
            auto_fixable=self.auto_fixable,
        )


@dataclass(frozen=True)
class HealthScore:
    total_score: float
    duration_score: float
    success_rate_score: float
    parallelization_score: float
    caching_score: float
    issue_score: float
    grade: str
    recommendations: Tuple[str, ...] = ()

    def to_schema(self) -> HealthScoreOut:
        return HealthScoreOut(
            total_score=round(self.total_score, 2),
            duration_score=round(self.duration_score, 2),
            success_rate_score=round(self.success_rate_score, 2),
            parallelization_score=round(self.parallelization_score, 2),
            caching_score=round(self.caching_score, 2),
            issue_score=round(self.issue_score, 2),
            grade=self.grade,
            recommendations=list(self.recommendations),
        )


@dataclass(frozen=True)
class AnalysisReport:
    pipeline_name: str
    source_file: str
    provider: str
    job_count: int
    step_count: int
    max_parallelism: int
    critical_path: Tuple[str, ...]
    critical_path_duration_secs: float
    total_estimated_duration_secs: float
    optimized_duration_secs: float
    findings: Tuple[Finding, ...] = ()
    health_score: Optional[HealthScore] = None

    @property
    def potential_improvement_pct(self) -> float:
        if self.total_estimated_duration_secs == 0:
            return 0.0
        saved = self.total_estimated_duration_secs - self.optimized_duration_secs
        return saved / self.total_estimated_duration_secs * 100.0

    @property
    def total_savings_secs(self) -> float:
        return sum(f.estimated_savings_secs or 0.0 for f in self.findings)

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.findings if f.severity == severity)

    def to_schema(self) -> AnalysisReportOut:
        return AnalysisReportOut(
            pipeline_name=self.pipeline_name,
            source_file=self.source_file,
            provider=self.provider,
            job_count=self.job_count,
            step_count=self.step_count,
            max_parallelism=self.max_parallelism,
            critical_path=list(self.critical_path),
            critical_path_duration_secs=self.critical_path_duration_secs,
            total_estimated_duration_secs=self.total_estimated_duration_secs,
            optimized_duration_secs=self.optimized_duration_secs,
            findings=[f.to_schema() for f in self.findings],
            health_score=self.health_score.to_schema() if self.health_score else None,
        )


def format_duration(secs: float) -> str:
    """90 -> '1:30', 45 -> '45s'."""
    total = int(round(secs))
    minutes, seconds = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}:{seconds:02d}"
    return f"{seconds}s"


def sort_findings(findings: List[Finding]) -> List[Finding]:
    """Highest severity first; stable within a severity."""
    return sorted(findings, key=lambda f: -f.severity.priority)
