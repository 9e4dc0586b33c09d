"""Console output formatting utilities for pipelinex."""

from __future__ import annotations

import sys
from typing import Optional

from ..analyzer.report import AnalysisReport, Finding, Severity, format_duration
from ..cost import CostEstimate
from ..optimizer import OptimizationResult
from ..simulator import SimulationResult
from ..whatif import WhatIfResult

RULE = "=" * 60
BAR_WIDTH = 40


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    # -----------------------------------------------------------------
    # analyze
    # -----------------------------------------------------------------
    def print_report(self, report: AnalysisReport) -> None:
        print(f"\npipelinex: analyzing {report.source_file or report.pipeline_name}")

        self.print_header("Pipeline Structure")
        print(f"  |- {report.job_count} jobs, {report.step_count} steps")
        print(f"  |- Max parallelism: {report.max_parallelism}")
        print(
            f"  |- Critical path: {' -> '.join(report.critical_path)} "
            f"({format_duration(report.critical_path_duration_secs)})"
        )
        print(f"  |- Provider: {report.provider}")
        print(f"\n{RULE}\n")

        if not report.findings:
            print("  OK  No significant bottlenecks detected.")
        for finding in report.findings:
            self.print_finding(finding)
            print()

        print(RULE)
        self.print_header("Summary")
        print(f"  |- Current est. pipeline time:  {format_duration(report.total_estimated_duration_secs)}")
        print(f"  |- Optimized projection:        {format_duration(report.optimized_duration_secs)}")
        print(f"  |- Potential time savings:      {report.potential_improvement_pct:.1f}%")
        print(
            f"  |- Findings: {report.count(Severity.CRITICAL)} critical, "
            f"{report.count(Severity.HIGH)} high, {report.count(Severity.MEDIUM)} medium"
        )
        if report.health_score is not None:
            health = report.health_score
            print(f"  |- Pipeline health: {health.total_score:.0f}/100 (grade {health.grade})")
            for rec in health.recommendations:
                print(f"       * {rec}")
        if any(f.auto_fixable for f in report.findings):
            print(f"\n  Run 'pipelinex optimize {report.source_file}' to generate an optimized config.")

    def print_finding(self, finding: Finding) -> None:
        print(f"  [{finding.severity.value.upper()}] {finding.title}")
        print(f"     {finding.description}")
        print(f"     Fix: {finding.recommendation}")
        if finding.estimated_savings_secs is not None:
            print(f"     Estimated savings: {finding.savings_display()} (confidence {finding.confidence:.0%})")
        if finding.fix_command:
            print(f"     Auto-fix: {finding.fix_command}")

    # -----------------------------------------------------------------
    # optimize
    # -----------------------------------------------------------------
    def print_optimization_summary(self, result: OptimizationResult) -> None:
        """Summary of applied/skipped fixes. Goes to stderr so stdout stays a valid config."""
        before = result.original_duration_secs
        after = result.optimized_duration_secs
        print(
            f"Optimized {result.original.source_file or result.original.name}: "
            f"{format_duration(before)} -> {format_duration(after)}, "
            f"{len(result.applied)} change(s) applied",
            file=sys.stderr,
        )
        for change in result.applied:
            print(f"  + {change.description}", file=sys.stderr)
        if self.debug:
            for skip in result.skipped:
                print(f"  - skipped {skip.fix.render()}: {skip.reason}", file=sys.stderr)

    # -----------------------------------------------------------------
    # cost
    # -----------------------------------------------------------------
    def print_cost(self, estimate: CostEstimate, team_size: int) -> None:
        self.print_header(f"Cost estimate: {estimate.pipeline_name}")
        print(f"  Runner: {estimate.runner} (${estimate.rate_per_minute:.3f}/min)")
        print(f"  Runs per month: {estimate.runs_per_month}, team size: {team_size}")
        print(
            f"  Pipeline duration:   {format_duration(estimate.current_duration_secs)} now, "
            f"{format_duration(estimate.optimized_duration_secs)} optimized"
        )
        print(f"  Compute cost:        ${estimate.current_monthly_cost:,.2f}/month now")
        print(f"                       ${estimate.optimized_monthly_cost:,.2f}/month optimized")
        print(
            f"  Savings:             ${estimate.monthly_savings:,.2f}/month "
            f"(${estimate.annual_savings:,.2f}/year)"
        )
        print(f"  Developer wait:      {estimate.developer_hours_lost_per_month:,.1f} hours/month")
        print(f"  Opportunity cost:    ${estimate.opportunity_cost_per_month:,.2f}/month")
        print(f"  Waste ratio:         {estimate.waste_ratio:.1%}")

    # -----------------------------------------------------------------
    # simulate
    # -----------------------------------------------------------------
    def print_simulation(self, result: SimulationResult) -> None:
        self.print_header(
            f"Monte Carlo simulation: {result.pipeline_name} "
            f"({result.runs} runs, variance {result.variance:.0%}, seed {result.seed})"
        )
        print(f"  Mean:    {format_duration(result.mean_secs)} (std dev {result.std_dev_secs:.1f}s)")
        print(f"  Range:   {format_duration(result.min_secs)} - {format_duration(result.max_secs)}")
        print(
            f"  p50 {format_duration(result.p50_secs)}   p75 {format_duration(result.p75_secs)}   "
            f"p90 {format_duration(result.p90_secs)}   p99 {format_duration(result.p99_secs)}"
        )

        peak = max((b.count for b in result.histogram), default=0)
        if peak:
            print()
            for bucket in result.histogram:
                bar = "#" * round(bucket.count / peak * BAR_WIDTH)
                print(f"  {bucket.lower_secs:8.0f}s-{bucket.upper_secs:<8.0f}s {bar} {bucket.count}")

        print()
        print(f"  {'Job':<30} {'mean':>8} {'p50':>8} {'p90':>8} {'critical':>9}")
        for stats in result.job_stats:
            print(
                f"  {stats.job_name:<30} {format_duration(stats.mean_secs):>8} "
                f"{format_duration(stats.p50_secs):>8} {format_duration(stats.p90_secs):>8} "
                f"{stats.on_critical_path_pct:>8.1f}%"
            )

    # -----------------------------------------------------------------
    # what-if
    # -----------------------------------------------------------------
    def print_what_if(self, result: WhatIfResult) -> None:
        self.print_header(f"What-if: {result.original.name}")
        for description in result.applied:
            print(f"  + {description}")
        for warning in result.warnings:
            print(f"  ! {warning}")
        if not result.applied and not result.warnings:
            print("  (no changes)")

        print()
        print(
            f"  Duration:        {format_duration(result.original_duration_secs)} -> "
            f"{format_duration(result.modified_duration_secs)} "
            f"({result.duration_delta_secs:+.0f}s, {abs(result.improvement_pct):.1f}% "
            f"{'faster' if result.improvement_pct >= 0 else 'slower'})"
        )
        print(f"  Critical path:   {' -> '.join(result.original_critical_path)}")
        print(f"              ->   {' -> '.join(result.modified_critical_path)}")
        print(f"  Jobs:            {result.original.job_count} -> {result.modified.job_count}")
        print(f"  Findings:        {result.original_findings_count} -> {result.modified_findings_count}")
        print(
            f"  Compute cost:    ${result.original_monthly_cost:,.2f} -> "
            f"${result.modified_monthly_cost:,.2f}/month ({result.runs_per_month} runs)"
        )

    # -----------------------------------------------------------------
    # errors / misc
    # -----------------------------------------------------------------
    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
