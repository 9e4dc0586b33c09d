"""Tests for cost estimation and matrix reduction."""
import pytest

from conftest import make_dag, make_job
from pipelinex.cost import (
    billable_minutes,
    cost,
    estimate_costs,
    job_runner_labels,
    pipeline_runner,
    rate_for_runner,
    runner_family,
)
from pipelinex.matrix import reduced_combinations, reduced_size
from pipelinex.model import MatrixStrategy


class TestBilling:
    def test_rounds_up_to_whole_minutes(self):
        assert billable_minutes(0) == 0
        assert billable_minutes(60) == 1
        assert billable_minutes(60.5) == 2
        assert billable_minutes(-5) == 0

    def test_cost(self):
        assert cost(61, 100, 0.008) == pytest.approx(1.6)

    @pytest.mark.parametrize("runs", [1, 7, 500])
    def test_linear_in_runs(self, runs):
        assert cost(1320, 2 * runs, 0.008) == pytest.approx(2 * cost(1320, runs, 0.008))

    @pytest.mark.parametrize("before, after", [(1320, 441), (3600, 59), (61, 60)])
    def test_savings_follow_billable_minutes(self, before, after):
        rate, runs = 0.016, 300
        saved = cost(before, runs, rate) - cost(after, runs, rate)
        assert saved == pytest.approx((billable_minutes(before) - billable_minutes(after)) * rate * runs)

    def test_zero_runs(self):
        assert cost(1320, 0, 0.08) == 0


class TestRunners:
    @pytest.mark.parametrize("label, family", [
        ("ubuntu-latest", "linux"),
        ("self-hosted", "linux"),
        ("macos-14", "macos"),
        ("windows-2022", "windows"),
    ])
    def test_family(self, label, family):
        assert runner_family(label) == family

    def test_rates(self):
        assert rate_for_runner("ubuntu-22.04") == 0.008
        assert rate_for_runner("windows-latest") == 0.016
        assert rate_for_runner("macos-latest") == 0.08

    def test_matrix_runner_expansion(self):
        job = make_job(
            "test", 60,
            runner="${{ matrix.os }}",
            matrix=MatrixStrategy({"os": ("ubuntu-latest", "macos-latest")}, total_combinations=2),
        )
        assert job_runner_labels(job) == ["ubuntu-latest", "macos-latest"]

    def test_pipeline_runner_picks_most_expensive(self):
        dag = make_dag(
            make_job("a", 60),
            make_job("b", 60, runner="windows-latest"),
            make_job("c", 60, runner="macos-13"),
        )
        assert pipeline_runner(dag) == "macos-13"


class TestEstimateCosts:
    def test_estimate(self):
        estimate = estimate_costs(
            1320, 441,
            pipeline_name="CI",
            runs_per_month=500,
            team_size=10,
            hourly_rate=150,
        )

        assert estimate.rate_per_minute == 0.008
        assert estimate.current_monthly_cost == pytest.approx(22 * 0.008 * 500)
        assert estimate.optimized_monthly_cost == pytest.approx(8 * 0.008 * 500)
        assert estimate.monthly_savings == pytest.approx(56.0)
        assert estimate.annual_savings == pytest.approx(672.0)
        assert estimate.developer_hours_lost_per_month == pytest.approx(1320 / 3600 * 500)
        assert estimate.opportunity_cost_per_month == pytest.approx(1320 / 3600 * 500 * 150)
        assert estimate.waste_ratio == pytest.approx(879 / 1320)

    def test_schema_rounds(self):
        out = estimate_costs(1320, 441, runs_per_month=500).to_schema()
        assert out.current_billable_minutes == 22
        assert out.optimized_billable_minutes == 8
        assert out.monthly_savings == 56.0
        assert out.developer_hours_lost_per_month == 183.33

    def test_zero_duration(self):
        estimate = estimate_costs(0, 0)
        assert estimate.current_monthly_cost == 0
        assert estimate.waste_ratio == 0

    def test_rate_override(self):
        estimate = estimate_costs(60, 60, runs_per_month=10, rate_per_minute=1.0)
        assert estimate.current_monthly_cost == pytest.approx(10.0)


class TestMatrixReduction:
    AXES = {
        "os": ["ubuntu-latest", "windows-latest", "macos-latest"],
        "node": [16, 18, 20, 22],
        "python": ["3.10", "3.11"],
    }

    def test_sizes(self):
        assert reduced_size(self.AXES) == 7

    def test_every_value_is_covered(self):
        combos = reduced_combinations(self.AXES)
        for key, values in self.AXES.items():
            assert {c[key] for c in combos} == set(values)
        assert all(set(c) == set(self.AXES) for c in combos)

    def test_largest_axis_runs_against_primary_values(self):
        combos = reduced_combinations(self.AXES)
        assert combos[:4] == [
            {"os": "ubuntu-latest", "node": n, "python": "3.10"} for n in (16, 18, 20, 22)
        ]

    def test_no_duplicates(self):
        combos = reduced_combinations(self.AXES)
        assert len({tuple(sorted(c.items())) for c in combos}) == len(combos)

    def test_empty(self):
        assert reduced_combinations({}) == []
        assert reduced_combinations({"os": []}) == []
