"""Tests for the Monte Carlo simulator."""
import random

import pytest

from conftest import make_dag, make_job
from pipelinex.simulator import derive_seed, histogram, percentile, sample_duration, simulate


class TestSimulate:
    def test_worker_count_does_not_change_results(self, github_dag):
        single = simulate(github_dag, runs=600, variance=0.2, seed=7, workers=1)
        threaded = simulate(github_dag, runs=600, variance=0.2, seed=7, workers=4)
        assert single.to_schema() == threaded.to_schema()

    def test_same_seed_same_result(self, gitlab_dag):
        a = simulate(gitlab_dag, runs=200, seed=3)
        b = simulate(gitlab_dag, runs=200, seed=3)
        assert a == b

    def test_different_seed(self, gitlab_dag):
        a = simulate(gitlab_dag, runs=200, seed=1)
        b = simulate(gitlab_dag, runs=200, seed=2)
        assert a.mean_secs != b.mean_secs

    def test_zero_variance_matches_critical_path(self, github_dag):
        result = simulate(github_dag, runs=50, variance=0.0)

        assert result.mean_secs == pytest.approx(1320)
        assert result.std_dev_secs == pytest.approx(0.0)
        assert result.min_secs == result.max_secs == pytest.approx(1320)
        assert len(result.histogram) == 1
        assert result.histogram[0].count == 50

    def test_percentiles_are_ordered(self, github_dag):
        r = simulate(github_dag, runs=500, variance=0.3)
        assert r.min_secs <= r.p50_secs <= r.p75_secs <= r.p90_secs <= r.p99_secs <= r.max_secs
        assert sum(b.count for b in r.histogram) == 500

    def test_chain_jobs_are_always_critical(self, github_dag):
        result = simulate(github_dag, runs=100)
        assert [s.job_name for s in result.job_stats] == ["build", "deploy", "lint", "test"]
        assert all(s.on_critical_path_pct == 100.0 for s in result.job_stats)

    def test_parallel_jobs_share_the_critical_path(self):
        dag = make_dag(make_job("a", 100), make_job("b", 100))
        result = simulate(dag, runs=400, variance=0.2)
        pct = {s.job_name: s.on_critical_path_pct for s in result.job_stats}
        assert pct["a"] + pct["b"] == pytest.approx(100.0)
        assert 30.0 < pct["a"] < 70.0

    def test_schema(self, gitlab_dag):
        out = simulate(gitlab_dag, runs=10, seed=5).to_schema()
        assert out.runs == 10
        assert out.seed == 5
        assert len(out.job_stats) == 4

    @pytest.mark.parametrize("kwargs", [{"runs": 0}, {"variance": -0.1}])
    def test_invalid_arguments(self, github_dag, kwargs):
        with pytest.raises(ValueError):
            simulate(github_dag, **kwargs)


class TestHelpers:
    def test_derive_seed(self):
        assert derive_seed(42, 0) == derive_seed(42, 0)
        assert derive_seed(42, 0) != derive_seed(42, 1)
        assert derive_seed(42, 0) != derive_seed(43, 0)

    def test_sample_duration_bounds(self):
        rng = random.Random(0)
        for _ in range(1000):
            value = sample_duration(rng, 100.0, 0.5)
            assert 10.0 <= value <= 250.0

    def test_sample_zero_base(self):
        assert sample_duration(random.Random(0), 0.0, 0.5) == 0.0

    def test_percentile(self):
        values = [1, 2, 3, 4, 5]
        assert percentile(values, 0) == 1
        assert percentile(values, 50) == 3
        assert percentile(values, 100) == 5
        assert percentile([], 50) == 0.0

    def test_histogram(self):
        buckets = histogram([0.0, 5.0, 10.0], buckets=2)
        assert [(b.lower_secs, b.upper_secs, b.count) for b in buckets] == [(0.0, 5.0, 1), (5.0, 10.0, 2)]
        assert histogram([]) == []
