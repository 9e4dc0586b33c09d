"""Tests for the analyzers, the report builder, the health score and SARIF output."""
import random
import textwrap

import pytest

from conftest import GITHUB_CI, MATRIX_CI, make_dag, make_job
from pipelinex.analyzer import analyze, collect_findings
from pipelinex.analyzer.cache_detector import detect_missing_caches
from pipelinex.analyzer.critical_path import analyze_critical_path, longest_path
from pipelinex.analyzer.flakiness import detect_flaky_jobs
from pipelinex.analyzer.parallel_finder import (
    JobType,
    classify_job,
    false_dependency,
    find_parallelization_opportunities,
)
from pipelinex.analyzer.report import (
    Category,
    Finding,
    FixAction,
    FixKind,
    Severity,
    format_duration,
    sort_findings,
)
from pipelinex.analyzer.runner_cost import detect_runner_costs
from pipelinex.analyzer.sarif import rule_id, rule_key, to_sarif
from pipelinex.analyzer.waste_detector import detect_waste
from pipelinex import health_score
from pipelinex.model import Provider
from pipelinex.parser import parse
from pipelinex.schemas import JobTimingData, PipelineStatistics


def gh(body: str):
    return parse(textwrap.dedent(body), Provider.GITHUB, ".github/workflows/ci.yml")


def titles(findings):
    return [f.title for f in findings]


# =============================================================================
# Critical path
# =============================================================================


class TestCriticalPath:
    def test_chain(self):
        dag = make_dag(make_job("A", 60), make_job("B", 120, ["A"]), make_job("C", 90, ["B"]))
        assert longest_path(dag) == (["A", "B", "C"], 270)

    def test_declaration_order_does_not_matter(self):
        dag = make_dag(make_job("C", 90, ["B"]), make_job("B", 120, ["A"]), make_job("A", 60))
        assert longest_path(dag) == (["A", "B", "C"], 270)

    def test_removing_the_false_edge_shortens_the_path(self):
        dag = make_dag(make_job("A", 60), make_job("B", 120, ["A"]), make_job("C", 90, ["A"]))
        path, duration = longest_path(dag)
        assert path == ["A", "B"]
        assert duration == 180

    def test_tie_goes_to_smaller_name(self):
        dag = make_dag(make_job("b", 10), make_job("a", 10), make_job("c", 5, ["a", "b"]))
        assert longest_path(dag) == (["a", "c"], 25)

    def test_picks_the_longer_branch(self):
        dag = make_dag(
            make_job("setup", 10),
            make_job("fast", 20, ["setup"]),
            make_job("slow", 200, ["setup"]),
            make_job("finish", 5, ["fast", "slow"]),
        )
        assert longest_path(dag) == (["setup", "slow", "finish"], 215)

    def test_override_durations(self):
        dag = make_dag(make_job("a", 10), make_job("b", 20))
        assert longest_path(dag, {"a": 30, "b": 20}) == (["a"], 30)

    def test_empty(self):
        assert longest_path(make_dag()) == ([], 0.0)

    @pytest.mark.parametrize("seed", range(10))
    def test_matches_exhaustive_search(self, seed):
        rng = random.Random(seed)
        jobs = []
        for i in range(9):
            needs = [f"j{k}" for k in range(i) if rng.random() < 0.35]
            jobs.append(make_job(f"j{i}", rng.randint(1, 100), needs))
        dag = make_dag(*jobs)

        def best_ending_at(name):
            own = dag.job(name).estimated_duration
            return own + max((best_ending_at(p) for p in dag.predecessors(name)), default=0)

        expected = max(best_ending_at(n) for n in dag.job_names)
        path, duration = longest_path(dag)

        assert duration == pytest.approx(expected)
        assert sum(dag.job(n).estimated_duration for n in path) == pytest.approx(duration)
        for dep, dependent in zip(path, path[1:]):
            assert dep in dag.predecessors(dependent)
        assert not dag.predecessors(path[0])

    def test_dominant_job(self, github_dag):
        path, duration = longest_path(github_dag)
        assert path == ["lint", "test", "build", "deploy"]
        assert duration == 1320

        findings = analyze_critical_path(github_dag, path, duration)
        assert len(findings) == 1
        assert findings[0].severity == Severity.HIGH
        assert findings[0].affected_jobs == ("test",)
        assert "37.1%" in findings[0].title

    def test_efficiency_finding(self):
        dag = make_dag(
            make_job("a", 10),
            make_job("b", 10),
            make_job("c", 10),
            make_job("long", 300, ["a"]),
        )
        path, duration = longest_path(dag)
        findings = analyze_critical_path(dag, path, duration)
        assert any(f.title.startswith("Parallelism efficiency") for f in findings)


# =============================================================================
# Caching
# =============================================================================


class TestCacheDetector:
    def test_one_finding_per_uncached_job(self, github_dag):
        findings = detect_missing_caches(github_dag)

        assert sorted(f.affected_jobs[0] for f in findings) == ["build", "lint", "test"]
        for f in findings:
            assert f.severity == Severity.CRITICAL
            assert f.category == Category.CACHING
            assert f.auto_fixable
            assert f.fix == FixAction(FixKind.ADD_CACHE, f.affected_jobs[0], (("ecosystem", "npm"),))

    def test_single_install_command(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ubuntu-latest
                steps:
                  - run: npm ci
            """)
        findings = detect_missing_caches(dag)
        assert len(findings) == 1
        assert findings[0].confidence == 0.95

    def test_setup_node_cache_covers_install(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ubuntu-latest
                steps:
                  - uses: actions/setup-node@v4
                    with:
                      cache: npm
                  - run: npm ci
            """)
        assert detect_missing_caches(dag) == []

    def test_actions_cache_covers_install(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ubuntu-latest
                steps:
                  - uses: actions/cache@v4
                    with:
                      path: ~/.cache/pip
                      key: pip
                  - run: pip install -r requirements.txt
            """)
        assert detect_missing_caches(dag) == []

    def test_cache_after_install_does_not_count(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ubuntu-latest
                steps:
                  - run: pip install -r requirements.txt
                  - uses: actions/cache@v4
                    with:
                      path: ~/.cache/pip
            """)
        assert len(detect_missing_caches(dag)) == 1

    def test_buried_command_has_lower_confidence(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ubuntu-latest
                steps:
                  - run: |
                      cd app
                      cargo build --release
            """)
        findings = detect_missing_caches(dag)
        assert len(findings) == 1
        assert findings[0].confidence == 0.75

    def test_plain_commands_are_not_flagged(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ubuntu-latest
                steps:
                  - run: echo hello
                  - run: make test
            """)
        assert detect_missing_caches(dag) == []

    def test_docker_cache_from(self):
        dag = gh("""\
            on: push
            jobs:
              image:
                runs-on: ubuntu-latest
                steps:
                  - run: docker build --cache-from app:latest -t app .
            """)
        assert detect_missing_caches(dag) == []


# =============================================================================
# False dependencies
# =============================================================================


class TestParallelFinder:
    def test_false_dependencies(self, github_dag):
        findings = [
            f for f in find_parallelization_opportunities(github_dag)
            if f.fix is not None and f.fix.kind == FixKind.REMOVE_NEEDS
        ]
        by_edge = {(f.fix.param("needs"), f.fix.job): f for f in findings}

        assert set(by_edge) == {("lint", "test"), ("test", "build"), ("lint", "build")}
        assert by_edge[("lint", "test")].estimated_savings_secs == 250
        assert by_edge[("lint", "test")].severity == Severity.HIGH
        assert by_edge[("lint", "test")].confidence == 0.85
        assert by_edge[("test", "build")].estimated_savings_secs == 490
        assert by_edge[("lint", "build")].estimated_savings_secs == 0
        assert by_edge[("lint", "build")].severity == Severity.LOW

    def test_gated_and_coupled_edge_is_kept(self, github_dag):
        assert not false_dependency(github_dag, "build", "deploy")

    def test_artifact_coupling(self):
        dag = gh("""\
            on: push
            jobs:
              build:
                runs-on: ubuntu-latest
                steps:
                  - run: make
                  - uses: actions/upload-artifact@v4
                    with:
                      name: bin
                      path: out
              smoke:
                needs: build
                runs-on: ubuntu-latest
                steps:
                  - uses: actions/download-artifact@v4
                  - run: ./out/app --version
            """)
        # a download without a name pulls every artifact
        assert not false_dependency(dag, "build", "smoke")

    CHAIN = """\
        on: push
        jobs:
          build:
            runs-on: ubuntu-latest
            steps:
              - run: make dist
              - uses: actions/upload-artifact@v4
                with:
                  name: dist
                  path: dist
          test:
            needs: build
            runs-on: ubuntu-latest
            steps:
              - run: pytest
          package:
            needs: test
            runs-on: ubuntu-latest
            steps:
              - uses: actions/download-artifact@v4
                with:
                  name: dist
              - run: tar czf release.tgz dist
        """

    def test_edge_carrying_upstream_artifact_is_kept(self):
        dag = gh(self.CHAIN)

        # neither edge is coupled on its own, but each is the only path from build to package
        assert not false_dependency(dag, "test", "package")
        assert not false_dependency(dag, "build", "test")
        assert not [
            f for f in find_parallelization_opportunities(dag)
            if f.fix is not None and f.fix.kind == FixKind.REMOVE_NEEDS
        ]

    def test_edge_is_removable_when_producer_has_another_path(self):
        dag = gh(self.CHAIN.replace("needs: test", "needs: [build, test]"))

        assert false_dependency(dag, "test", "package")
        assert not false_dependency(dag, "build", "package")

    def test_output_coupling(self):
        dag = gh("""\
            on: push
            jobs:
              version:
                runs-on: ubuntu-latest
                outputs:
                  tag: ${{ steps.v.outputs.tag }}
                steps:
                  - id: v
                    run: echo tag
              publish:
                needs: version
                runs-on: ubuntu-latest
                steps:
                  - run: echo ${{ needs.version.outputs.tag }}
            """)
        assert not false_dependency(dag, "version", "publish")

    def test_gitlab_stage_edges_with_artifacts(self, gitlab_dag):
        findings = find_parallelization_opportunities(gitlab_dag)
        assert not [f for f in findings if f.fix is not None]

    def test_shard_suggestion(self, github_dag):
        shard = [f for f in find_parallelization_opportunities(github_dag) if "sharded" in f.title]
        assert len(shard) == 1
        assert shard[0].affected_jobs == ("test",)
        assert "5 parallel jobs" in shard[0].title
        assert shard[0].severity == Severity.MEDIUM

    def test_classify_job(self, github_dag):
        assert classify_job(github_dag.job("lint")) == JobType.LINT
        assert classify_job(github_dag.job("test")) == JobType.TEST
        assert classify_job(github_dag.job("build")) == JobType.BUILD
        assert classify_job(github_dag.job("deploy")) == JobType.DEPLOY


# =============================================================================
# Waste
# =============================================================================


class TestWasteDetector:
    def test_github_fixture(self, github_dag):
        findings = detect_waste(github_dag)
        found = titles(findings)

        assert "No path-based filtering on triggers" in found
        assert "No concurrency control configured" in found
        assert sorted(f.affected_jobs[0] for f in findings if f.fix and f.fix.kind == FixKind.SHALLOW_CLONE) == [
            "build", "lint", "test",
        ]
        installs = [f for f in findings if f.severity == Severity.INFO]
        assert len(installs) == 1
        assert installs[0].affected_jobs == ("lint", "test", "build")

    def test_path_filter_fixable_only_on_github(self, github_dag, gitlab_dag):
        gh_filter = [f for f in detect_waste(github_dag) if "path-based" in f.title]
        gl_filter = [f for f in detect_waste(gitlab_dag) if "path-based" in f.title]
        assert gh_filter[0].auto_fixable
        assert not gl_filter[0].auto_fixable
        assert gl_filter[0].fix is None

    def test_matrix_explosion(self, matrix_dag):
        findings = detect_waste(matrix_dag)
        assert len(findings) == 1
        matrix = findings[0]
        assert matrix.title == "Large matrix in 'test' (24 combinations)"
        assert "7 combinations" in matrix.description
        assert matrix.auto_fixable
        assert matrix.estimated_savings_secs == pytest.approx(245 * 17)

    def test_matrix_explosion_counts_excluded_combinations(self):
        dag = gh(MATRIX_CI.replace(
            '            python: ["3.10", "3.11"]\n',
            '            python: ["3.10", "3.11"]\n'
            "            exclude:\n"
            "              - {os: macos-latest, node: 16, python: '3.10'}\n"
            "              - {os: macos-latest, node: 16, python: '3.11'}\n"
            "              - {os: windows-latest, node: 16, python: '3.11'}\n",
        ))
        matrix = [f for f in detect_waste(dag) if f.rule == "matrix-explosion"][0]

        assert matrix.title == "Large matrix in 'test' (21 combinations)"
        assert not matrix.auto_fixable
        assert matrix.estimated_savings_secs == pytest.approx(245 * (21 - 7))

    def test_history_commands_need_full_clone(self):
        dag = gh("""\
            on: push
            jobs:
              release:
                runs-on: ubuntu-latest
                steps:
                  - uses: actions/checkout@v4
                  - run: git describe --tags
            """)
        assert not [f for f in detect_waste(dag) if "clone" in f.title]

    def test_explicit_full_clone_is_respected(self):
        dag = gh("""\
            on: push
            jobs:
              a:
                runs-on: ubuntu-latest
                steps:
                  - uses: actions/checkout@v4
                    with:
                      fetch-depth: 0
                  - run: make
            """)
        assert not [f for f in detect_waste(dag) if "clone" in f.title]

    def test_schedule_only_pipeline(self):
        dag = gh("""\
            on:
              schedule:
                - cron: "0 3 * * *"
            jobs:
              a:
                runs-on: ubuntu-latest
                steps: [{run: make}]
              b:
                runs-on: ubuntu-latest
                steps: [{run: make}]
            """)
        found = titles(detect_waste(dag))
        assert "No path-based filtering on triggers" not in found
        assert "No concurrency control configured" not in found


# =============================================================================
# Runner cost and flakiness
# =============================================================================


class TestRunnerCost:
    def test_macos_without_platform_work(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: macos-latest
                steps:
                  - run: npm test
            """)
        findings = detect_runner_costs(dag)
        assert len(findings) == 1
        assert findings[0].severity == Severity.MEDIUM
        assert "10x" in findings[0].title

    def test_platform_specific_job_is_fine(self):
        dag = gh("""\
            on: push
            jobs:
              ios:
                runs-on: macos-latest
                steps:
                  - run: xcodebuild -scheme App test
            """)
        assert detect_runner_costs(dag) == []

    def test_windows_matrix_leg(self):
        dag = gh("""\
            on: push
            jobs:
              test:
                runs-on: ${{ matrix.os }}
                strategy:
                  matrix:
                    os: [ubuntu-latest, windows-latest]
                steps:
                  - run: npm test
            """)
        findings = detect_runner_costs(dag)
        assert len(findings) == 1
        assert findings[0].severity == Severity.LOW
        assert "windows" in findings[0].title


class TestFlakiness:
    def test_no_history_no_findings(self, github_dag):
        assert detect_flaky_jobs(github_dag) == []

    def test_measured_failure_rate(self):
        stats = PipelineStatistics(
            total_runs=10,
            job_timings=[JobTimingData(job_name="test", success_count=8, failure_count=2)],
        )
        dag = parse(GITHUB_CI, Provider.GITHUB, "ci.yml", statistics=stats)
        findings = detect_flaky_jobs(dag)

        assert len(findings) == 1
        assert findings[0].severity == Severity.HIGH
        assert findings[0].estimated_savings_secs == pytest.approx(490 * 0.2)

    def test_too_few_runs(self):
        stats = PipelineStatistics(
            job_timings=[JobTimingData(job_name="test", success_count=3, failure_count=1)],
        )
        dag = parse(GITHUB_CI, Provider.GITHUB, "ci.yml", statistics=stats)
        assert detect_flaky_jobs(dag) == []

    def test_listed_as_flaky(self):
        stats = PipelineStatistics(flaky_jobs=["lint"])
        dag = parse(GITHUB_CI, Provider.GITHUB, "ci.yml", statistics=stats)
        findings = detect_flaky_jobs(dag)

        assert [f.affected_jobs for f in findings] == [("lint",)]
        assert findings[0].severity == Severity.MEDIUM
        assert findings[0].estimated_savings_secs is None


# =============================================================================
# Report
# =============================================================================


class TestReport:
    def test_collect_findings(self, github_dag):
        findings = collect_findings(github_dag)
        assert len(findings) == 14
        priorities = [f.severity.priority for f in findings]
        assert priorities == sorted(priorities, reverse=True)

    def test_analyze(self, github_dag):
        report = analyze(github_dag)

        assert report.job_count == 4
        assert report.step_count == 12
        assert report.max_parallelism == 1
        assert report.critical_path == ("lint", "test", "build", "deploy")
        assert report.critical_path_duration_secs == 1320
        assert report.optimized_duration_secs == pytest.approx(441)
        assert report.potential_improvement_pct == pytest.approx((1320 - 441) / 1320 * 100)
        assert report.count(Severity.CRITICAL) == 3
        assert report.health_score is not None

    def test_schema(self, gitlab_dag):
        out = analyze(gitlab_dag).to_schema()
        assert out.provider == "gitlab-ci"
        assert out.critical_path == ["build", "unit", "deploy"]
        assert out.critical_path_duration_secs == 1050
        assert all(0.0 <= f.confidence <= 1.0 for f in out.findings)

    def test_format_duration(self):
        assert format_duration(45) == "45s"
        assert format_duration(90) == "1:30"
        assert format_duration(3600) == "60:00"
        assert format_duration(0) == "0s"

    def test_sort_is_stable_within_severity(self):
        def finding(title, severity):
            return Finding(severity, Category.WASTE, title, "", (), "")

        ordered = sort_findings([
            finding("low-1", Severity.LOW),
            finding("crit", Severity.CRITICAL),
            finding("low-2", Severity.LOW),
        ])
        assert titles(ordered) == ["crit", "low-1", "low-2"]

    def test_fix_command(self):
        fix = FixAction(FixKind.ADD_CACHE, "lint", (("ecosystem", "npm"),))
        assert fix.render() == "pipelinex fix add-cache --job lint --ecosystem npm"
        assert FixAction(FixKind.ADD_CONCURRENCY).render() == "pipelinex fix add-concurrency"


# =============================================================================
# Health score
# =============================================================================


class TestHealthScore:
    def test_components(self, github_dag):
        findings = collect_findings(github_dag)
        score = health_score.calculate(github_dag, 1320, 441, findings)

        assert score.caching_score == 0.0
        assert score.parallelization_score == 25.0
        assert score.success_rate_score == pytest.approx(95.0)
        assert score.duration_score == pytest.approx(441 / 1320 * 100)
        # 3 critical, 3 high, 2 medium
        assert score.issue_score == pytest.approx(100 - 45 - 24 - 6)
        assert 0.0 <= score.total_score <= 100.0
        assert score.grade == health_score.grade_for(score.total_score)
        assert any("critical" in r for r in score.recommendations)

    def test_history_success_rate(self, github_dag):
        stats = PipelineStatistics(total_runs=10, success_rate=0.5)
        dag = parse(GITHUB_CI, Provider.GITHUB, "ci.yml", statistics=stats)
        score = health_score.calculate(dag, 1320, 441, [])
        assert score.success_rate_score == pytest.approx(50.0)

    def test_perfect_pipeline(self):
        dag = make_dag(make_job("a", 60), make_job("b", 60))
        score = health_score.calculate(dag, 60, 60, [])
        assert score.total_score == pytest.approx(25 + 95 * 0.30 + 20 + 15 + 10)
        assert score.grade == "A"

    @pytest.mark.parametrize("value, grade", [(95, "A"), (90, "A"), (80, "B"), (60, "C"), (45, "D"), (10, "F")])
    def test_grades(self, value, grade):
        assert health_score.grade_for(value) == grade


# =============================================================================
# SARIF
# =============================================================================


class TestSarif:
    def test_structure(self, github_dag):
        report = analyze(github_dag)
        sarif = to_sarif([report], {github_dag.source_file: github_dag.source_text})

        assert sarif["version"] == "2.1.0"
        run = sarif["runs"][0]
        assert run["tool"]["driver"]["name"] == "pipelinex"
        assert len(run["results"]) == len(report.findings)
        assert len(run["tool"]["driver"]["rules"]) == len({f.rule for f in report.findings})
        assert run["results"][0]["ruleId"] == "PX001"
        assert run["results"][0]["level"] == "error"

    def test_start_line_points_at_job(self, github_dag):
        report = analyze(github_dag)
        sarif = to_sarif([report], {github_dag.source_file: github_dag.source_text})

        for finding, result in zip(report.findings, sarif["runs"][0]["results"]):
            if finding.category == Category.CACHING and finding.affected_jobs == ("lint",):
                region = result["locations"][0]["physicalLocation"]["region"]
                assert region["startLine"] == 7
                assert result["fixes"][0]["description"]["text"].startswith("Run: pipelinex fix add-cache")
                break
        else:
            pytest.fail("no lint cache finding")

    def test_levels(self, github_dag):
        report = analyze(github_dag)
        levels = {
            f.severity: r["level"]
            for f, r in zip(report.findings, to_sarif([report])["runs"][0]["results"])
        }
        assert levels[Severity.CRITICAL] == "error"
        assert levels[Severity.MEDIUM] == "warning"
        assert levels[Severity.LOW] == "note"
        assert levels[Severity.INFO] == "note"

    def test_rule_id(self):
        assert rule_id(0) == "PX001"
        assert rule_id(41) == "PX042"

    def test_findings_of_one_kind_share_a_rule(self, github_dag):
        report = analyze(github_dag)
        run = to_sarif([report])["runs"][0]
        rules = run["tool"]["driver"]["rules"]

        false_deps = [
            r for f, r in zip(report.findings, run["results"]) if f.rule == "false-dependency"
        ]
        assert len(false_deps) == 3
        assert len({r["ruleId"] for r in false_deps}) == 1
        assert [r["name"] for r in rules].count("false-dependency") == 1
        assert len({r["id"] for r in rules}) == len(rules)
        assert {r["ruleId"] for r in run["results"]} == {r["id"] for r in rules}

    def test_rule_ids_stable_across_reports(self, github_dag):
        report = analyze(github_dag)
        run = to_sarif([report, report])["runs"][0]
        assert len(run["results"]) == 2 * len(report.findings)
        assert len(run["tool"]["driver"]["rules"]) == len({f.rule for f in report.findings})

    def test_rule_falls_back_to_category(self):
        finding = Finding(Severity.LOW, Category.WASTE, "t", "d", (), "r")
        assert rule_key(finding) == "waste"
