"""
Tests for the CLI commands using Click's CliRunner.

stdout carries the command output (report, config, diff, JSON); errors and
summaries go to stderr.
"""
import json

import pytest
from click.testing import CliRunner

from conftest import GITHUB_CI, GITLAB_CI
from pipelinex import __version__
from pipelinex.cli import cli

CYCLIC = """\
on: push
jobs:
  a:
    needs: b
    runs-on: ubuntu-latest
    steps: [{run: make}]
  b:
    needs: a
    runs-on: ubuntu-latest
    steps: [{run: make}]
"""


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def repo(tmp_path):
    """A repository with one GitHub workflow and a GitLab config."""
    workflows = tmp_path / ".github" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "ci.yml").write_text(GITHUB_CI)
    (tmp_path / ".gitlab-ci.yml").write_text(GITLAB_CI)
    return tmp_path


@pytest.fixture
def workflow(repo):
    return repo / ".github" / "workflows" / "ci.yml"


@pytest.fixture
def cyclic(tmp_path):
    path = tmp_path / ".github" / "workflows" / "cyclic.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CYCLIC)
    return path


# =============================================================================
# analyze
# =============================================================================


class TestAnalyzeCommand:
    def test_text_report(self, runner, workflow):
        result = runner.invoke(cli, ["analyze", str(workflow)])

        assert result.exit_code == 0, result.output
        assert "Critical path: lint -> test -> build -> deploy (22:00)" in result.stdout
        assert "[CRITICAL] No dependency caching for npm/yarn/pnpm" in result.stdout
        assert "pipelinex optimize" in result.stdout

    def test_json_report(self, runner, workflow):
        result = runner.invoke(cli, ["analyze", str(workflow), "--format", "json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["job_count"] == 4
        assert data["critical_path_duration_secs"] == 1320
        assert data["health_score"]["grade"] in {"A", "B", "C", "D", "F"}

    def test_directory(self, runner, repo):
        result = runner.invoke(cli, ["analyze", str(repo), "--format", "json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert [d["provider"] for d in data] == ["github-actions", "gitlab-ci"]

    def test_directory_with_other_providers(self, runner, tmp_path):
        (tmp_path / "azure-pipelines.yml").write_text("steps:\n  - script: npm ci\n  - script: npm test\n")
        (tmp_path / "bitbucket-pipelines.yml").write_text(
            "pipelines:\n  default:\n    - step:\n        script: [pip install -r requirements.txt, pytest]\n"
        )
        result = runner.invoke(cli, ["analyze", str(tmp_path), "--format", "json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert [d["provider"] for d in data] == ["bitbucket-pipelines", "azure-pipelines"]

    def test_sarif(self, runner, workflow):
        result = runner.invoke(cli, ["analyze", str(workflow), "--format", "sarif"])

        assert result.exit_code == 0, result.output
        sarif = json.loads(result.stdout)
        assert sarif["version"] == "2.1.0"
        assert sarif["runs"][0]["tool"]["driver"]["version"] == __version__
        assert sarif["runs"][0]["results"]

    def test_cycle_fails_cleanly(self, runner, cyclic):
        result = runner.invoke(cli, ["analyze", str(cyclic)])

        assert result.exit_code == 1
        assert result.stdout == ""
        assert "cycle" in result.stderr
        assert "a -> b -> a" in result.stderr

    def test_directory_with_one_bad_file_prints_nothing(self, runner, repo):
        (repo / ".github" / "workflows" / "broken.yml").write_text(CYCLIC)
        result = runner.invoke(cli, ["analyze", str(repo)])

        assert result.exit_code == 1
        assert result.stdout == ""

    def test_unrecognized_file(self, runner, tmp_path):
        path = tmp_path / "notes.yml"
        path.write_text("title: hello\n")
        result = runner.invoke(cli, ["analyze", str(path)])

        assert result.exit_code == 1
        assert "Unrecognized pipeline dialect" in result.stderr

    def test_history(self, runner, workflow, tmp_path):
        history = tmp_path / "history.json"
        history.write_text(json.dumps({
            "total_runs": 20,
            "success_rate": 0.8,
            "job_timings": [{"job_name": "test", "p50_duration_sec": 980, "success_count": 15, "failure_count": 5}],
        }))
        result = runner.invoke(cli, ["analyze", str(workflow), "--format", "json", "--history", str(history)])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["critical_path_duration_secs"] == pytest.approx(1320 + 490)
        assert any(f["category"] == "flakiness" for f in data["findings"])

    def test_invalid_history(self, runner, workflow, tmp_path):
        history = tmp_path / "history.json"
        history.write_text(json.dumps({"success_rate": 3}))
        result = runner.invoke(cli, ["analyze", str(workflow), "--history", str(history)])

        assert result.exit_code == 1
        assert "invalid history" in result.stderr

    def test_non_utf8_workflow_fails_cleanly(self, runner, repo):
        bad = repo / ".github" / "workflows" / "latin1.yml"
        bad.write_bytes("on: push\n# caf\xe9\njobs: {}\n".encode("latin-1"))
        result = runner.invoke(cli, ["analyze", str(repo)])

        assert result.exit_code == 1
        assert result.stdout == ""
        assert "not valid UTF-8" in result.stderr
        assert "latin1.yml" in result.stderr
        assert "Traceback" not in result.output

    def test_non_utf8_history(self, runner, workflow, tmp_path):
        history = tmp_path / "history.json"
        history.write_bytes(b"\xff\xfe{}")
        result = runner.invoke(cli, ["analyze", str(workflow), "--history", str(history)])

        assert result.exit_code == 1
        assert "invalid history" in result.stderr


# =============================================================================
# optimize / diff
# =============================================================================


class TestOptimizeCommand:
    def test_config_on_stdout(self, runner, workflow):
        result = runner.invoke(cli, ["optimize", str(workflow)])

        assert result.exit_code == 0, result.output
        assert result.stdout.startswith("# Optimized by pipelinex\n")
        assert "11 change(s) applied" in result.stderr
        assert "22:00 -> 7:21" in result.stderr

    def test_output_file(self, runner, workflow, tmp_path):
        out = tmp_path / "optimized.yml"
        result = runner.invoke(cli, ["optimize", str(workflow), "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert result.stdout == ""
        assert out.read_text().startswith("# Optimized by pipelinex")

    def test_diff_flag(self, runner, workflow):
        result = runner.invoke(cli, ["optimize", str(workflow), "--diff"])

        assert result.exit_code == 0, result.output
        assert result.stdout.startswith("--- a/ci.yml")

    def test_diff_command(self, runner, repo):
        result = runner.invoke(cli, ["diff", str(repo / ".gitlab-ci.yml")])

        assert result.exit_code == 0, result.output
        assert result.stdout.startswith("--- a/.gitlab-ci.yml\n+++ b/.gitlab-ci.yml\n")
        assert "+    GIT_DEPTH: '1'" in result.stdout

    def test_directory_is_rejected(self, runner, repo):
        result = runner.invoke(cli, ["optimize", str(repo)])
        assert result.exit_code == 2


# =============================================================================
# cost / graph / simulate / what-if
# =============================================================================


class TestCostCommand:
    def test_json(self, runner, workflow):
        result = runner.invoke(cli, ["cost", str(workflow), "--runs-per-month", "500", "--format", "json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["runner"] == "ubuntu-latest"
        assert data["current_billable_minutes"] == 22
        assert data["optimized_billable_minutes"] == 8
        assert data["monthly_savings"] == 56.0

    def test_text(self, runner, workflow):
        result = runner.invoke(cli, ["cost", str(workflow), "--team-size", "4"])

        assert result.exit_code == 0, result.output
        assert "team size: 4" in result.stdout
        assert "Waste ratio" in result.stdout

    def test_negative_runs_rejected(self, runner, workflow):
        result = runner.invoke(cli, ["cost", str(workflow), "--runs-per-month", "-1"])
        assert result.exit_code == 2


class TestGraphCommand:
    @pytest.mark.parametrize("fmt, marker", [
        ("mermaid", "graph LR"),
        ("dot", "digraph"),
        ("ascii", "Critical path (*)"),
    ])
    def test_formats(self, runner, workflow, fmt, marker):
        result = runner.invoke(cli, ["graph", str(workflow), "--format", fmt])

        assert result.exit_code == 0, result.output
        assert marker in result.stdout

    def test_output_file(self, runner, workflow, tmp_path):
        out = tmp_path / "graph.dot"
        result = runner.invoke(cli, ["graph", str(workflow), "--format", "dot", "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert '"lint" -> "test";' in out.read_text()


class TestSimulateCommand:
    def test_json(self, runner, workflow):
        result = runner.invoke(cli, ["simulate", str(workflow), "--runs", "50", "--seed", "1", "--format", "json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["runs"] == 50
        assert data["seed"] == 1
        assert len(data["job_stats"]) == 4

    def test_text(self, runner, workflow):
        result = runner.invoke(cli, ["simulate", str(workflow), "--runs", "20", "--variance", "0"])

        assert result.exit_code == 0, result.output
        assert "Mean:    22:00" in result.stdout

    def test_zero_runs_rejected(self, runner, workflow):
        result = runner.invoke(cli, ["simulate", str(workflow), "--runs", "0"])
        assert result.exit_code == 2


class TestWhatIfCommand:
    def test_json(self, runner, workflow):
        result = runner.invoke(cli, [
            "what-if", str(workflow), "-c", "remove-dep test->build", "--runs-per-month", "1000", "--format", "json",
        ])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["original_duration_secs"] == 1320
        assert data["modified_duration_secs"] == 830
        assert data["modified_critical_path"] == ["lint", "build", "deploy"]
        assert data["changes_applied"] == ["Removed dependency test -> build"]
        assert data["modified_monthly_cost"] == 112.0

    def test_text(self, runner, workflow):
        result = runner.invoke(cli, ["what-if", str(workflow), "-c", "remove-job test", "-c", "remove-job nope"])

        assert result.exit_code == 0, result.output
        assert "What-if: CI" in result.stdout
        assert "+ Removed job 'test'" in result.stdout
        assert "! Skipped remove-job nope: job 'nope' not found" in result.stdout
        assert "Jobs:            4 -> 3" in result.stdout

    def test_bad_change_is_a_usage_error(self, runner, workflow):
        result = runner.invoke(cli, ["what-if", str(workflow), "-c", "speed-up build"])

        assert result.exit_code == 2
        assert result.stdout == ""
        assert "unknown change 'speed-up'" in result.stderr

    def test_pipeline_file_is_untouched(self, runner, workflow):
        before = workflow.read_text()
        runner.invoke(cli, ["what-if", str(workflow), "-c", "add-cache build"])
        assert workflow.read_text() == before


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout
