# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from pydantic import ValidationError

from pipelinex import __version__, settings
from pipelinex.analyzer import analyze as analyze_dag
from pipelinex.analyzer.sarif import dump_sarif
from pipelinex.cost import estimate_costs, pipeline_runner
from pipelinex.dag import PipelineDag
from pipelinex.discovery import discover
from pipelinex.errors import ConfigParseError, CyclicDependencyError, PipelineError, UnsupportedProviderError
from pipelinex.graph import RENDERERS, render
from pipelinex.logging_config import setup_logging
from pipelinex.optimizer import optimize as optimize_dag
from pipelinex.parser import parse_file
from pipelinex.schemas import PipelineStatistics, dump_json, dump_many
from pipelinex.simulator import simulate as simulate_dag
from pipelinex.ui.console import Console, get_console, set_console
from pipelinex.whatif import parse_change, what_if

logger = logging.getLogger(__name__)

PATH_ARG = click.Path(exists=True, dir_okay=True, file_okay=True, path_type=Path)

history_option = click.option(
    "--history",
    "history_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Run-history statistics (PipelineStatistics JSON) used to calibrate job durations",
)


def load_history(history_file: Optional[Path]) -> Optional[PipelineStatistics]:
    if history_file is None:
        return None
    try:
        return PipelineStatistics.model_validate_json(history_file.read_text(encoding="utf-8"))
    except (ValidationError, UnicodeDecodeError) as e:
        raise ConfigParseError(f"invalid history statistics: {e}", str(history_file)) from e


def load_pipelines(path: Path, history_file: Optional[Path] = None) -> List[PipelineDag]:
    """Parse every pipeline under `path`. Nothing is printed until all of them parse."""
    statistics = load_history(history_file)
    dags = []
    for file in discover(path):
        logger.debug("Parsing %s", file)
        dags.append(parse_file(file, statistics=statistics))
    return dags


SUGGESTIONS = {
    CyclicDependencyError: "Remove one of the `needs` entries along the cycle.",
    UnsupportedProviderError: (
        "Pass a GitHub workflow, .gitlab-ci.yml, .circleci/config.yml, bitbucket-pipelines.yml "
        "or azure-pipelines.yml file, or a repository directory containing them."
    ),
}


def fail(exc: Exception) -> None:
    """Report a fatal error on stderr and exit 1."""
    console = get_console()
    if isinstance(exc, PipelineError):
        console.print_error(type(exc).__name__, str(exc), suggestion=SUGGESTIONS.get(type(exc)))
    else:
        console.print_error("Cannot read input", str(exc))
    if console.debug:
        console.print_exception(exc)
    sys.exit(1)


def write_output(text: str, output: Optional[Path]) -> None:
    if output is None:
        click.echo(text, nl=not text.endswith("\n"))
    else:
        output.write_text(text, encoding="utf-8")
        get_console().print_debug(f"Wrote {output}")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (debug logging and stack traces)",
)
@click.version_option(__version__, prog_name="pipelinex")
@click.pass_context
def cli(ctx, debug):
    """pipelinex: find bottlenecks in CI/CD pipelines and fix them."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging(logging.DEBUG if debug else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("path", type=PATH_ARG)
@click.option(
    "--format", "fmt",
    type=click.Choice(["text", "json", "sarif"]),
    default="text",
    show_default=True,
    help="Report format",
)
@history_option
def analyze(path, fmt, history_file):
    """Analyze a pipeline file (or every pipeline under a directory)."""
    console = get_console()
    try:
        dags = load_pipelines(path, history_file)
        reports = [analyze_dag(dag) for dag in dags]
    except (PipelineError, OSError) as e:
        fail(e)

    if fmt == "json":
        schemas = [r.to_schema() for r in reports]
        click.echo(dump_json(schemas[0]) if len(schemas) == 1 else dump_many(schemas))
    elif fmt == "sarif":
        click.echo(dump_sarif(reports, {d.source_file: d.source_text for d in dags}))
    else:
        for report in reports:
            console.print_report(report)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o", "--output",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
    help="Write the optimized config here instead of stdout",
)
@click.option("--diff", "show_diff", is_flag=True, default=False, help="Print a unified diff instead of the config")
@history_option
def optimize(path, output, show_diff, history_file):
    """Write an optimized version of a pipeline config."""
    console = get_console()
    try:
        dag = load_pipelines(path, history_file)[0]
        result = optimize_dag(dag)
    except (PipelineError, OSError) as e:
        fail(e)

    console.print_optimization_summary(result)
    write_output(result.diff if show_diff else result.config_text, output)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@history_option
def diff(path, history_file):
    """Show the changes `optimize` would make, as a unified diff."""
    try:
        dag = load_pipelines(path, history_file)[0]
        result = optimize_dag(dag)
    except (PipelineError, OSError) as e:
        fail(e)

    if result.diff:
        click.echo(result.diff, nl=False)
    else:
        get_console().print_debug("No changes")


@cli.command()
@click.argument("path", type=PATH_ARG)
@click.option("--runs-per-month", type=click.IntRange(min=0), default=settings.RUNS_PER_MONTH, show_default=True)
@click.option("--team-size", type=click.IntRange(min=1), default=settings.TEAM_SIZE, show_default=True)
@click.option("--hourly-rate", type=click.FloatRange(min=0), default=settings.HOURLY_RATE, show_default=True)
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text", show_default=True)
@history_option
def cost(path, runs_per_month, team_size, hourly_rate, fmt, history_file):
    """Estimate monthly compute cost and developer wait time."""
    console = get_console()
    try:
        dags = load_pipelines(path, history_file)
        estimates = []
        for dag in dags:
            result = optimize_dag(dag)
            estimates.append(estimate_costs(
                result.original_duration_secs,
                result.optimized_duration_secs,
                pipeline_name=dag.name,
                runner=pipeline_runner(dag),
                runs_per_month=runs_per_month,
                team_size=team_size,
                hourly_rate=hourly_rate,
            ))
    except (PipelineError, OSError) as e:
        fail(e)

    if fmt == "json":
        schemas = [e.to_schema() for e in estimates]
        click.echo(dump_json(schemas[0]) if len(schemas) == 1 else dump_many(schemas))
    else:
        for estimate in estimates:
            console.print_cost(estimate, team_size)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format", "fmt",
    type=click.Choice(sorted(RENDERERS)),
    default="mermaid",
    show_default=True,
)
@click.option(
    "-o", "--output",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
)
@history_option
def graph(path, fmt, output, history_file):
    """Render the job dependency graph."""
    try:
        dag = load_pipelines(path, history_file)[0]
    except (PipelineError, OSError) as e:
        fail(e)
    write_output(render(dag, fmt), output)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--runs", type=click.IntRange(min=1), default=settings.SIMULATION_RUNS, show_default=True)
@click.option("--variance", type=click.FloatRange(min=0), default=settings.SIMULATION_VARIANCE, show_default=True)
@click.option("--seed", type=int, default=settings.SIMULATION_SEED, show_default=True)
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Simulation threads")
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text", show_default=True)
@history_option
def simulate(path, runs, variance, seed, workers, fmt, history_file):
    """Monte Carlo simulation of pipeline duration."""
    try:
        dag = load_pipelines(path, history_file)[0]
        result = simulate_dag(dag, runs=runs, variance=variance, seed=seed, workers=workers)
    except (PipelineError, OSError) as e:
        fail(e)

    if fmt == "json":
        click.echo(dump_json(result.to_schema()))
    else:
        get_console().print_simulation(result)


def _parse_changes(ctx, param, values):
    try:
        return [parse_change(v) for v in values]
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@cli.command("what-if")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-c", "--change", "changes",
    multiple=True,
    callback=_parse_changes,
    help="Change to try, e.g. 'remove-dep lint->test' or 'add-cache build 90' (repeatable)",
)
@click.option("--runs-per-month", type=click.IntRange(min=0), default=settings.RUNS_PER_MONTH, show_default=True)
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text", show_default=True)
@history_option
def what_if_command(path, changes, runs_per_month, fmt, history_file):
    """Estimate the effect of hypothetical changes without editing the pipeline."""
    try:
        dag = load_pipelines(path, history_file)[0]
        result = what_if(dag, changes, runs_per_month=runs_per_month)
    except (PipelineError, OSError) as e:
        fail(e)

    if fmt == "json":
        click.echo(dump_json(result.to_schema()))
    else:
        get_console().print_what_if(result)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
