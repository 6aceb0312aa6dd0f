#!/usr/bin/env python3
"""
Command-Line Interface for loadrig.

This module provides the main CLI entry point for running load tests,
validating run configurations and previewing ramp profiles.

Usage:
    # Run a load test
    loadrig run run.yaml

    # Point the run at another environment and scale it down
    loadrig run run.yaml --base-url http://staging:8091 --vus 10

    # Save reports
    loadrig run run.yaml --output results/ --format json --format csv

    # Check a configuration without sending traffic
    loadrig validate run.yaml

    # Preview target concurrency over time
    loadrig plan run.yaml --step 30s

Exit codes:
    0   run completed and every threshold passed
    1   configuration, workload or usage error
    99  run completed but at least one threshold failed
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__

# Set up logging with rich handler
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
)
logger = logging.getLogger(__name__)
console = Console()

EXIT_PASSED = 0
EXIT_CONFIG_ERROR = 1
EXIT_THRESHOLDS_FAILED = 99

VALID_REPORT_FORMATS = ["json", "markdown", "csv"]


class CLIContext:
    """Context object for CLI commands."""

    def __init__(self):
        self.verbose = False


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def _print_config_error(error: Exception) -> None:
    errors = getattr(error, "errors", None)
    if errors:
        console.print(f"[bold red]Configuration Error:[/bold red] {error.args[0]}", style="red")
        for message in errors:
            console.print(f"  • {message}")
    else:
        console.print(f"[bold red]Configuration Error:[/bold red] {error}", style="red")


@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output"
)
@click.version_option(version=__version__, prog_name="loadrig")
@pass_context
def cli(ctx: CLIContext, verbose: bool):
    """
    loadrig load-generation harness.

    Run async Python workloads under ramping virtual-user concurrency and
    evaluate pass/fail thresholds over the collected metrics.
    """
    ctx.verbose = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose mode enabled")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--base-url",
    type=str,
    help="Base URL of the system under test (overrides config)"
)
@click.option(
    "--vus",
    type=int,
    default=None,
    help="Scale every scenario so its peak concurrency is this many VUs"
)
@click.option(
    "--graceful-stop",
    type=str,
    default=None,
    help="Time VUs get to finish after the last stage (e.g., 10s)"
)
@click.option(
    "--output", "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output directory for reports"
)
@click.option(
    "--format", "-f", "formats",
    multiple=True,
    type=click.Choice(VALID_REPORT_FORMATS, case_sensitive=False),
    default=["json", "markdown"],
    help="Report format(s) to generate with --output"
)
@click.option(
    "--summary-export",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the JSON result to this file"
)
@pass_context
def run(
    ctx: CLIContext,
    config_path: Path,
    base_url: Optional[str],
    vus: Optional[int],
    graceful_stop: Optional[str],
    output: Optional[Path],
    formats: tuple,
    summary_export: Optional[Path],
):
    """
    Run a load test.

    CONFIG_PATH is a YAML run configuration naming the workload(s), their
    ramp profiles and the thresholds to evaluate.
    """
    import yaml

    from .framework.config import ConfigValidationError, load_config
    from .framework.reporter import RunReporter
    from .framework.runner import run_load_test_sync
    from .framework.workload import WorkloadResolutionError

    try:
        config = load_config(
            config_path=config_path,
            base_url=base_url,
            graceful_stop=graceful_stop,
            vus=vus,
        )
    except (ConfigValidationError, yaml.YAMLError) as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)

    console.print(f"\n[bold blue]loadrig[/bold blue] {config.name}")
    console.print(f"Target: [cyan]{config.base_url}[/cyan]")
    console.print(
        f"Scenarios: [cyan]{', '.join(config.scenarios)}[/cyan] "
        f"(up to {config.max_vus} VUs, {config.total_duration:.0f}s)"
    )

    try:
        result = run_load_test_sync(config)
    except (ConfigValidationError, WorkloadResolutionError) as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}", style="red")
        if ctx.verbose:
            console.print_exception()
        sys.exit(EXIT_CONFIG_ERROR)

    reporter = RunReporter()
    saved_files = []
    if output:
        saved_files = reporter.save_report(result, output, formats=list(formats))
    if summary_export:
        summary_export.parent.mkdir(parents=True, exist_ok=True)
        summary_export.write_text(reporter.to_json(result), encoding="utf-8")
        saved_files.append(summary_export)

    _display_results_summary(result, saved_files)

    sys.exit(EXIT_PASSED if result.passed else EXIT_THRESHOLDS_FAILED)


def _display_results_summary(result, saved_files):
    """Display run results in formatted tables."""
    snapshot = result.snapshot
    console.print("\n")

    table = Table(title="Run Summary", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    status_style = "green" if result.passed else "red"
    status = "PASSED" if result.passed else "FAILED"
    table.add_row("Status", f"[{status_style}]{status}[/{status_style}]")
    if result.aborted_by:
        table.add_row("Aborted By", f"[red]{result.aborted_by}[/red]")
    table.add_row("Duration", f"{result.duration_seconds:.2f}s")
    table.add_row("Requests", f"{snapshot.value('http_reqs', 'count'):.0f}")
    table.add_row("Requests/s", f"{snapshot.value('http_reqs', 'rate'):.2f}")
    table.add_row("Failed Requests", f"{snapshot.value('http_req_failed', 'rate') * 100:.2f}%")
    table.add_row("Latency avg", f"{snapshot.value('http_req_duration', 'avg'):.2f}ms")
    table.add_row("Latency p95", f"{snapshot.value('http_req_duration', 'p(95)'):.2f}ms")
    table.add_row("Latency p99", f"{snapshot.value('http_req_duration', 'p(99)'):.2f}ms")
    table.add_row("Iterations", f"{snapshot.value('iterations', 'count'):.0f}")
    table.add_row("Iteration Errors", f"{snapshot.value('iteration_errors', 'count'):.0f}")
    table.add_row("Peak VUs", f"{snapshot.value('vus_max', 'value'):.0f}")
    console.print(table)

    if snapshot.checks:
        checks = Table(title="Checks", show_header=True, header_style="bold magenta")
        checks.add_column("Check", style="cyan")
        checks.add_column("Passes", justify="right")
        checks.add_column("Fails", justify="right")
        checks.add_column("Rate", justify="right")
        for name, check in snapshot.checks.items():
            style = "green" if check.fails == 0 else "red"
            checks.add_row(
                name,
                str(check.passes),
                str(check.fails),
                f"[{style}]{check.pass_rate * 100:.2f}%[/{style}]",
            )
        console.print(checks)

    if result.thresholds:
        thresholds = Table(title="Thresholds", show_header=True, header_style="bold magenta")
        thresholds.add_column("Metric", style="cyan")
        thresholds.add_column("Threshold")
        thresholds.add_column("Observed", justify="right")
        thresholds.add_column("Result", justify="center")
        for metric, outcome in result.thresholds.items():
            for expression in outcome.results:
                verdict = "[green]✓[/green]" if expression.passed else "[red]✗[/red]"
                thresholds.add_row(
                    metric, expression.expression, f"{expression.observed:.4g}", verdict
                )
        console.print(thresholds)

    if saved_files:
        console.print("\n[bold]Reports saved to:[/bold]")
        for f in saved_files:
            console.print(f"  • {f}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@pass_context
def validate(ctx: CLIContext, config_path: Path):
    """
    Validate a run configuration without sending traffic.

    Checks the schema, ramp profiles and thresholds, and imports every
    workload.
    """
    import yaml

    from .framework.config import ConfigValidationError, load_config
    from .framework.workload import WorkloadResolutionError, resolve_workload

    try:
        config = load_config(config_path=config_path)
        for scenario in config.scenarios.values():
            resolve_workload(scenario.workload, config.source_dir)
    except (ConfigValidationError, WorkloadResolutionError, yaml.YAMLError) as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)

    table = Table(title=f"Run '{config.name}'", show_header=True, header_style="bold magenta")
    table.add_column("Scenario", style="cyan")
    table.add_column("Workload")
    table.add_column("Stages", justify="right")
    table.add_column("Peak VUs", justify="right")
    table.add_column("Start", justify="right")
    table.add_column("Duration", justify="right")
    for name, scenario in config.scenarios.items():
        table.add_row(
            name,
            scenario.workload,
            str(len(scenario.stages)),
            str(scenario.max_target),
            f"{scenario.start_time:.0f}s",
            f"{scenario.duration:.0f}s",
        )
    console.print(table)
    console.print(f"Thresholds: [cyan]{len(config.thresholds)}[/cyan]")
    console.print("[bold green]Configuration is valid[/bold green]")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--step",
    type=str,
    default="10s",
    help="Interval between plan rows (e.g., 5s, 1m)"
)
@click.option(
    "--vus",
    type=int,
    default=None,
    help="Scale every scenario so its peak concurrency is this many VUs"
)
@pass_context
def plan(ctx: CLIContext, config_path: Path, step: str, vus: Optional[int]):
    """
    Show target concurrency over time for every scenario.
    """
    import yaml

    from .framework.config import ConfigValidationError, load_config
    from .framework.scheduler import parse_duration

    try:
        step_seconds = parse_duration(step)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--step")
    if step_seconds <= 0:
        raise click.BadParameter("step must be positive", param_hint="--step")

    try:
        config = load_config(config_path=config_path, vus=vus)
    except (ConfigValidationError, yaml.YAMLError) as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)

    schedules = {name: scenario.schedule() for name, scenario in config.scenarios.items()}

    table = Table(title=f"Plan for '{config.name}'", show_header=True, header_style="bold magenta")
    table.add_column("Elapsed", style="cyan", justify="right")
    for name in schedules:
        table.add_column(name, justify="right")
    table.add_column("Total", justify="right")

    elapsed = 0.0
    total_duration = config.total_duration
    while True:
        row = [f"{elapsed:.0f}s"]
        total = 0
        for name, schedule in schedules.items():
            local = elapsed - config.scenarios[name].start_time
            if local < 0 or schedule.is_finished(local):
                target = 0
            else:
                target = schedule.concurrency_at(local)
            total += target
            row.append(str(target))
        row.append(str(total))
        table.add_row(*row)
        if elapsed >= total_duration:
            break
        elapsed = min(elapsed + step_seconds, total_duration)

    console.print(table)


@cli.command()
@pass_context
def info(ctx: CLIContext):
    """
    Display harness information.

    Show version, built-in metrics, threshold grammar and report formats.
    """
    import platform

    from .framework.metrics import BUILTIN_METRICS
    from .framework.thresholds import AGGREGATIONS, APPLICABLE_AGGREGATIONS, OPERATORS

    console.print("\n[bold blue]loadrig[/bold blue]")
    console.print(f"Version: [cyan]{__version__}[/cyan]")
    console.print(f"Python: [cyan]{platform.python_version()}[/cyan]")

    table = Table(title="Built-in Metrics", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Type")
    table.add_column("Aggregations")
    for name, metric_type in BUILTIN_METRICS.items():
        aggregations = [a for a in AGGREGATIONS if a in APPLICABLE_AGGREGATIONS[metric_type]]
        table.add_row(name, metric_type.value, ", ".join(aggregations))
    console.print(table)

    console.print("\n[bold]Threshold Operators:[/bold]")
    console.print("  " + "  ".join(OPERATORS))

    console.print("\n[bold]Available Report Formats:[/bold]")
    for f in VALID_REPORT_FORMATS:
        console.print(f"  • {f}")


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
