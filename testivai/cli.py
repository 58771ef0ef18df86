"""CLI entry point for testivai visual regression."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from testivai.errors import VisualRegressionError
from testivai.models.config import CONFIG_FILENAME, Engine, Framework, VisualRegressionConfig
from testivai.reporter.synthesizer import partition_unchanged
from testivai.workflow import VisualRegressionRunner

console = Console()

STATUS_STYLES = {
    "passed": "green",
    "approved": "green",
    "changed": "yellow",
    "new": "blue",
    "deleted": "magenta",
    "failed": "red",
    "rejected": "red",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _fail(error: VisualRegressionError) -> NoReturn:
    console.print(f"[red]{escape(error.message)}[/red]")
    if error.recovery_hint:
        console.print(f"[yellow]{escape(error.recovery_hint)}[/yellow]")
    sys.exit(1)


def _runner(config: str) -> VisualRegressionRunner:
    cfg = VisualRegressionConfig.load_or_default(config)
    return VisualRegressionRunner(cfg)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Branch-aware visual regression testing"""
    setup_logging(verbose)


@cli.command()
@click.option(
    "--framework", "-f",
    type=click.Choice([f.value for f in Framework]),
    default=Framework.PLAYWRIGHT.value,
    help="Test framework producing the screenshots",
)
@click.option("--threshold", "-t", type=click.FloatRange(0.0, 1.0), default=0.1, help="Diff threshold (0-1)")
@click.option("--engine", type=click.Choice([e.value for e in Engine]), default=Engine.PIXELMATCH.value)
def init(framework: str, threshold: float, engine: str) -> None:
    """Create a default configuration file and storage directories."""
    config_path = Path(CONFIG_FILENAME)
    if config_path.exists():
        if not click.confirm(f"{CONFIG_FILENAME} already exists. Overwrite?"):
            return

    cfg = VisualRegressionConfig(framework=framework, diff_threshold=threshold, engine=engine)
    cfg.save(config_path)
    for directory in (cfg.baseline_dir, cfg.compare_dir, cfg.report_dir):
        Path(directory).mkdir(parents=True, exist_ok=True)

    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nCapture screenshots in your tests, then run:")
    console.print("  [blue]testivai compare[/blue]")


@cli.command()
@click.option("--config", "-c", default=CONFIG_FILENAME, help="Config file path")
@click.option("--threshold", "-t", type=click.FloatRange(0.0, 1.0), default=None, help="Override diff threshold")
@click.option("--update-baselines", is_flag=True, help="Copy changed captures over baselines")
@click.option("--fail-on-diff", is_flag=True, help="Exit 1 when any test changed or failed")
def compare(config: str, threshold: float | None, update_baselines: bool, fail_on_diff: bool) -> None:
    """Compare the current branch's captures against baselines."""
    cfg = VisualRegressionConfig.load_or_default(config)
    overrides = {}
    if threshold is not None:
        overrides["diff_threshold"] = threshold
    if update_baselines:
        overrides["update_baselines"] = True
    if overrides:
        cfg = cfg.model_copy(update=overrides)

    try:
        report = VisualRegressionRunner(cfg).run_compare()
    except VisualRegressionError as e:
        _fail(e)

    review, unchanged = partition_unchanged(report.tests)
    table = Table(title=f"Visual Comparison ({report.metadata.git_info.branch})")
    table.add_column("Test", style="bold")
    table.add_column("Status")
    table.add_column("Diff", justify="right")
    for test in review:
        style = STATUS_STYLES.get(test.display_status, "white")
        table.add_row(test.name, f"[{style}]{test.display_status}[/{style}]", f"{test.diff_percentage:.2%}")
    if review:
        console.print(table)
    console.print(
        f"\n[bold]Total:[/bold] {report.metadata.total_tests}  "
        f"[green]Passed: {report.metadata.passed_tests}[/green]  "
        f"[yellow]Changed: {report.metadata.changed_tests}[/yellow]  "
        f"Unchanged: {len(unchanged)}"
    )
    console.print(f"Report: [blue]{cfg.report_path}[/blue]")

    if fail_on_diff and report.metadata.changed_tests:
        sys.exit(1)


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--config", "-c", default=CONFIG_FILENAME, help="Config file path")
def approve(names: tuple[str, ...], config: str) -> None:
    """Accept the current captures of NAMES as correct."""
    try:
        _runner(config).decide(list(names), "accept")
    except VisualRegressionError as e:
        _fail(e)
    console.print(f"[green]Approved:[/green] {', '.join(names)}")


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--config", "-c", default=CONFIG_FILENAME, help="Config file path")
def reject(names: tuple[str, ...], config: str) -> None:
    """Reject the current captures of NAMES."""
    try:
        _runner(config).decide(list(names), "reject")
    except VisualRegressionError as e:
        _fail(e)
    console.print(f"[red]Rejected:[/red] {', '.join(names)}")


@cli.command()
@click.argument("name")
@click.option("--config", "-c", default=CONFIG_FILENAME, help="Config file path")
def undo(name: str, config: str) -> None:
    """Clear the recorded decision for NAME."""
    try:
        cleared = _runner(config).undo(name)
    except VisualRegressionError as e:
        _fail(e)
    if cleared:
        console.print(f"[green]Cleared decision for {name}[/green]")
    else:
        console.print(f"[yellow]No decision recorded for {name}[/yellow]")


@cli.command()
@click.option("--config", "-c", default=CONFIG_FILENAME, help="Config file path")
def history(config: str) -> None:
    """List the commits that recorded approval decisions."""
    try:
        ledger = _runner(config).history()
    except VisualRegressionError as e:
        _fail(e)

    if not ledger.commits:
        console.print("[yellow]No approval history yet[/yellow]")
        return

    table = Table(title=f"Approval History (last {ledger.max_history})")
    table.add_column("Commit", style="bold", no_wrap=True)
    table.add_column("Branch")
    table.add_column("Author")
    table.add_column("Message")
    table.add_column("Accepted", justify="right", style="green")
    table.add_column("Rejected", justify="right", style="red")
    for entry in ledger.commits:
        table.add_row(
            entry.short_sha, entry.branch, entry.author, entry.message,
            str(entry.summary.accepted), str(entry.summary.rejected),
        )
    console.print(table)


@cli.command()
@click.argument("short_sha")
@click.option("--config", "-c", default=CONFIG_FILENAME, help="Config file path")
def revert(short_sha: str, config: str) -> None:
    """Restore the baselines accepted in commit SHORT_SHA."""
    try:
        outcome = _runner(config).revert(short_sha)
    except VisualRegressionError as e:
        _fail(e)

    for name in outcome.restored:
        console.print(f"  [green]restored[/green] {name}")
    for name in outcome.failed:
        console.print(f"  [red]failed[/red]   {name}")
    if not outcome.restored and not outcome.failed:
        console.print(f"[yellow]Commit {short_sha} accepted no changes; nothing to restore[/yellow]")
    if not outcome.ok:
        sys.exit(1)


if __name__ == "__main__":
    cli()
