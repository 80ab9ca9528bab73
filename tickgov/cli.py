"""CLI for tickgov.

Provides the ``tickgov`` command: set up a repository, run one governed
tick or a loop of ticks, and inspect or repair workspace state.
"""

import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tickgov import codes
from tickgov.atomic_io import atomic_write_json, read_json
from tickgov.config import CONFIG_FILENAME, TickgovConfig
from tickgov.errors import ConfigError, LockCorruptError, TaskValidationError
from tickgov.fingerprint import fingerprint as task_fingerprint
from tickgov.lock import TickLock
from tickgov.loop import LoopResult, StopFlag, install_signal_handlers, run_loop
from tickgov.models import Task
from tickgov.report import BLOCKED_JSON, REMEDIATION, REPORT_JSON
from tickgov.state import WorkspaceState
from tickgov.telemetry import create_metrics, setup_telemetry, shutdown_telemetry
from tickgov.tick import TickOutcome, run_tick

console = Console()

EXIT_CODES = {"success": 0, "stop": 1, "blocked": 2}
EXIT_INTERRUPTED = 130

GITIGNORE_MARKER = "# tickgov runner-owned (auto-generated)"

VERDICT_COLORS = {"success": "green", "stop": "yellow", "blocked": "red"}


@click.group()
@click.version_option(package_name="tickgov")
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Repository root (default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, repo: Path, verbose: bool) -> None:
    """tickgov - Governed ticks for autonomous build loops."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        stream=sys.stderr,
    )
    ctx.obj = {"repo_root": repo.resolve()}


def _load_config(repo_root: Path, as_json: bool) -> TickgovConfig:
    """Load tickgov.json; a missing or invalid file ends the command as blocked."""
    try:
        return TickgovConfig.from_env(repo_root / CONFIG_FILENAME)
    except ConfigError as e:
        if as_json:
            click.echo(
                json.dumps(
                    {
                        "verdict": "blocked",
                        "code": codes.BLOCKED_MISSING_CONFIG,
                        "reason": str(e),
                        "remediation": REMEDIATION[codes.BLOCKED_MISSING_CONFIG],
                    },
                    indent=2,
                )
            )
        else:
            console.print(f"[bold red]BLOCKED[/bold red] {codes.BLOCKED_MISSING_CONFIG}: {e}")
            console.print(REMEDIATION[codes.BLOCKED_MISSING_CONFIG])
        sys.exit(EXIT_CODES["blocked"])


# =============================================================================
# init
# =============================================================================


def ensure_gitignore(repo_root: Path, entries: list[str]) -> list[str]:
    """Append missing entries to .gitignore under a marker comment.

    Returns:
        Entries that were added
    """
    path = repo_root / ".gitignore"
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    present = {line.strip() for line in existing.splitlines()}
    missing = [entry for entry in entries if entry not in present]
    if not missing:
        return []

    block = "\n".join([GITIGNORE_MARKER] + missing) + "\n"
    if existing and not existing.endswith("\n"):
        existing += "\n"
    separator = "\n" if existing else ""
    path.write_text(existing + separator + block, encoding="utf-8")
    return missing


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing tickgov.json")
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Write a default tickgov.json and gitignore the workspace."""
    repo_root: Path = ctx.obj["repo_root"]
    config_path = repo_root / CONFIG_FILENAME

    if config_path.exists() and not force:
        console.print(f"[yellow]{CONFIG_FILENAME} already exists[/yellow] (use --force to overwrite)")
    else:
        config = TickgovConfig()
        data = asdict(config)
        # Resolved from the environment at run time
        data.pop("telemetry", None)
        atomic_write_json(config_path, data)
        console.print(f"[green]Wrote[/green] {config_path}")

    workspace_dir = TickgovConfig().workspace_dir
    added = ensure_gitignore(repo_root, [f"{workspace_dir}/"])
    if added:
        console.print(f"[green]Added to .gitignore:[/green] {', '.join(added)}")
    else:
        console.print(".gitignore already ignores the workspace")


# =============================================================================
# tick / loop
# =============================================================================


def _print_outcome(outcome: TickOutcome) -> None:
    report = outcome.report
    color = VERDICT_COLORS.get(report.verdict, "white")
    task_id = report.task["task_id"] if report.task else "-"
    console.print(
        f"Tick {report.run_id} ({task_id}): "
        f"[bold {color}]{report.verdict.upper()}[/bold {color}] {report.code} "
        f"({report.duration_ms / 1000:.0f}s, "
        f"{outcome.usage.total_tokens / 1000:.1f}k tokens, "
        f"${outcome.usage.cost_usd:.2f})"
    )
    if report.reason:
        console.print(f"  {report.reason}")
    if report.branch:
        console.print(f"  [dim]on branch {report.branch}[/dim]")
    if report.question is not None:
        console.print(f"\n[yellow]Question:[/yellow] {report.question.prompt}")
        if report.question.choices:
            console.print(f"[yellow]Choices:[/yellow] {', '.join(report.question.choices)}")
    if report.verdict == "blocked":
        console.print(f"\n[red]Remediation:[/red] {REMEDIATION.get(report.code, '-')}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print REPORT.json instead of a summary")
@click.pass_context
def tick(ctx: click.Context, as_json: bool) -> None:
    """Run one governed tick.

    A first SIGINT/SIGTERM lets the tick finish; a second one interrupts it.
    """
    repo_root: Path = ctx.obj["repo_root"]
    config = _load_config(repo_root, as_json)
    outcome = asyncio.run(_run_tick(config, repo_root))

    if as_json:
        click.echo(json.dumps(outcome.report.to_dict(), indent=2))
    else:
        _print_outcome(outcome)
    sys.exit(EXIT_CODES[outcome.report.verdict])


async def _run_tick(config: TickgovConfig, repo_root: Path) -> TickOutcome:
    """Internal async implementation of a single tick."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    flag = StopFlag()
    restore = install_signal_handlers(flag)
    try:
        return await run_tick(config, repo_root=repo_root, cancel=flag.cancel, tracer=tracer)
    finally:
        restore()
        shutdown_telemetry()


@cli.command()
@click.option("--max-ticks", "-n", default=10, show_default=True, help="Maximum ticks to run")
@click.option("--json", "as_json", is_flag=True, help="Print the loop result as JSON")
@click.pass_context
def loop(ctx: click.Context, max_ticks: int, as_json: bool) -> None:
    """Run ticks until one does not succeed or a limit is reached."""
    repo_root: Path = ctx.obj["repo_root"]
    config = _load_config(repo_root, as_json)
    result = asyncio.run(_run_loop(config, repo_root, max_ticks, quiet=as_json))

    if as_json:
        click.echo(
            json.dumps(
                {
                    "ticks_executed": result.ticks_executed,
                    "final_verdict": result.final_verdict,
                    "stop_reason": result.stop_reason,
                    "usage": result.usage.to_dict(),
                    "reports": [r.to_dict() for r in result.reports],
                },
                indent=2,
            )
        )
    else:
        _print_loop_summary(result)

    if result.stop_reason == "stop_requested":
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_CODES.get(result.final_verdict, 1))


async def _run_loop(
    config: TickgovConfig, repo_root: Path, max_ticks: int, quiet: bool
) -> LoopResult:
    """Internal async implementation of the loop."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    flag = StopFlag()
    restore = install_signal_handlers(flag)
    try:
        return await run_loop(
            config,
            max_ticks,
            repo_root=repo_root,
            stop_flag=flag,
            tracer=tracer,
            on_tick=None if quiet else _print_outcome,
        )
    finally:
        restore()
        shutdown_telemetry()


def _print_loop_summary(result: LoopResult) -> None:
    color = VERDICT_COLORS.get(result.final_verdict, "white")
    console.print(f"\n[bold {color}]Loop stopped: {result.stop_reason}[/bold {color}]")
    console.print(f"  Ticks: {result.ticks_executed}")
    console.print(f"  Final verdict: {result.final_verdict}")
    console.print(f"  Tokens: {result.usage.total_tokens / 1000:.1f}k")
    console.print(f"  Cost: ${result.usage.cost_usd:.2f}")
    if result.stop_reason == "escalation_human":
        console.print(
            "  [yellow]A human should review the last reports; run `tickgov tick` to continue.[/yellow]"
        )


# =============================================================================
# status / fingerprint / unlock
# =============================================================================


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show workspace state, budgets and any blocking condition."""
    repo_root: Path = ctx.obj["repo_root"]
    try:
        config = TickgovConfig.from_env(repo_root / CONFIG_FILENAME)
    except ConfigError as e:
        console.print(f"[yellow]{e}; showing defaults[/yellow]")
        config = TickgovConfig.from_env()
    workspace = config.workspace_path(repo_root)

    if not workspace.is_dir():
        console.print("[yellow]No workspace found[/yellow] (no tick has run yet)")
        return

    state = WorkspaceState.load(workspace)
    limits = config.budgets.per_milestone

    table = Table(title="tickgov status")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Milestone", state.milestone_id or "-")
    table.add_row("Total ticks", str(state.total_ticks))
    table.add_row("Last run", state.last_run_id or "-")
    last = f"{state.last_verdict or '-'} {state.last_code or ''}".strip()
    color = VERDICT_COLORS.get(state.last_verdict or "", "white")
    table.add_row("Last verdict", f"[{color}]{last}[/{color}]")
    table.add_row("Failure streak", str(state.failure_streak))
    b = state.budgets
    table.add_row("Ticks", f"{b.ticks}/{limits.max_ticks}")
    table.add_row("Planner calls", f"{b.orchestrator_calls}/{limits.max_orchestrator_calls}")
    table.add_row("Builder calls", f"{b.builder_calls}/{limits.max_builder_calls}")
    table.add_row("Verify runs", f"{b.verify_runs}/{limits.max_verify_runs}")
    table.add_row(
        "Estimated cost", f"${b.estimated_cost_usd:.2f}/${limits.max_estimated_cost_usd:.2f}"
    )
    table.add_row("Budget warning", "[yellow]yes[/yellow]" if state.budget_warning else "no")
    console.print(table)

    try:
        blocked = read_json(workspace / BLOCKED_JSON)
    except json.JSONDecodeError as e:
        console.print(f"[red]Unreadable {BLOCKED_JSON}:[/red] {e}")
        blocked = None
    if isinstance(blocked, dict):
        console.print(
            Panel(
                f"{blocked.get('reason', '')}\n\n[bold]Remediation:[/bold] {blocked.get('remediation', '-')}",
                title=f"[red]BLOCKED {blocked.get('code', '')}[/red]",
            )
        )

    if not (workspace / REPORT_JSON).exists():
        console.print(f"[yellow]No {REPORT_JSON} yet[/yellow]")


@cli.command()
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def fingerprint(task_file: Path) -> None:
    """Print the SHA-256 fingerprint of a task JSON file.

    The file is parsed as a task first, so the digest matches the one
    recorded for a failed task in STATE.json.
    """
    try:
        data = json.loads(task_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] {task_file} is not valid JSON: {e}")
        sys.exit(1)
    try:
        task = Task.from_dict(data)
    except TaskValidationError as e:
        console.print(f"[red]Error:[/red] {task_file} is not a valid task: {e}")
        sys.exit(1)
    click.echo(task_fingerprint(task))


@cli.command()
@click.option("--force", is_flag=True, help="Remove the lock even if its holder is alive")
@click.pass_context
def unlock(ctx: click.Context, force: bool) -> None:
    """Remove a stale or corrupt workspace lock."""
    repo_root: Path = ctx.obj["repo_root"]
    try:
        config = TickgovConfig.from_env(repo_root / CONFIG_FILENAME)
    except ConfigError:
        config = TickgovConfig.from_env()
    lock = TickLock(config.workspace_path(repo_root) / config.runner.lockfile)

    try:
        info = lock.read()
    except LockCorruptError as e:
        console.print(f"[yellow]Removing corrupt lock:[/yellow] {e.detail}")
        lock.release()
        return

    if info is None:
        console.print("No lock held")
        return
    if not lock.is_stale(info) and not force:
        console.print(
            f"[red]Lock is held by live PID {info.pid}[/red] (started {info.started_at}); "
            "use --force to remove it anyway"
        )
        sys.exit(1)
    lock.release()
    console.print(f"[green]Removed lock[/green] (PID {info.pid}, started {info.started_at})")


def main() -> None:
    """Main entry point for the tickgov CLI."""
    cli()


if __name__ == "__main__":
    main()
