"""
pipewright CLI - Command Line Interface

Entry point for all command-line operations: validating and planning
pipeline definitions, starting manual, CI and scheduled runs, inspecting
and retrying past runs, and exporting reports.
"""

import asyncio
import logging
import signal
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

from pipewright import __version__
from pipewright.core.config import Settings, load_settings
from pipewright.core.constants import (
    CONFIGURATION_ERROR_EXIT_CODE,
    BuildReason,
    NodeKind,
    RunOutcome,
)
from pipewright.core.exceptions import ConfigurationError, PipewrightError
from pipewright.core.models import NodeRecord, RunMetadata, Trigger


# Create CLI app
app = typer.Typer(
    name="pipewright",
    help="pipewright - Self-hosted multi-platform build orchestrator",
    add_completion=False,
    no_args_is_help=True,
)

# Create sub-apps for command groups
runs_app = typer.Typer(help="Inspect, approve, retry and prune runs")
schedule_app = typer.Typer(help="Evaluate and fire cron schedules")

# Register sub-apps
app.add_typer(runs_app, name="runs")
app.add_typer(schedule_app, name="schedule")

# Rich console for output
console = Console()

_options = {"config": None, "verbose": False}

STATUS_COLORS = {
    "succeeded": "green",
    "running": "yellow",
    "failed": "red",
    "timed_out": "red",
    "canceled": "dim",
    "skipped": "dim",
    "pending": "blue",
}


# ============================================================================
# Helpers
# ============================================================================

def setup_logging(verbose: bool) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


def parse_parameters(values: Optional[List[str]]) -> dict[str, str]:
    """Parse repeated `-p NAME=VALUE` options."""
    parameters: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"Expected NAME=VALUE, got '{item}'")
        parameters[name.strip()] = value
    return parameters


def parse_at(value: Optional[str]) -> datetime:
    """Parse `--at` (ISO 8601), defaulting to the current minute."""
    if value is None:
        return datetime.now().replace(second=0, microsecond=0)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid timestamp '{value}', expected ISO 8601")


def colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


@contextmanager
def cli_errors(action: str) -> Iterator[None]:
    """Turn library errors into an error line and an exit code."""
    try:
        yield
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=CONFIGURATION_ERROR_EXIT_CODE)
    except PipewrightError as e:
        console.print(f"[red]Error {action}:[/red] {e}")
        if _options["verbose"]:
            console.print_exception()
        raise typer.Exit(code=1)


def get_settings() -> Settings:
    return load_settings(_options["config"])


def open_database(settings: Settings):
    from pipewright.storage.database import Database

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    db = Database(settings.db_path)
    db.init_db()
    return db


def make_trigger(
    reason: BuildReason,
    branch: str,
    parameters: Optional[List[str]],
    requested_for: str,
) -> Trigger:
    return Trigger(
        reason=reason,
        branch=branch,
        parameters=parse_parameters(parameters),
        requested_for=requested_for,
    )


def parse_reason(value: str) -> BuildReason:
    try:
        return BuildReason.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def execute(
    settings: Settings,
    db,
    start: Callable[..., Awaitable[RunMetadata]],
    description: str,
) -> RunMetadata:
    """Run one orchestrator call with webhooks, a spinner and SIGINT cancel.

    Args:
        settings: Loaded settings
        db: Open run database
        start: Called with the orchestrator, returns the finished run
        description: Spinner text
    """
    from pipewright.notifications.webhook import create_webhook_manager
    from pipewright.orchestrator.pipeline import PipelineOrchestrator

    webhooks = create_webhook_manager(settings.notifications)

    async def run_pipeline() -> RunMetadata:
        orchestrator = PipelineOrchestrator(settings, db=db, webhooks=webhooks)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(
                signal.SIGINT, orchestrator.request_cancel, "Interrupted by user"
            )
            handler_installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            handler_installed = False

        if webhooks is not None:
            await webhooks.start()
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task(f"[cyan]{description}", total=None)
                return await start(orchestrator)
        finally:
            if webhooks is not None:
                await webhooks.stop()
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(run_pipeline())


def print_run_summary(run: RunMetadata, records: list[NodeRecord]) -> None:
    from pipewright.reporting.generator import format_duration

    outcome = run.outcome.value
    console.print(Panel.fit(
        f"[bold]Pipeline:[/bold] {run.pipeline}\n"
        f"[bold]Outcome:[/bold] {colored(outcome)}\n"
        f"[bold]Trigger:[/bold] {run.trigger.reason.value} on {run.trigger.source_branch} "
        f"by {run.trigger.requested_for}\n"
        f"[bold]Duration:[/bold] {format_duration(run.duration)}"
        + (f"\n[bold]Retry of:[/bold] {run.retry_of}" if run.retry_of else ""),
        title=f"Run {run.id}",
    ))

    table = Table(show_header=True)
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", style="blue")
    table.add_column("Detail", style="white", max_width=60)
    for record in records:
        if record.kind == NodeKind.STEP:
            continue
        indent = "  " if record.kind == NodeKind.JOB else ""
        detail = record.error_message or ""
        if record.reused:
            detail = "reused"
        elif record.issues:
            detail = f"{record.issues} issue(s)"
        table.add_row(
            f"{indent}{record.node_id}",
            colored(record.status.value),
            format_duration(record.duration) if record.duration is not None else "-",
            detail,
        )
    console.print(table)


def finish(run: RunMetadata, db) -> None:
    """Print the outcome of a run and exit with its code."""
    print_run_summary(run, db.get_nodes(run.id))
    console.print(f"[blue]Logs:[/blue] {run.logs_dir}")
    raise typer.Exit(code=run.outcome.exit_code)


# ============================================================================
# Main Commands
# ============================================================================

@app.callback()
def main_options(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Settings file (default: ./pipewright.yaml if present)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Global options."""
    _options["config"] = config
    _options["verbose"] = verbose
    setup_logging(verbose)


@app.command()
def validate(
    file: Path = typer.Argument(..., help="Pipeline definition file"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="NAME=VALUE"),
    branch: str = typer.Option("main", "--branch", "-b", help="Source branch"),
) -> None:
    """Check that a definition loads, resolves and plans."""
    from pipewright.definition.loader import prepare_run

    with cli_errors("validating definition"):
        settings = get_settings()
        trigger = make_trigger(BuildReason.MANUAL, branch, param, "system")
        prepared = prepare_run(file, trigger, settings)

    plan = prepared.plan
    step_count = sum(len(job.steps) for stage in plan.stages for job in stage.jobs)
    console.print(
        f"[green]✓[/green] {prepared.document.name}: {len(plan.stages)} stage(s), "
        f"{plan.job_count} job(s), {step_count} step(s) active"
    )
    if plan.excluded:
        console.print(f"[dim]{len(plan.excluded)} node(s) excluded for branch {branch}[/dim]")


@app.command()
def plan(
    file: Path = typer.Argument(..., help="Pipeline definition file"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="NAME=VALUE"),
    branch: str = typer.Option("main", "--branch", "-b", help="Source branch"),
    reason: str = typer.Option("manual", "--reason", "-r", help="Build reason"),
    requested_for: str = typer.Option("system", "--requested-for", help="Actor"),
) -> None:
    """Show the stages, jobs and steps a run would execute."""
    from pipewright.definition.loader import prepare_run

    with cli_errors("planning run"):
        settings = get_settings()
        trigger = make_trigger(parse_reason(reason), branch, param, requested_for)
        prepared = prepare_run(file, trigger, settings)

    run_plan = prepared.plan
    tree = Tree(f"[bold cyan]{run_plan.pipeline}[/bold cyan] ({trigger.source_branch})")
    for level, names in enumerate(run_plan.stage_levels(), start=1):
        for name in names:
            stage = run_plan.get_stage(name)
            after = f" [dim]after {', '.join(stage.depends_on)}[/dim]" if stage.depends_on else ""
            stage_branch = tree.add(f"[bold]{name}[/bold] [dim](level {level})[/dim]{after}")
            for job in stage.jobs:
                if job.approval:
                    where = "manual approval"
                elif job.environment:
                    where = job.environment.describe()
                else:
                    where = "default pool"
                job_branch = stage_branch.add(f"[cyan]{job.name}[/cyan] [dim]{where}[/dim]")
                for step in job.steps:
                    job_branch.add(step.display_name or step.name)
    console.print(tree)

    if run_plan.excluded:
        console.print(f"\n[bold]Excluded ({len(run_plan.excluded)}):[/bold]")
        for node_id in run_plan.excluded:
            console.print(f"  [dim]- {node_id}[/dim]")


@app.command()
def run(
    file: Path = typer.Argument(..., help="Pipeline definition file"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="NAME=VALUE"),
    branch: str = typer.Option("main", "--branch", "-b", help="Source branch"),
    reason: str = typer.Option("manual", "--reason", "-r", help="Build reason"),
    requested_for: str = typer.Option("system", "--requested-for", help="Actor"),
) -> None:
    """
    Execute a pipeline run.

    Exits 0 when the run succeeded, 1 when it failed and 2 when it was
    canceled (Ctrl-C cancels the run).
    """
    from pipewright.definition.loader import prepare_run

    with cli_errors("running pipeline"):
        settings = get_settings()
        trigger = make_trigger(parse_reason(reason), branch, param, requested_for)
        prepared = prepare_run(file, trigger, settings)

        console.print(Panel.fit(
            f"[bold cyan]{prepared.plan.pipeline}[/bold cyan]\n\n"
            f"Branch: [yellow]{trigger.source_branch}[/yellow]\n"
            f"Reason: [green]{trigger.reason.value}[/green]\n"
            f"Jobs: [magenta]{prepared.plan.job_count}[/magenta]",
            title="Run Configuration",
        ))

        db = open_database(settings)
        try:
            finished = execute(
                settings, db, lambda o: o.run(prepared), "Running pipeline..."
            )
            finish(finished, db)
        finally:
            db.close()


@app.command()
def trigger(
    file: Path = typer.Argument(..., help="Pipeline definition file"),
    branch: str = typer.Option(..., "--branch", "-b", help="Branch that was pushed"),
    batched: bool = typer.Option(False, "--batched", help="Batched CI build"),
    requested_for: str = typer.Option("system", "--requested-for", help="Actor"),
) -> None:
    """Start a CI run for a push, if the definition's branch filter allows it."""
    from pipewright.definition.loader import load_document, prepare_run
    from pipewright.definition.schedules import ci_trigger_allows

    with cli_errors("triggering pipeline"):
        settings = get_settings()
        document = load_document(file)
        if not ci_trigger_allows(document.trigger, branch):
            console.print(f"[yellow]CI trigger of {document.name} does not include {branch}[/yellow]")
            raise typer.Exit(code=0)

        reason = BuildReason.BATCHED_CI if batched else BuildReason.INDIVIDUAL_CI
        prepared = prepare_run(file, make_trigger(reason, branch, None, requested_for), settings)
        db = open_database(settings)
        try:
            finished = execute(
                settings, db, lambda o: o.run(prepared), f"Running CI build of {branch}..."
            )
            finish(finished, db)
        finally:
            db.close()


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"[bold cyan]pipewright[/bold cyan] version [yellow]{__version__}[/yellow]")


@app.command()
def export(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix) to export"),
    format: str = typer.Option(
        "html",
        "--format",
        "-f",
        help="Export format (html, json)",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file path",
    ),
) -> None:
    """
    Export a run report.
    """
    from pipewright.reporting.generator import ReportGenerator

    if format not in ("html", "json"):
        console.print(f"[red]Error:[/red] Unsupported format '{format}'. Use 'html' or 'json'.")
        raise typer.Exit(code=1)

    with cli_errors("exporting report"):
        settings = get_settings()
        db = open_database(settings)
        try:
            full_id = db.resolve_run_id(run_id)
            output_path = output or Path.cwd() / f"report_{full_id[:12]}.{format}"
            output_path.parent.mkdir(parents=True, exist_ok=True)

            generator = ReportGenerator(db)
            report = generator.generate_report(full_id)
            if format == "html":
                generator.export_html(report, output_path)
            else:
                generator.export_json(report, output_path)
        finally:
            db.close()

    console.print(f"[green]✓[/green] Report exported to: {output_path}")
    console.print(f"[dim]{report.summary}[/dim]")


# ============================================================================
# Schedule Commands
# ============================================================================

@schedule_app.command("due")
def schedule_due(
    file: Path = typer.Argument(..., help="Pipeline definition file"),
    at: Optional[str] = typer.Option(None, "--at", help="Minute to evaluate (ISO 8601)"),
    branch: Optional[str] = typer.Option(
        None, "--branch", "-b", help="Only schedules whose branch filter matches"
    ),
) -> None:
    """List the schedules that fire at a given minute."""
    from pipewright.definition.loader import load_document
    from pipewright.definition.schedules import due_schedules, scheduled_branches

    moment = parse_at(at)
    with cli_errors("evaluating schedules"):
        document = load_document(file)
        due = due_schedules(document, moment)
        if branch is not None:
            due = [s for s in due if s.branches.matches(branch)]

    if not due:
        console.print(f"[dim]No schedule of {document.name} is due at {moment:%Y-%m-%d %H:%M}[/dim]")
        return

    table = Table(title=f"Due at {moment:%Y-%m-%d %H:%M}")
    table.add_column("Schedule", style="cyan")
    table.add_column("Cron", style="yellow")
    table.add_column("Branches", style="green")
    for schedule in due:
        table.add_row(
            schedule.display_name or "-",
            schedule.cron,
            ", ".join(scheduled_branches(schedule)) or "-",
        )
    console.print(table)


@schedule_app.command("tick")
def schedule_tick(
    file: Path = typer.Argument(..., help="Pipeline definition file"),
    at: Optional[str] = typer.Option(None, "--at", help="Minute to evaluate (ISO 8601)"),
) -> None:
    """Start one run per branch of every schedule due at a given minute."""
    from pipewright.definition.loader import load_document, prepare_run
    from pipewright.definition.schedules import due_schedules, scheduled_branches

    moment = parse_at(at)
    exit_code = 0
    with cli_errors("running schedules"):
        settings = get_settings()
        document = load_document(file)
        branches = []
        for schedule in due_schedules(document, moment):
            for branch in scheduled_branches(schedule):
                if branch not in branches:
                    branches.append(branch)

        if not branches:
            console.print(f"[dim]Nothing scheduled at {moment:%Y-%m-%d %H:%M}[/dim]")
            return

        db = open_database(settings)
        try:
            for branch in branches:
                trigger = Trigger(reason=BuildReason.SCHEDULE, branch=branch)
                prepared = prepare_run(file, trigger, settings)
                finished = execute(
                    settings, db, lambda o: o.run(prepared), f"Scheduled build of {branch}..."
                )
                print_run_summary(finished, db.get_nodes(finished.id))
                exit_code = max(exit_code, finished.outcome.exit_code)
                if finished.outcome == RunOutcome.CANCELED:
                    console.print("[yellow]Canceled; remaining scheduled runs not started[/yellow]")
                    break
        finally:
            db.close()

    raise typer.Exit(code=exit_code)


# ============================================================================
# Runs Commands
# ============================================================================

@runs_app.command("list")
def runs_list(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
    outcome: Optional[str] = typer.Option(None, "--outcome", help="Only runs with this outcome"),
    pipeline: Optional[str] = typer.Option(None, "--pipeline", help="Only runs of this pipeline"),
) -> None:
    """List recent runs."""
    outcome_filter = None
    if outcome is not None:
        try:
            outcome_filter = RunOutcome(outcome)
        except ValueError:
            raise typer.BadParameter(f"Unknown outcome '{outcome}'")

    with cli_errors("listing runs"):
        settings = get_settings()
        if not settings.db_path.exists():
            console.print("[yellow]No runs found. Database not initialized yet.[/yellow]")
            return
        db = open_database(settings)
        try:
            runs = db.list_runs(limit=limit, outcome_filter=outcome_filter, pipeline=pipeline)
        finally:
            db.close()

    if not runs:
        console.print("[yellow]No runs found.[/yellow]")
        return

    table = Table(title=f"Recent Runs (showing {len(runs)} of {limit} max)")
    table.add_column("Run ID", style="cyan")
    table.add_column("Pipeline", style="yellow")
    table.add_column("Branch", style="green")
    table.add_column("Reason", style="magenta")
    table.add_column("Outcome")
    table.add_column("Created", style="blue")

    for item in runs:
        table.add_row(
            item.id[:12],
            item.pipeline,
            item.trigger.source_branch_name,
            item.trigger.reason.value,
            colored(item.outcome.value),
            item.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@runs_app.command("show")
def runs_show(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix)"),
    steps: bool = typer.Option(False, "--steps", help="Include steps"),
) -> None:
    """Show detailed information about a run."""
    with cli_errors("showing run"):
        settings = get_settings()
        db = open_database(settings)
        try:
            run_metadata = db.get_run(db.resolve_run_id(run_id))
            records = db.get_nodes(run_metadata.id)
        finally:
            db.close()

    print_run_summary(run_metadata, records)
    if steps:
        steps_table = Table(show_header=True, title="Steps")
        steps_table.add_column("Step", style="cyan")
        steps_table.add_column("Status")
        steps_table.add_column("Exit", style="blue")
        steps_table.add_column("Error", style="white", max_width=60)
        for record in records:
            if record.kind != NodeKind.STEP:
                continue
            steps_table.add_row(
                f"{record.node_id} {record.name}",
                colored(record.status.value),
                "-" if record.exit_code is None else str(record.exit_code),
                record.error_message or "",
            )
        console.print(steps_table)


@runs_app.command("status")
def runs_status(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix)"),
) -> None:
    """Print a run's outcome and exit with its exit code."""
    with cli_errors("reading run"):
        settings = get_settings()
        db = open_database(settings)
        try:
            run_metadata = db.get_run(db.resolve_run_id(run_id))
        finally:
            db.close()

    console.print(f"{run_metadata.id} {colored(run_metadata.outcome.value)}")
    raise typer.Exit(code=run_metadata.outcome.exit_code)


@runs_app.command("logs")
def runs_logs(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix)"),
    node_id: str = typer.Argument(..., help="Step, job or stage node ID"),
) -> None:
    """Print the logs of a step, or of every step under a job or stage."""
    from pipewright.storage.logs import LogStorage

    with cli_errors("reading logs"):
        settings = get_settings()
        db = open_database(settings)
        try:
            full_id = db.resolve_run_id(run_id)
            records = db.get_nodes(full_id)
        finally:
            db.close()

        node_id = node_id.strip("/")
        selected = [
            r for r in records
            if r.kind == NodeKind.STEP
            and (r.node_id == node_id or r.node_id.startswith(f"{node_id}/"))
        ]
        if not selected:
            console.print(f"[red]Error:[/red] Run {full_id[:12]} has no step under '{node_id}'")
            raise typer.Exit(code=1)

        storage = LogStorage(settings.runs_dir)
        for record in selected:
            if record.log_path is None:
                console.print(f"[dim]{record.node_id}: no log ({record.status.value})[/dim]")
                continue
            console.rule(f"{record.node_id} {record.name}")
            console.print(storage.read_log(record.log_path), markup=False, highlight=False, end="")


@runs_app.command("retry")
def runs_retry(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix) to retry"),
) -> None:
    """Re-run a run; nodes that succeeded there are reused."""
    with cli_errors("retrying run"):
        settings = get_settings()
        db = open_database(settings)
        try:
            full_id = db.resolve_run_id(run_id)
            finished = execute(
                settings, db, lambda o: o.retry(full_id), f"Retrying {full_id[:12]}..."
            )
            finish(finished, db)
        finally:
            db.close()


@runs_app.command("approve")
def runs_approve(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix)"),
    node_id: str = typer.Argument(..., help="Approval job node ID (Stage/Job)"),
    reject: bool = typer.Option(False, "--reject", help="Reject instead of approve"),
    comment: Optional[str] = typer.Option(None, "--comment", "-m", help="Reason for the decision"),
    approver: str = typer.Option("system", "--by", help="Who decides"),
) -> None:
    """Approve or reject a waiting approval job."""
    from pipewright.core.models import Approval
    from pipewright.definition.graph import RunPlan

    with cli_errors("recording approval"):
        settings = get_settings()
        db = open_database(settings)
        try:
            run_metadata = db.get_run(db.resolve_run_id(run_id))
            node_id = node_id.strip("/")
            record = db.get_node(run_metadata.id, node_id)
            stage_name, _, job_name = node_id.partition("/")
            job = RunPlan.from_dict(run_metadata.plan).get_job(stage_name, job_name)

            if record is None or record.kind != NodeKind.JOB or job is None or not job.approval:
                console.print(
                    f"[red]Error:[/red] Run {run_metadata.id[:12]} has no approval job '{node_id}'"
                )
                raise typer.Exit(code=1)
            if record.is_terminal:
                console.print(
                    f"[red]Error:[/red] {node_id} already ended {record.status.value}"
                )
                raise typer.Exit(code=1)

            db.save_approval(Approval(
                run_id=run_metadata.id,
                node_id=node_id,
                approved=not reject,
                approver=approver,
                comment=comment,
            ))
        finally:
            db.close()

    verb = "Rejected" if reject else "Approved"
    console.print(f"[green]✓[/green] {verb} {node_id} of run {run_metadata.id[:12]}")


@runs_app.command("prune")
def runs_prune(
    days: Optional[int] = typer.Option(None, "--days", help="Retention in days (default from settings)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list what would be deleted"),
) -> None:
    """Delete finished runs older than the retention period, with their logs."""
    from pipewright.storage.logs import LogStorage, prune_runs

    with cli_errors("pruning runs"):
        settings = get_settings()
        retention = settings.retention_days if days is None else days
        if retention < 0:
            raise typer.BadParameter("--days must not be negative")
        db = open_database(settings)
        try:
            pruned = prune_runs(db, LogStorage(settings.runs_dir), retention, dry_run=dry_run)
        finally:
            db.close()

    verb = "Would delete" if dry_run else "Deleted"
    for pruned_id in pruned:
        console.print(f"  [dim]- {pruned_id}[/dim]")
    console.print(f"[green]✓[/green] {verb} {len(pruned)} run(s) older than {retention} day(s)")


@runs_app.command("delete")
def runs_delete(
    run_id: str = typer.Argument(..., help="Run ID (or unique prefix) to delete"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Delete a run and its logs."""
    from pipewright.storage.logs import LogStorage

    with cli_errors("deleting run"):
        settings = get_settings()
        db = open_database(settings)
        try:
            run_metadata = db.get_run(db.resolve_run_id(run_id))
            if not run_metadata.is_finished:
                console.print(f"[red]Error:[/red] Run {run_metadata.id[:12]} has not finished")
                raise typer.Exit(code=1)

            if not force:
                confirm = typer.confirm(
                    f"Delete run {run_metadata.id[:12]}... ({run_metadata.pipeline}, "
                    f"{run_metadata.outcome.value}) and all its logs?"
                )
                if not confirm:
                    console.print("[yellow]Cancelled[/yellow]")
                    raise typer.Exit(code=0)

            LogStorage(settings.runs_dir).delete_run(run_metadata.id)
            db.delete_run(run_metadata.id)
        finally:
            db.close()

    console.print(f"[green]✓[/green] Run {run_metadata.id} deleted")


# ============================================================================
# Entry Point
# ============================================================================

def main() -> None:
    """Main entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
