"""Progress migration command.

Recomputes enrollment rollups from progress records, for every enrollment or
scoped to one user or one module.

Examples:
    coursetrack-reconcile --dry-run               # Preview a full migration
    coursetrack-reconcile --user-id <uuid>        # One user's enrollments
    coursetrack-reconcile --module-id <uuid> -y   # One module, no countdown
"""

import asyncio
import signal
import time
from pathlib import Path
from uuid import UUID

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from coursetrack.bootstrap import open_progress_services
from coursetrack.config import Settings, get_settings
from coursetrack.core.logging import configure_structlog, get_logger
from coursetrack.progress.migration import MigrationReport
from coursetrack.progress.reconciliation import ReconciliationOptions


COUNTDOWN_SECONDS = 5

console = Console()
logger = get_logger(__name__)

app = typer.Typer(
    name="coursetrack-reconcile",
    help="Recompute enrollment progress from progress records",
    add_completion=False,
)


# ============================================================================
# RUNNING
# ============================================================================


async def run_migration(
    options: ReconciliationOptions,
    settings: Settings,
    cancel_event: asyncio.Event | None = None,
) -> MigrationReport:
    """Open storage and run one migration pass."""
    async with open_progress_services(settings) as services:
        return await services.migrator.run(options, cancel_event)


async def _run_interruptible(
    options: ReconciliationOptions, settings: Settings
) -> MigrationReport:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _interrupt() -> None:
        console.print("[yellow]Interrupt received, stopping after current batch...[/yellow]")
        cancel_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, _interrupt)
    except (NotImplementedError, RuntimeError):
        # Signal handlers are only available on the main thread of Unix hosts
        logger.debug("sigint_handler_unavailable")

    try:
        return await run_migration(options, settings, cancel_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _countdown(seconds: int) -> None:
    console.print(
        Panel(
            "[bold yellow]This will write enrollment progress.[/bold yellow]\n"
            "Press Ctrl+C to abort.",
            border_style="yellow",
        )
    )
    for remaining in range(seconds, 0, -1):
        console.print(f"Starting in {remaining}...")
        time.sleep(1)


# ============================================================================
# RENDERING
# ============================================================================


def render_report(report: MigrationReport) -> None:
    """Print validation statistics and reconciliation results."""
    validation = Table(title="Data validation", box=box.SIMPLE)
    validation.add_column("Metric")
    validation.add_column("Value", justify="right")
    for name, value in report.validation.to_dict().items():
        validation.add_row(name.replace("_", " "), str(value))
    console.print(validation)

    if report.section_counts is not None:
        counts = report.section_counts
        console.print(
            f"Section counts: {counts.updated} enrollments across "
            f"{counts.modules} modules, {counts.errors} errors"
        )

    rec = report.reconciliation
    results = Table(
        title=f"Reconciliation ({rec.scope.value}{', dry run' if rec.dry_run else ''})",
        box=box.ROUNDED,
    )
    results.add_column("Total", justify="right")
    results.add_column("Processed", justify="right")
    results.add_column("Updated", justify="right", style="green")
    results.add_column("Unchanged", justify="right")
    results.add_column("Skipped", justify="right", style="yellow")
    results.add_column("Errors", justify="right", style="red")
    results.add_column("Success rate", justify="right")
    results.add_row(
        str(rec.total_enrollments),
        str(rec.processed),
        str(rec.updated),
        str(rec.unchanged),
        str(rec.skipped),
        str(rec.errors),
        f"{rec.success_rate}%",
    )
    console.print(results)

    if rec.drifted:
        drift = Table(title="Drifted enrollments", box=box.SIMPLE)
        drift.add_column("User")
        drift.add_column("Module")
        drift.add_column("Stored", justify="right")
        drift.add_column("Recomputed", justify="right")
        for entry in rec.drifted:
            drift.add_row(
                str(entry.user_id),
                str(entry.module_id),
                f"{entry.stored_percentage}%",
                f"{entry.recomputed_percentage}%",
            )
        console.print(drift)

    for failure in rec.failures:
        console.print(
            f"[red]Failed[/red] {failure.user_id}/{failure.module_id}: {failure.error}"
        )

    if rec.interrupted:
        console.print("[yellow]Run interrupted before all batches were processed.[/yellow]")


# ============================================================================
# COMMAND
# ============================================================================


@app.command()
def reconcile(
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n", help="Compute and report without writing"
    ),
    batch_size: int | None = typer.Option(
        None, "--batch-size", "-b", help="Enrollments per batch"
    ),
    user_id: UUID | None = typer.Option(
        None, "--user-id", help="Only this user's enrollments"
    ),
    module_id: UUID | None = typer.Option(
        None, "--module-id", help="Only this module's enrollments"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Concurrent recomputes per batch"
    ),
    detect_drift: bool = typer.Option(
        False, "--detect-drift", help="List enrollments whose stored percentage drifted"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the countdown"),
):
    """Recompute enrollment rollups from progress records."""
    settings = get_settings()
    configure_structlog(settings, log_dir=Path(settings.log_dir))

    try:
        options = ReconciliationOptions(
            batch_size=(
                settings.progress_reconcile_batch_size
                if batch_size is None
                else batch_size
            ),
            concurrency=(
                settings.progress_reconcile_concurrency
                if concurrency is None
                else concurrency
            ),
            dry_run=dry_run,
            user_id=user_id,
            module_id=module_id,
            detect_drift=detect_drift,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    console.print(
        f"Scope: [bold]{options.scope.value}[/bold]  "
        f"batch size: {options.batch_size}  concurrency: {options.concurrency}  "
        f"backend: {settings.storage_backend}"
    )

    if not dry_run and not yes:
        try:
            _countdown(COUNTDOWN_SECONDS)
        except KeyboardInterrupt:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(130) from None

    try:
        report = asyncio.run(_run_interruptible(options, settings))
    except ConnectionError as e:
        console.print(Panel(f"[bold red]{e}[/bold red]", border_style="red"))
        raise typer.Exit(2) from e

    render_report(report)

    section_errors = report.section_counts.errors if report.section_counts else 0
    if report.reconciliation.errors or section_errors:
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
