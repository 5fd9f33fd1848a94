"""
Command line interface for the catalog feed ingestion pipeline.

A thin operator front-end over ingest() plus audit history, schema check, table
statistics and the confirmed purge.
"""
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
import structlog
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from catalog_ingest import __version__
from catalog_ingest.config.settings import (
    ApplicationSettings,
    get_environment_info,
    get_settings,
    validate_settings,
)
from catalog_ingest.db import create_engine_from_settings, create_session_factory
from catalog_ingest.errors import IngestionError
from catalog_ingest.logging_config import configure_logging
from catalog_ingest.models.domain import IngestOptions, SyncStatus, SyncType
from catalog_ingest.pipeline.ingestion_pipeline import run_ingest
from catalog_ingest.services.maintenance import MaintenanceService
from catalog_ingest.services.schema_guard import SchemaGuard
from catalog_ingest.services.sync_health import SyncHealthTracker

console = Console()
logger = structlog.get_logger(__name__)

STATUS_STYLES = {
    SyncStatus.SUCCEEDED.value: "green",
    SyncStatus.FAILED.value: "red",
    SyncStatus.RUNNING.value: "yellow",
}


def _load_settings() -> ApplicationSettings:
    try:
        return validate_settings()
    except Exception as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)


def _with_engine(
    settings: ApplicationSettings, operation: Callable[[Any, Any], Awaitable[Any]]
) -> Any:
    """Run operation(engine, session_factory) on a fresh engine"""

    async def runner() -> Any:
        engine = create_engine_from_settings(settings.database)
        try:
            return await operation(engine, create_session_factory(engine))
        finally:
            await engine.dispose()

    return asyncio.run(runner())


@click.group()
@click.version_option(version=__version__, prog_name="Catalog Ingest")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--log-format", type=click.Choice(["json", "text"]), default=None)
@click.pass_context
def cli(ctx, verbose, log_format):
    """
    Catalog Ingest CLI

    Ingest supplier XML catalog feeds into the relational catalog store.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    monitoring = get_settings().monitoring
    configure_logging(
        level="DEBUG" if verbose else monitoring.log_level,
        fmt=log_format or monitoring.log_format,
    )


@cli.command()
@click.pass_context
def info(ctx):
    """Show application information and configuration"""
    try:
        info_data = get_environment_info()

        table = Table(title="Configuration Status")
        table.add_column("Component", style="cyan", no_wrap=True)
        table.add_column("Status", style="green")
        table.add_column("Details", style="dim")

        table.add_row("Application", info_data["app_name"], f"v{info_data['app_version']}")
        table.add_row("Environment", info_data["environment"], "")
        table.add_row(
            "Database",
            "✓ Configured" if info_data["database_configured"] else "✗ Not configured",
            info_data["database_backend"] or "",
        )
        table.add_row("Batch size", str(info_data["batch_size"]), "")
        table.add_row("Max retries", str(info_data["max_retries"]), "")
        table.add_row(
            "Run lock", "✓ Enabled" if info_data["lock_enabled"] else "✗ Disabled", ""
        )
        console.print(table)

        if ctx.obj["verbose"]:
            console.print_json(json.dumps(info_data, indent=2))

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("file_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--limit", type=click.IntRange(min=1), help="Only ingest the first N records")
@click.option("--incremental", is_flag=True, help="Record the run as incremental")
@click.option("--purge", is_flag=True, help="Purge catalog rows before importing")
@click.option("--purge-reference-data", is_flag=True, help="Also purge categories, producers and units")
@click.option("--yes", "-y", is_flag=True, help="Confirm the purge without prompting")
@click.option("--batch-size", type=click.IntRange(1, 10000), help="Rows per write statement")
@click.option("--max-retries", type=click.IntRange(0, 10), help="Retries for parse and batches")
def ingest(file_path, limit, incremental, purge, purge_reference_data, yes, batch_size, max_retries):
    """Ingest a catalog feed file"""
    settings = _load_settings()

    confirmed = yes
    if purge and not yes:
        confirmed = click.confirm(
            "This deletes all products, variants, stock, prices and images. Continue?",
            default=False,
        )
        if not confirmed:
            console.print("[yellow]Purge not confirmed, aborting[/yellow]")
            sys.exit(1)

    options = IngestOptions(
        record_limit=limit,
        sync_type=SyncType.INCREMENTAL if incremental else SyncType.FULL,
        purge_before_import=purge,
        purge_confirmed=confirmed,
        purge_reference_data=purge_reference_data,
        batch_size=batch_size,
        max_retries=max_retries,
    )

    console.print(f"[blue]Ingesting {file_path} ({options.sync_type.value})[/blue]")
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Running ingestion...", total=None)
        result = run_ingest(file_path, options, settings)

    table = Table(title=f"Run {result.run_id}")
    table.add_column("Entity", style="cyan")
    table.add_column("Inserted", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Unchanged", justify="right")
    for name, stats in result.load_stats.items():
        table.add_row(name, str(stats.inserted), str(stats.updated), str(stats.unchanged))
    if result.load_stats:
        console.print(table)

    style = STATUS_STYLES[result.status.value]
    console.print(
        f"[{style}]{result.status.value}[/{style}]: {result.records_processed} records, "
        f"{result.error_count} errors, {result.duration_seconds:.2f}s "
        f"(audit #{result.sync_health_id})"
    )
    for error in result.errors[:10]:
        console.print(f"[dim]- {error}[/dim]")

    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--limit", type=click.IntRange(1, 1000), default=None, help="Number of runs")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def history(limit, as_json):
    """Show recent ingestion runs"""
    settings = _load_settings()
    limit = limit or settings.monitoring.recent_runs_limit

    async def operation(engine, session_factory):
        return await SyncHealthTracker(session_factory).recent_runs(limit)

    try:
        runs = _with_engine(settings, operation)
    except Exception as e:
        console.print(f"[red]Error reading audit history: {e}[/red]")
        sys.exit(1)

    if as_json:
        console.print_json(json.dumps([run.model_dump(mode="json") for run in runs]))
        return

    table = Table(title="Recent ingestion runs")
    table.add_column("ID", justify="right")
    table.add_column("Started", style="dim")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Source", style="dim")
    for run in runs:
        style = STATUS_STYLES.get(run.status.value, "white")
        table.add_row(
            str(run.id),
            run.start_time.strftime("%Y-%m-%d %H:%M:%S"),
            run.sync_type.value,
            f"[{style}]{run.status.value}[/{style}]",
            str(run.records_processed),
            str(run.error_count),
            f"{run.duration_seconds:.2f}s" if run.duration_seconds is not None else "-",
            run.source_file,
        )
    console.print(table)


@cli.command()
@click.option("--since", type=click.DateTime(), default=None, help="Window start")
@click.option("--until", type=click.DateTime(), default=None, help="Window end")
def stats(since: Optional[datetime], until: Optional[datetime]):
    """Show catalog table counts and run health statistics"""
    settings = _load_settings()

    async def operation(engine, session_factory):
        counts = await MaintenanceService(engine, session_factory).table_statistics()
        health = await SyncHealthTracker(session_factory).health_stats(since, until)
        return counts, health

    try:
        counts, health = _with_engine(settings, operation)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title="Catalog tables")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)

    health_table = Table(title="Run health")
    health_table.add_column("Metric", style="cyan")
    health_table.add_column("Value", justify="right")
    for name, value in health.model_dump().items():
        health_table.add_row(name.replace("_", " "), "-" if value is None else str(value))
    console.print(health_table)


@cli.command("check-schema")
def check_schema():
    """Verify the destination schema and apply minimal migrations"""
    settings = _load_settings()

    async def operation(engine, session_factory):
        return await SchemaGuard(engine).verify()

    try:
        report = _with_engine(settings, operation)
    except IngestionError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        sys.exit(1)

    for migration in report.migrations_applied:
        console.print(f"[yellow]applied: {migration}[/yellow]")
    for index in report.indexes_created:
        console.print(f"[yellow]created index: {index}[/yellow]")
    console.print("[green]✓ Schema OK[/green]")


@cli.command()
@click.option("--include-reference-data", is_flag=True, help="Also purge categories, producers and units")
@click.option("--yes", "-y", is_flag=True, help="Confirm without prompting")
def purge(include_reference_data, yes):
    """Delete catalog rows (requires confirmation)"""
    settings = _load_settings()
    confirmed = yes or click.confirm(
        "This permanently deletes catalog data. Continue?", default=False
    )
    if not confirmed:
        console.print("[yellow]Purge cancelled[/yellow]")
        sys.exit(1)

    async def operation(engine, session_factory):
        return await MaintenanceService(engine, session_factory).purge(
            confirm=True, include_reference_data=include_reference_data
        )

    try:
        deleted = _with_engine(settings, operation)
    except Exception as e:
        console.print(f"[red]Purge failed: {e}[/red]")
        sys.exit(1)

    for table_name, count in deleted.items():
        console.print(f"[dim]{table_name}: {count} rows deleted[/dim]")
    console.print("[green]✓ Purge completed[/green]")


if __name__ == "__main__":
    cli()
