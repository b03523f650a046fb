"""
CLI interface for the Regrets Reporter.

Provides command-line access to consent, replay and export.
"""

import asyncio
import functools
import json
import logging
import sys
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from regrets_reporter.config.loader import ReporterConfig, StorageConfig, default_config, load_config
from regrets_reporter.glue.extension_glue import (
    CONSENT_FORM_CHANNEL,
    ExtensionState,
    build_extension,
)
from regrets_reporter.sharing.export import write_export_file
from regrets_reporter.storage.local_storage import SqliteLocalStorage
from regrets_reporter.storage.repository import SharedDataRepository, initialize_schema
from regrets_reporter.storage.store import Store

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class ConsentChoice(str, Enum):
    GIVEN = "given"
    WITHDRAWN = "withdrawn"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _config(ctx: typer.Context) -> ReporterConfig:
    return ctx.obj["config"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the database path from the configuration"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log pipeline activity"
    ),
):
    """YouTube Regrets Reporter CLI."""
    _configure_logging(verbose)
    try:
        config = load_config(config_path) if config_path else default_config()
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if db_path:
        config = replace(config, storage=StorageConfig(db_path=db_path))
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Regrets Reporter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the local database."""
    try:
        initialize_schema(_config(ctx).storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show consent status and shared data counts."""
    db_path = _config(ctx).storage.db_path

    async def _read(store: Store):
        return (
            await store.get_consent_status(),
            await store.get_consent_status_timestamp(),
            await store.extension_installation_uuid(),
        )

    try:
        consent_status, timestamp, installation_uuid = asyncio.run(
            _read(Store(SqliteLocalStorage(db_path)))
        )
        counts = SharedDataRepository(db_path).count_by_status()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Regrets Reporter Status")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Consent status", consent_status.value)
    table.add_row("Consent updated", timestamp or "-")
    table.add_row("Installation UUID", installation_uuid)
    table.add_row("Shared data points", f"{counts['total']:,}")
    table.add_row("Pending transmission", f"{counts['pending']:,}")
    table.add_row("Transmitted", f"{counts['transmitted']:,}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def consent(ctx: typer.Context, choice: ConsentChoice = typer.Argument(..., help="given or withdrawn")):
    """Record a data sharing consent decision."""

    async def _update():
        glue = build_extension(_config(ctx))
        try:
            await glue.init()
            return await glue.router.dispatch(CONSENT_FORM_CHANNEL, {"updatedConsentStatus": choice.value})
        finally:
            await glue.cleanup()

    try:
        reply = asyncio.run(_update())
    except Exception as e:
        console.print(f"[red]Error updating consent:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if reply and reply.get("errorMessage"):
        console.print(f"[red]Error updating consent:[/] {reply['errorMessage']}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Consent status set to {choice.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def replay(
    ctx: typer.Context,
    events_file: Path = typer.Argument(..., help="JSON Lines file of raw instrumentation events"),
    navigation_uuid: Optional[str] = typer.Option(
        None,
        "--navigation",
        "-n",
        help="Navigation to report (defaults to the most recent watch page)"
    ),
):
    """
    Replay recorded events through the pipeline and show regret report data.

    Requires consent to have been given, since the pipeline only runs
    while the user is enrolled.
    """
    if not events_file.exists():
        console.print(f"[red]Error:[/] events file not found: {events_file}")
        sys.exit(EXIT_CODE_FAIL)

    async def _replay():
        glue = build_extension(_config(ctx))
        try:
            await glue.init()
            if glue.state is not ExtensionState.ACTIVE:
                return None, 0, 0
            queued = skipped = 0
            with open(events_file, 'r', encoding='utf-8') as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        skipped += 1
                        continue
                    if glue.enqueue_raw_event(record):
                        queued += 1
                    else:
                        skipped += 1
            return await glue.regret_report_data(navigation_uuid), queued, skipped
        finally:
            await glue.cleanup()

    try:
        report_data, queued, skipped = asyncio.run(_replay())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if report_data is None:
        console.print("\n[bold yellow]Consent has not been given[/]")
        console.print("\nRun `regrets-reporter consent given` to enroll first.\n")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\nQueued {queued:,} events, skipped {skipped:,}")
    _display_report_data(report_data)
    sys.exit(EXIT_CODE_PASS)


def _display_report_data(report_data):
    """Display regret report navigations, reported navigation first."""
    if not report_data.navigations:
        console.print("\n[dim]No watch page navigations to report.[/]")
        return

    table = Table(title="Regret Report Data")
    table.add_column("#")
    table.add_column("Navigation")
    table.add_column("Video")
    table.add_column("Title")
    table.add_column("Channel")
    table.add_column("Via")
    for index, navigation in enumerate(report_data.navigations):
        table.add_row(
            "reported" if index == 0 else str(index),
            navigation.navigation_uuid,
            navigation.video_id,
            navigation.video_metadata.title,
            navigation.video_metadata.channel_name,
            navigation.via.value,
        )
    console.print(table)


@app.command()
def export(
    ctx: typer.Context,
    output_dir: Path = typer.Option(
        Path("."),
        "--output-dir",
        "-o",
        help="Directory to write the export file to"
    ),
):
    """Export the full history of shared data to a JSON file."""

    async def _export():
        glue = build_extension(
            _config(ctx),
            download=functools.partial(write_export_file, output_dir=str(output_dir)),
        )
        try:
            return await glue.export_shared_data()
        finally:
            await glue.data_sharer.close()

    try:
        path = asyncio.run(_export())
    except Exception as e:
        console.print(f"[red]Error exporting shared data:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Shared data exported to {path}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
