"""
msp-sync command line interface.

Runs the sync from cron or a shell and reports ledger state.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import async_sessionmaker

from msp_sync.config import settings
from msp_sync.core.errors import ConfigurationError
from msp_sync.core.staleness import StalenessGate
from msp_sync.core.store import SyncStore
from msp_sync.core.sync_engine import RUN_FAILED, RUN_PARTIAL, RUN_SKIPPED, SyncRunResult, open_sync_engine
from msp_sync.core.sync_ledger import ENTITY_TYPES, SyncLedger, parse_entity_types
from msp_sync.database import AsyncSessionLocal, init_db

app = typer.Typer(
    name="msp-sync",
    help="Mirror ConnectWise service data into the local database",
    no_args_is_help=True,
)

console = Console()

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_PARTIAL = 3

_MODE_STYLES = {"skip": "dim", "full": "cyan", "incremental": "green"}


def _session_maker() -> async_sessionmaker:
    return AsyncSessionLocal


def _transport() -> Optional[httpx.AsyncBaseTransport]:
    return None


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """Mirror ConnectWise service data into the local database."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run_sync(force: bool, entities: List[str]) -> SyncRunResult:
    session_maker = _session_maker()
    await init_db(session_maker.kw["bind"])
    async with open_sync_engine(session_maker, transport=_transport()) as engine:
        return await engine.run(force=force, entities=entities)


@app.command()
def run(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Ignore the staleness gate and fetch everything in full",
    ),
    entity: Optional[List[str]] = typer.Option(
        None,
        "--entity",
        "-e",
        help=f"Entity type to sync (repeatable): {', '.join(ENTITY_TYPES)}. Default: all",
    ),
) -> None:
    """
    Run one sync.

    Exit codes: 0 on success or when everything is fresh, 1 when a stage
    failed, 2 when the configuration or an option is invalid, 3 when a
    fetch was truncated and the run is incomplete.

    Examples:
        msp-sync run                      # Respect the staleness gate
        msp-sync run --force              # Full re-fetch of every entity type
        msp-sync run -e members -e boards # Only members and boards
    """
    try:
        entities = parse_entity_types(entity or [])
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--entity")

    try:
        result = asyncio.run(_run_sync(force, entities))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    for stage in result.stages:
        style = _MODE_STYLES.get(stage.mode, "white")
        if stage.mode != "skip" and not stage.synced:
            style = "red"
        elif stage.warnings:
            style = "yellow"
        console.print(f"[{style}]{stage.entity_type:<15} {stage.mode:<12} {stage.message}[/{style}]")

    for warning in result.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")

    if result.status == RUN_FAILED:
        console.print(f"[red]Sync failed: {result.error}[/red]")
        raise typer.Exit(EXIT_STAGE_FAILED)
    if result.status == RUN_PARTIAL:
        console.print(
            f"[yellow]Sync completed with {len(result.warnings)} fetch warning(s); "
            f"incomplete entity types keep their last sync time[/yellow]"
        )
        raise typer.Exit(EXIT_PARTIAL)
    if result.status == RUN_SKIPPED:
        console.print("[dim]Sync skipped: all data is fresh[/dim]")
    else:
        console.print("[green]Sync complete[/green]")


async def _status_rows() -> List[dict]:
    session_maker = _session_maker()
    await init_db(session_maker.kw["bind"])
    now = datetime.utcnow()
    ledger = SyncLedger(SyncStore(session_maker))
    gate = StalenessGate(ledger)
    rows = await ledger.status_report(now)
    for row in rows:
        row["next_mode"] = (await gate.evaluate(row["entity_type"], now)).mode
    return rows


@app.command()
def status() -> None:
    """Show the sync ledger and what the next run would do."""
    rows = asyncio.run(_status_rows())

    table = Table(title="Sync ledger")
    table.add_column("Entity")
    table.add_column("Status")
    table.add_column("Last success")
    table.add_column("Age (h)", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Next run")
    table.add_column("Error")

    for row in rows:
        last_sync_at = row["last_sync_at"]
        status_text = row["status"] or "never"
        status_style = {"success": "green", "failure": "red", "partial": "yellow"}.get(row["status"], "dim")
        table.add_row(
            row["entity_type"],
            f"[{status_style}]{status_text}[/{status_style}]",
            last_sync_at.strftime("%Y-%m-%d %H:%M") if last_sync_at else "-",
            f"{row['age_hours']:.1f}" if row["age_hours"] is not None else "-",
            str(row["record_count"]),
            row["next_mode"],
            row["error_message"] or "",
        )

    console.print(table)


if __name__ == "__main__":
    app()
