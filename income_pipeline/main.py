#!/usr/bin/env python3
"""
US Household Income - Cleaning Pipeline Entry Point

Loads raw records, keeps the cleaned snapshot in sync and prints reports.

Usage:
    python -m income_pipeline.main init-db
    python -m income_pipeline.main load-raw data/raw/USHouseholdIncome.csv
    python -m income_pipeline.main load-statistics data/raw/USHouseholdIncome_Statistics.csv
    python -m income_pipeline.main rebuild
    python -m income_pipeline.main status
    python -m income_pipeline.main report top-mean-income
    python -m income_pipeline.main serve --port 8000
"""

import sys
from pathlib import Path
from typing import NoReturn

import click
from loguru import logger
from rich.console import Console
from rich.table import Table
from sqlalchemy import func, inspect, select

from income_pipeline.config import RAW_CSV, RAW_TABLE, STATISTICS_CSV, settings
from income_pipeline.database import (
    Base,
    HouseholdIncome,
    HouseholdIncomeStatistics,
    SessionLocal,
    engine,
    get_session,
)
from income_pipeline.errors import CleaningError
from income_pipeline.ingesters import RecordStore, load_raw_csv, load_statistics_csv, refresh_on_append
from income_pipeline.reporting import REPORTS
from income_pipeline.snapshot import BuildResult, SnapshotBuilder, snapshot_count, snapshot_version

console = Console()


def _services() -> tuple[RecordStore, SnapshotBuilder]:
    """Wire the record store to the snapshot builder."""
    builder = SnapshotBuilder(session_factory=SessionLocal)
    store = RecordStore(session_factory=SessionLocal)
    refresh_on_append(store, builder)
    return store, builder


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _print_build(result: BuildResult) -> None:
    table = Table(title="Snapshot Build")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Build", str(result.build_id))
    table.add_row("Trigger", result.trigger)
    table.add_row("Built at", f"{result.built_at:%Y-%m-%d %H:%M:%S}" if result.built_at else "-")
    table.add_row("Raw records", str(result.raw_count))
    table.add_row("Duplicates removed", str(result.duplicates_removed))
    table.add_row("Rule skips", str(result.rule_skips))
    table.add_row("Records written", str(result.records_written))
    duration = f"{result.duration_seconds:.2f}s" if result.duration_seconds is not None else "-"
    table.add_row("Duration", duration)
    console.print(table)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug):
    """US Household Income Cleaning Pipeline"""
    if debug:
        from income_pipeline.utils.logging import setup_logging
        setup_logging(level="DEBUG")


@cli.command("init-db")
def init_db():
    """Create all tables."""
    Base.metadata.create_all(bind=engine)
    console.print("[green]Tables created[/green]")


@cli.command("load-raw")
@click.argument("csv_path", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--encoding", default="utf-8-sig", show_default=True, help="CSV file encoding")
def load_raw(csv_path: Path, encoding: str):
    """Append a raw household income CSV and refresh the snapshot.

    CSV_PATH defaults to the raw export in DATA_RAW_DIR.
    """
    csv_path = csv_path or settings.pipeline.data_raw_dir / RAW_CSV
    Base.metadata.create_all(bind=engine, tables=[HouseholdIncome.__table__])
    store, _ = _services()
    try:
        result = load_raw_csv(csv_path, store, encoding=encoding)
    except CleaningError as e:
        logger.exception(f"Loading {csv_path} failed")
        _fail(f"Load failed: {e}")

    console.print(f"[green]Appended {result.records_appended} records[/green]")
    for build in result.refresh_results:
        _print_build(build)


@cli.command("load-statistics")
@click.argument("csv_path", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--encoding", default="utf-8-sig", show_default=True, help="CSV file encoding")
def load_statistics(csv_path: Path, encoding: str):
    """Load the income statistics CSV (defaults to the export in DATA_RAW_DIR)."""
    csv_path = csv_path or settings.pipeline.data_raw_dir / STATISTICS_CSV
    Base.metadata.create_all(bind=engine, tables=[HouseholdIncomeStatistics.__table__])
    try:
        count = load_statistics_csv(csv_path, session_factory=SessionLocal, encoding=encoding)
    except CleaningError as e:
        _fail(f"Load failed: {e}")
    console.print(f"[green]Loaded {count} statistics records[/green]")


@cli.command()
@click.option("--row-id", type=int, default=None, help="Row id (next free one if omitted)")
@click.option("--id", "record_id", type=int, required=True, help="Natural key")
@click.option("--state-code", type=int, default=None)
@click.option("--state-name", default=None)
@click.option("--state-ab", default=None)
@click.option("--county", default=None)
@click.option("--city", default=None)
@click.option("--place", default=None)
@click.option("--type", "type_", default=None)
@click.option("--primary", default=None)
@click.option("--zip-code", type=int, default=None)
@click.option("--area-code", type=int, default=None)
@click.option("--aland", type=int, default=None)
@click.option("--awater", type=int, default=None)
@click.option("--lat", type=float, default=None)
@click.option("--lon", type=float, default=None)
def append(row_id, record_id, state_code, state_name, state_ab, county, city, place,
           type_, primary, zip_code, area_code, aland, awater, lat, lon):
    """Append one raw record; the snapshot is refreshed before returning."""
    record = {
        "row_id": row_id,
        "id": record_id,
        "State_Code": state_code,
        "State_Name": state_name,
        "State_ab": state_ab,
        "County": county,
        "City": city,
        "Place": place,
        "Type": type_,
        "Primary": primary,
        "Zip_Code": zip_code,
        "Area_Code": area_code,
        "ALand": aland,
        "AWater": awater,
        "Lat": lat,
        "Lon": lon,
    }
    store, _ = _services()
    try:
        result = store.append(record)
    except CleaningError as e:
        _fail(f"Append failed: {e}")

    console.print(f"[green]Appended row_id {result.row_ids[0]}[/green]")
    for build in result.refresh_results:
        _print_build(build)


@cli.command()
def rebuild():
    """Rebuild the cleaned snapshot now."""
    _, builder = _services()
    try:
        result = builder.rebuild(trigger="manual")
    except CleaningError as e:
        _fail(f"Rebuild failed: {e}")
    _print_build(result)


@cli.command()
def status():
    """Show record counts and the current snapshot version."""
    console.print("\n[bold blue]US Household Income - Pipeline Status[/bold blue]\n")

    with get_session(SessionLocal) as session:
        if not inspect(session.connection()).has_table(RAW_TABLE):
            console.print("[yellow]No tables yet. Run 'init-db' or 'load-raw' first.[/yellow]")
            return

        raw_count = session.scalar(select(func.count()).select_from(HouseholdIncome)) or 0
        snapshot_rows = snapshot_count(session)
        version = snapshot_version(session)

        table = Table()
        table.add_column("Metric")
        table.add_column("Value")
        table.add_row("Raw records", str(raw_count))
        table.add_row("Snapshot records", str(snapshot_rows))
        if version:
            table.add_row("Snapshot build", str(version.id))
            table.add_row("Built at", f"{version.built_at:%Y-%m-%d %H:%M:%S}")
            table.add_row("Trigger", version.trigger)
            table.add_row("Duplicates removed", str(version.duplicates_removed))
        else:
            table.add_row("Snapshot build", "[yellow]never built[/yellow]")
        console.print(table)


@cli.command()
@click.argument("name", type=click.Choice(list(REPORTS.keys())))
@click.option("--top", type=int, default=None, help="Number of rows for top-N reports")
def report(name: str, top: int | None):
    """Print a report over the cleaned snapshot."""
    report_fn = REPORTS[name]
    kwargs = {}
    if top is not None and name in ("water-area", "top-mean-income"):
        kwargs["n"] = top

    with get_session(SessionLocal) as session:
        if snapshot_version(session) is None:
            console.print("[yellow]Snapshot not built yet. Run 'rebuild' first.[/yellow]")
            return
        rows = report_fn(session, **kwargs)

    if not rows:
        console.print("[yellow]No rows[/yellow]")
        return

    table = Table(title=name)
    for column in rows[0].keys():
        table.add_column(column)
    for row in rows:
        table.add_row(*("-" if value is None else str(value) for value in row.values()))
    console.print(table)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to API_HOST)")
@click.option("--port", type=int, default=None, help="Port (defaults to API_PORT)")
def serve(host: str | None, port: int | None):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("api.main:app", host=host or settings.api.host, port=port or settings.api.port)


if __name__ == "__main__":
    cli()
