"""
Command Line Interface for Iudex.
"""

import json
from pathlib import Path
from typing import Optional

import pydantic
import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from ..analytics import AnalyticsReader
from ..batching import BatchCoordinator
from ..config import get_settings
from ..dashboard import ANALYTICS_TYPES, DashboardService
from ..db.base import create_db_engine, get_session_local, init_database
from ..db.transactions import TransactionalExecutor
from ..errors import IudexError
from ..logging_config import configure_logging
from ..schemas import RunIngestRequest

app = typer.Typer(help="Iudex - test result persistence and analytics")
console = Console()

DatabaseUrlOption = typer.Option(
    None, "--database-url", help="Database URL (defaults to IUDEX_DATABASE_URL)"
)


def _session_factory(database_url: Optional[str]):
    return get_session_local(create_db_engine(database_url))


@app.callback()
def main_callback(
    log_level: str = typer.Option("WARNING", help="Log level for structured logs"),
    log_format: str = typer.Option("console", help="json or console"),
):
    """Configure logging for every command."""
    configure_logging(level=log_level, fmt=log_format)


@app.command("init-db")
def init_db(database_url: Optional[str] = DatabaseUrlOption):
    """Create all tables (use Alembic for managed deployments)."""
    init_database(create_db_engine(database_url))
    console.print("✅ Database initialized")


@app.command()
def ingest(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file with run and outcomes"),
    database_url: Optional[str] = DatabaseUrlOption,
    batch_size: Optional[int] = typer.Option(None, min=1, help="Outcomes per batch"),
    throw_on_error: bool = typer.Option(False, help="Abort on the first failed batch"),
):
    """Persist a run from a JSON file."""
    try:
        request = RunIngestRequest.model_validate_json(file.read_text(encoding="utf-8"))
    except pydantic.ValidationError as e:
        console.print(f"❌ Invalid run file: {e}", markup=False)
        raise typer.Exit(code=1)

    settings = get_settings()
    session_factory = _session_factory(database_url)
    init_database(session_factory.kw["bind"])
    coordinator = BatchCoordinator(
        TransactionalExecutor.from_settings(session_factory, settings),
        batch_size=batch_size or settings.batch_size,
        enable_batching=settings.enable_batching,
    )

    try:
        summary = coordinator.persist_run(
            request.run, request.outcomes, throw_on_error=throw_on_error
        )
    except IudexError as e:
        console.print(f"❌ {e.message}", markup=False)
        raise typer.Exit(code=1)

    table = Table(title=f"Run {summary.run_id}", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Mode", summary.mode)
    table.add_row("Processed", f"{summary.processed_count}/{summary.total_count}")
    table.add_row("Failed batches", str(summary.failed_batches))
    table.add_row("Deleted tests", ", ".join(t.slug for t in summary.deleted_tests) or "-")
    if summary.deletion_error:
        table.add_row("Deletion error", summary.deletion_error)
    console.print(table)

    if not summary.complete:
        raise typer.Exit(code=2)


@app.command()
def runs(
    database_url: Optional[str] = DatabaseUrlOption,
    limit: int = typer.Option(20, min=1, max=100),
    cursor: Optional[str] = typer.Option(None, help="Cursor from a previous page"),
):
    """List recent runs."""
    page = DashboardService(_session_factory(database_url)).list_runs(limit=limit, cursor=cursor)
    if not page["available"]:
        console.print(f"❌ Database unavailable: {page['error']}")
        raise typer.Exit(code=1)

    if not page["runs"]:
        console.print("No runs recorded")
        return

    table = Table(title="Test Runs", show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Suite", style="cyan")
    table.add_column("Environment")
    table.add_column("Status")
    table.add_column("Passed/Total", justify="right")
    table.add_column("Started")
    for run in page["runs"]:
        status_emoji = "🟢" if run["status"] == "passed" else "🔴"
        table.add_row(
            str(run["id"]),
            run["suite_name"] or "-",
            run["environment"],
            f"{status_emoji} {run['status']}",
            f"{run['passed_tests']}/{run['total_tests']}",
            run["started_at"] or "-",
        )
    console.print(table)
    if page["next_cursor"]:
        console.print(f"Next page: --cursor {page['next_cursor']}")


@app.command()
def analytics(
    analytics_type: str = typer.Argument(..., help=", ".join(ANALYTICS_TYPES)),
    database_url: Optional[str] = DatabaseUrlOption,
    limit: Optional[int] = typer.Option(None, min=1, max=100),
    days: Optional[int] = typer.Option(None, min=1, help="Window size in days"),
):
    """Print an analytics view as JSON."""
    service = DashboardService(_session_factory(database_url))
    try:
        payload = service.get_analytics(analytics_type, limit=limit, window_days=days)
    except ValueError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(code=1)

    if not payload["available"]:
        console.print(f"❌ Database unavailable: {payload['error']}")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(payload["data"]))


@app.command()
def search(
    term: str = typer.Argument(..., help="Part of a test name, slug or endpoint"),
    database_url: Optional[str] = DatabaseUrlOption,
    limit: int = typer.Option(20, min=1, max=100),
):
    """Search active tests."""
    try:
        tests = AnalyticsReader(_session_factory(database_url)).search_tests(term, limit=limit)
    except SQLAlchemyError as e:
        console.print(f"❌ Database unavailable: {e}", markup=False)
        raise typer.Exit(code=1)

    if not tests:
        console.print("No matching tests")
        return

    table = Table(title=f"Tests matching '{term}'", show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Slug", style="cyan")
    table.add_column("Name")
    table.add_column("Last status")
    for test in tests:
        table.add_row(str(test["id"]), test["slug"], test["current_name"], test["last_status"] or "-")
    console.print(table)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Start the dashboard and ingestion API."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit(f"Starting Iudex API on http://{host}:{port}", style="bold blue"))
    uvicorn.run("iudex.api:app", host=host, port=port, reload=reload)


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    rprint(Panel.fit(f"Iudex v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
