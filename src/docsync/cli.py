"""Command line interface for DocSync."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from docsync.batch.orchestrator import create_orchestrator
from docsync.batch.store import JobRepository
from docsync.config import AppConfig
from docsync.errors import JobLaunchError
from docsync.index.gateway import ElasticsearchGateway
from docsync.models import JobRun, JobStatus
from docsync.streaming.consumer import create_stream_runner
from docsync.web import app as web_module

console = Console()
app = typer.Typer(help="DocSync - keep a search index in sync with a document store")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _open_store(config: AppConfig) -> JobRepository:
    db_path = config.resolve_state_db_path(Path.cwd())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return JobRepository(db_path)


def _runs_table(runs: list[JobRun]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Read")
    table.add_column("Write")
    table.add_column("Skip")
    table.add_column("Commit")
    table.add_column("Rollback")
    table.add_column("Message")
    for run in runs:
        started = run.started_at.strftime("%Y-%m-%d %H:%M:%S") if run.started_at else "-"
        table.add_row(
            str(run.run_id),
            run.status.value,
            started,
            str(run.counters.read),
            str(run.counters.write),
            str(run.counters.skip),
            str(run.counters.commit),
            str(run.counters.rollback),
            (run.exit_message or "")[:80],
        )
    return table


@app.command()
def backfill(
    base_dir: Path = typer.Option(None, "--base-dir", help="Directory to index", resolve_path=True),
    launch_timestamp: Optional[str] = typer.Option(
        None, "--launch-timestamp", help="Reuse a launch timestamp to resume an interrupted run"
    ),
    chunk_size: Optional[int] = typer.Option(None, help="Files per bulk write"),
    db: Path = typer.Option(None, "--db", help="SQLite state database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index every supported file under the base directory."""
    _setup_logging(verbose)
    config = AppConfig.from_env(target_base_dir=base_dir, chunk_size=chunk_size, state_db_path=db)
    if config.target_base_dir is None:
        console.print("[yellow]No base directory configured, nothing will be indexed.[/yellow]")

    store = _open_store(config)
    gateway = ElasticsearchGateway.from_config(config)
    orchestrator = create_orchestrator(config, gateway, store)
    parameters = {"launchTimestamp": launch_timestamp} if launch_timestamp else None
    try:
        console.print(f"Indexing [bold]{config.target_base_dir}[/bold] into [bold]{config.index_name}[/bold]...")
        run = orchestrator.start_run(parameters, wait=True)
    except JobLaunchError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        orchestrator.shutdown()
        gateway.close()
        store.close()

    console.print(f"Run {run.run_id} finished with status [bold]{run.status.value}[/bold]")
    console.print(_runs_table([run]))
    if run.status is not JobStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def consume(
    base_dir: Path = typer.Option(None, "--base-dir", help="Root that event paths are relative to"),
    concurrency: Optional[int] = typer.Option(None, help="Consumers per topic"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Consume upsert and delete events until interrupted."""
    _setup_logging(verbose)
    config = AppConfig.from_env(target_base_dir=base_dir, consumer_concurrency=concurrency)
    gateway = ElasticsearchGateway.from_config(config)
    runner = create_stream_runner(config, gateway)
    console.print(
        f"Consuming [bold]{config.upsert_topic}[/bold] and [bold]{config.delete_topic}[/bold] "
        f"from {config.kafka_bootstrap_servers}"
    )
    try:
        asyncio.run(runner.run())
    except KeyboardInterrupt:
        console.print("Stopped.")
    finally:
        gateway.close()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    consumers: bool = typer.Option(False, "--consumers", help="Also run the stream consumers"),
    base_dir: Path = typer.Option(None, "--base-dir", help="Directory to index", resolve_path=True),
) -> None:
    """Start the admin API."""
    config = AppConfig.from_env(target_base_dir=base_dir)
    web_module.configure(config, consume=consumers)
    console.print(f"Starting admin API on http://{host}:{port} (consumers: {'on' if consumers else 'off'})")
    uvicorn.run(
        web_module.app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


@app.command()
def runs(
    limit: int = typer.Option(10, help="Number of runs to show"),
    db: Path = typer.Option(None, "--db", help="SQLite state database path"),
) -> None:
    """List recent backfill runs, newest first."""
    config = AppConfig.from_env(state_db_path=db)
    resolved_db = config.resolve_state_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]No run history found.[/yellow]")
        return

    store = JobRepository(resolved_db)
    try:
        recent = store.list_runs(limit)
    finally:
        store.close()
    if not recent:
        console.print("[yellow]No runs recorded yet.[/yellow]")
        return
    console.print(_runs_table(recent))


@app.command()
def status(
    run_id: int = typer.Argument(..., help="Run id"),
    db: Path = typer.Option(None, "--db", help="SQLite state database path"),
) -> None:
    """Show one backfill run."""
    config = AppConfig.from_env(state_db_path=db)
    resolved_db = config.resolve_state_db_path(Path.cwd())
    if not resolved_db.exists():
        raise typer.BadParameter(f"Database not found: {resolved_db}")

    store = JobRepository(resolved_db)
    try:
        run = store.get_run(run_id)
    finally:
        store.close()
    if run is None:
        console.print(f"[red]Run {run_id} not found.[/red]")
        raise typer.Exit(code=1)
    console.print(f"Run {run.run_id}: [bold]{run.status.value}[/bold]")
    console.print(_runs_table([run]))
