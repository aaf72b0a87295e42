#!/usr/bin/env python3
"""
CLI for the compliance retrieval core.

Usage:
    crag load-catalog data/catalog.json
    crag submit california_minimum_wage texas_overtime --priority high
    crag process
    crag search "overtime rules for nurses" --jurisdiction california
    crag jobs --status failed
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Settings
from .embeddings.models import SearchFilters
from .jobs import EntityProcessingError, JobNotFoundError
from .models import EntityType, JobConfig, JobStatus, JobType, Priority
from .service import ImportedEmbedding, RetrievalService, build_service

app = typer.Typer(
    name="crag",
    help="Compliance RAG embedding pipeline and similarity search",
    add_completion=False,
)
console = Console()

_STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "retrying": "magenta",
    "completed": "green",
    "failed": "red",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _service(db_path: Optional[str], **overrides) -> RetrievalService:
    return build_service(Settings.from_env(db_path=db_path, **overrides))


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


# =========================================================================
# Catalog
# =========================================================================


@app.command(name="load-catalog")
def load_catalog(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file with rules and reports"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    submit: bool = typer.Option(
        False, "--submit", help="Queue a generate_new job for everything loaded"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Load compliance rules and reports from JSON.

    The file holds {"rules": [...], "reports": [...]}.

    Example:
        crag load-catalog data/catalog.json --submit
    """
    setup_logging(verbose)
    from .catalog import ComplianceCatalog

    settings = Settings.from_env(db_path=db_path)
    catalog = ComplianceCatalog(settings.db_path)
    rules, reports = catalog.load_json(path)
    console.print(f"[green]Loaded {rules} rules and {reports} reports[/green]")

    if submit and (rules or reports):
        service = build_service(settings)
        job_id = service.submit_embedding_job(JobType.GENERATE_NEW, catalog.list_entity_ids())
        console.print(f"Queued job [bold]{job_id}[/bold]")


# =========================================================================
# Jobs
# =========================================================================


@app.command()
def submit(
    entity_ids: list[str] = typer.Argument(..., help="Rule or report ids"),
    job_type: JobType = typer.Option(JobType.GENERATE_NEW, "--type", "-t", help="Job type"),
    priority: Priority = typer.Option(Priority.MEDIUM, "--priority", "-p", help="Job priority"),
    batch_size: int = typer.Option(50, "--batch-size", "-b", help="Entities per batch"),
    retry_count: int = typer.Option(3, "--retries", help="Job-level retries before failing"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
) -> None:
    """
    Queue an embedding job.

    Examples:
        crag submit california_minimum_wage --priority high
        crag submit report_123 report_456 --type update_existing
    """
    service = _service(db_path)
    config = JobConfig(batch_size=batch_size, retry_count=retry_count, priority=priority)
    job_id = service.submit_embedding_job(job_type, entity_ids, priority=priority, config=config)
    console.print(f"Queued {job_type.value} job [bold]{job_id}[/bold] for {len(entity_ids)} entities")


@app.command()
def process(
    max_jobs: Optional[int] = typer.Option(None, "--max-jobs", "-n", help="Jobs to claim"),
    no_pacing: bool = typer.Option(False, "--no-pacing", help="Skip delays between items"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Run one processing pass over pending jobs.

    Example:
        crag process --max-jobs 2
    """
    setup_logging(verbose)
    overrides = {"item_delay_seconds": 0.0, "batch_delay_seconds": 0.0} if no_pacing else {}
    service = _service(db_path, **overrides)

    summary = asyncio.run(service.run_scheduled_processing(max_jobs))

    table = Table(title="Processing Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Jobs claimed", str(summary.jobs_claimed))
    table.add_row("Completed", f"[green]{summary.jobs_completed}[/green]")
    table.add_row("Retrying", f"[magenta]{summary.jobs_retrying}[/magenta]")
    table.add_row("Failed", f"[red]{summary.jobs_failed}[/red]")
    table.add_row("Entities embedded", f"{summary.entities_completed:,}")
    table.add_row("Entities failed", f"{summary.entities_failed:,}")
    table.add_row("Elapsed", f"{summary.elapsed_seconds:.1f}s")
    console.print(table)


@app.command(name="jobs")
def list_jobs(
    status: Optional[JobStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum jobs to show"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
) -> None:
    """
    List embedding jobs, newest first.

    Example:
        crag jobs --status failed
    """
    service = _service(db_path)
    jobs = service.jobs.list_jobs(status=status, limit=limit)

    if not jobs:
        console.print("No jobs found")
        return

    table = Table(show_header=True)
    table.add_column("Job ID", style="cyan")
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Scheduled")

    for job in jobs:
        style = _STATUS_STYLES.get(job.status.value, "white")
        p = job.progress
        table.add_row(
            job.job_id,
            job.job_type.value,
            job.config.priority.value,
            f"[{style}]{job.status.value}[/{style}]",
            f"{p.completed}+{p.failed}/{p.total}",
            _fmt_time(job.scheduled_at),
        )

    console.print(table)


@app.command(name="job")
def job_status(
    job_id: str = typer.Argument(..., help="Job id"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
) -> None:
    """
    Show status, progress and errors for one job.
    """
    service = _service(db_path)
    try:
        job = service.get_job(job_id)
    except JobNotFoundError:
        console.print(f"[red]Job not found:[/red] {job_id}")
        raise typer.Exit(1)

    style = _STATUS_STYLES.get(job.status.value, "white")
    console.print(f"\n[bold]{job.job_id}[/bold]")
    console.print(f"  Type:       {job.job_type.value}")
    console.print(f"  Status:     [{style}]{job.status.value}[/{style}]")
    console.print(f"  Priority:   {job.config.priority.value}")
    console.print(f"  Attempts:   {job.attempts}/{job.config.retry_count}")
    console.print(
        f"  Progress:   {job.progress.completed} completed, {job.progress.failed} failed "
        f"of {job.progress.total} ({job.progress.progress_pct:.1f}%)"
    )
    console.print(f"  Scheduled:  {_fmt_time(job.scheduled_at)}")
    console.print(f"  Started:    {_fmt_time(job.started_at)}")
    console.print(f"  Completed:  {_fmt_time(job.completed_at)}")

    if job.progress.errors:
        console.print(f"\n[bold red]Errors ({len(job.progress.errors)}):[/bold red]")
        for error in job.progress.errors[-20:]:
            console.print(f"  - {error}")


@app.command()
def reap(
    days: Optional[int] = typer.Option(None, "--days", help="Retention window in days"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
) -> None:
    """
    Delete completed and failed jobs older than the retention window.
    """
    service = _service(db_path, job_retention_days=days)
    deleted = service.reap_jobs()
    console.print(f"Deleted {deleted} old jobs")


@app.command(name="schedule-updates")
def schedule_updates(
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
) -> None:
    """
    Queue re-embedding for fallback vectors and changed catalog content.
    """
    service = _service(db_path)
    job_id = service.schedule_embedding_updates()
    if job_id:
        console.print(f"Queued update job [bold]{job_id}[/bold]")
    else:
        console.print("Nothing needs re-embedding")


# =========================================================================
# Embeddings
# =========================================================================


@app.command()
def embed(
    entity_id: str = typer.Argument(..., help="Rule or report id"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Embed one entity immediately, bypassing the job queue.
    """
    setup_logging(verbose)
    service = _service(db_path)
    try:
        record_ids = asyncio.run(service.embed_entity(entity_id))
    except EntityProcessingError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(
        f"Stored {len(record_ids)} chunk(s) for {entity_id} using {service.generator.model_name}"
    )


@app.command(name="import-embeddings")
def import_embeddings(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list or JSONL file"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Import externally generated embeddings.

    Each item has entity_id, entity_type, content and vector; optionally
    embedding_model, jurisdiction and topic_key.
    """
    setup_logging(verbose)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        raw = [json.loads(line) for line in text.splitlines() if line.strip()]
    else:
        raw = json.loads(text)

    items = []
    invalid = 0
    for entry in raw:
        try:
            items.append(ImportedEmbedding.model_validate(entry))
        except ValueError as e:
            invalid += 1
            logging.getLogger(__name__).warning(f"Invalid import entry: {e}")

    service = _service(db_path)
    stats = service.import_embeddings(items)
    console.print(
        f"Imported {stats.imported}, updated {stats.updated}, "
        f"failed {stats.failed + invalid}"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Question to retrieve sources for"),
    k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Maximum sources"),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Minimum similarity"),
    entity_type: Optional[EntityType] = typer.Option(None, "--type", help="rule or report"),
    jurisdiction: Optional[str] = typer.Option(None, "--jurisdiction", "-j", help="Jurisdiction filter"),
    topic: Optional[str] = typer.Option(None, "--topic", help="Topic key filter"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Retrieve the top-K sources for a question.

    Examples:
        crag search "minimum wage for tipped workers"
        crag search "harassment training" -j california --type report
    """
    setup_logging(verbose)
    service = _service(db_path)
    filters = SearchFilters(entity_type=entity_type, jurisdiction=jurisdiction, topic_key=topic)

    result = asyncio.run(service.search_top_k(query, k=k, threshold=threshold, filters=filters))

    if not result.sources:
        console.print("No sources found")
        return

    if result.degraded:
        console.print("[yellow]No source cleared the threshold; showing best low-confidence matches[/yellow]")

    table = Table(show_header=True)
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Entity", style="cyan")
    table.add_column("Jurisdiction")
    table.add_column("Topic")
    table.add_column("Snippet", max_width=60)

    for i, source in enumerate(result.sources, 1):
        table.add_row(
            str(i),
            f"{source.similarity:.3f}",
            f"{source.entity_type.value}:{source.entity_id}",
            source.jurisdiction or "-",
            source.topic_label or "-",
            source.snippet[:120].replace("\n", " "),
        )

    console.print(table)
    console.print(
        f"\n{result.total_candidates} candidates scanned in {result.search_time_ms:.0f}ms"
    )


@app.command()
def stats(
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
) -> None:
    """
    Show job and embedding statistics.
    """
    service = _service(db_path)
    raw = service.get_stats()
    emb = raw["embeddings"]

    console.print("\n[bold blue]Embedding Status[/bold blue]")
    console.print(f"  Model:              {raw['embedding_model']} ({raw['dimensions']} dims)")
    console.print(f"  Records:            {emb['total_records']:,}")
    console.print(f"  Entities:           {emb['total_entities']:,}")
    for entity_type, count in sorted(emb["by_type"].items()):
        console.print(f"    {entity_type + ':':<18}{count:,}")

    if emb["by_model"]:
        table = Table(title="Records by Model", show_header=True, box=None)
        table.add_column("Model", style="cyan")
        table.add_column("Records", justify="right")
        for model, count in sorted(emb["by_model"].items()):
            table.add_row(model, f"{count:,}")
        console.print(table)

    console.print("\n[bold blue]Jobs[/bold blue]")
    for status, count in raw["jobs"].items():
        style = _STATUS_STYLES.get(status, "white")
        console.print(f"  [{style}]{status:<12}[/{style}] {count:,}")

    if "catalog" in raw:
        console.print("\n[bold blue]Catalog[/bold blue]")
        console.print(f"  Rules:    {raw['catalog']['rules']:,}")
        console.print(f"  Reports:  {raw['catalog']['reports']:,}")


# =========================================================================
# Long-running processes
# =========================================================================


@app.command(name="run-scheduler")
def run_scheduler(
    process_interval: int = typer.Option(300, "--process-every", help="Seconds between processing passes"),
    update_interval: int = typer.Option(86400, "--update-every", help="Seconds between update scheduling"),
    reap_interval: int = typer.Option(604800, "--reap-every", help="Seconds between job reaping"),
    logfile: Optional[Path] = typer.Option(None, "--log-file", help="Also log to this file"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Run processing, update scheduling and reaping on a timer until Ctrl+C.
    """
    from .scheduler import ScheduledRunner

    setup_logging(verbose)
    runner = ScheduledRunner(
        _service(db_path),
        process_interval=process_interval,
        update_interval=update_interval,
        reap_interval=reap_interval,
        logfile=logfile,
    )
    console.print("[bold green]Scheduler running[/bold green] (Ctrl+C to stop)")
    asyncio.run(runner.run())


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", "-H", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    db_path: str = typer.Option("data/crag.db", "--db", help="Path to SQLite database"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development"),
    workers: int = typer.Option(1, "--workers", "-w", help="Number of worker processes"),
    cors_origins: str = typer.Option("*", "--cors", help="Comma-separated CORS origins"),
    api_rate_limit: int = typer.Option(
        100, "--rate-limit", help="Max requests per minute per IP (0 to disable)"
    ),
) -> None:
    """
    Start the retrieval API server.

    Examples:
        crag serve                     # Start on localhost:8000
        crag serve --reload            # Auto-reload for dev
        crag serve --workers 4         # Production mode
    """
    import os
    import uvicorn

    console.print("\n[bold green]Starting Compliance Retrieval API[/bold green]")
    console.print(f"  Database:   {db_path}")
    console.print(f"  Endpoint:   http://{host}:{port}")
    console.print(f"  API docs:   http://{host}:{port}/docs")
    if api_rate_limit > 0:
        console.print(f"  Rate limit: {api_rate_limit} req/min per IP")
    else:
        console.print("  Rate limit: [yellow]disabled[/yellow]")
    console.print()

    # Pass config via environment so uvicorn workers can pick it up
    os.environ["CRAG_DB_PATH"] = db_path
    os.environ["CRAG_CORS_ORIGINS"] = cors_origins
    os.environ["CRAG_RATE_LIMIT_RPM"] = str(api_rate_limit)

    uvicorn.run(
        "crag.api.app:app",
        host=host,
        port=port,
        reload=reload,
        workers=1 if reload else workers,
        log_level="info",
    )


if __name__ == "__main__":
    app()
