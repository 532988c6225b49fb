"""
CLI Interface
=============
Command-line interface for the OCR job pipeline.

Usage:
    python -m ocr_pipeline submit <zip_path> [--wait]
    python -m ocr_pipeline run <job_id> [--wait]
    python -m ocr_pipeline retry <job_id>
    python -m ocr_pipeline retry-from <job_id> <step>
    python -m ocr_pipeline status <job_id>
    python -m ocr_pipeline jobs [--status failed]
    python -m ocr_pipeline child <job_id>
    python -m ocr_pipeline serve [--port 5000]
"""

from __future__ import annotations

import sys
import time
import uuid
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__
from . import database as db
from . import storage
from .config import PipelineConfig, setup_logging
from .errors import PipelineError
from .models import Job, JobStatus, StepOutcome
from .state_machine import PipelineStateMachine
from .steps import JobStep, StepSchema

console = Console()

STEP_CHOICES = [s.value for s in JobStep] + [s.name.lower() for s in JobStep]


@click.group()
@click.version_option(version=__version__, prog_name="ocr-pipeline")
@click.option("--db", "db_path", default=None, help="SQLite database path")
@click.option("--storage-root", default=None, help="Object store directory")
@click.option("--base-dir", default=None, help="Working directory for job scratch files")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.pass_context
def cli(ctx, db_path, storage_root, base_dir, log_level, log_file):
    """OCR Pipeline — page-scan archives to text and Word documents."""
    config = PipelineConfig.from_env(
        db_path=db_path,
        storage_root=storage_root,
        base_dir=base_dir,
        log_level=log_level,
        log_file=log_file,
    )
    setup_logging(config.log_level, config.log_file)
    ctx.obj = config


def _machine(config: PipelineConfig) -> PipelineStateMachine:
    db.init_db(config.db_path)
    return PipelineStateMachine(config)


def _fail(e: Exception):
    console.print(f"[red]Error:[/] {e}")
    sys.exit(1)


# ─── Job Commands ─────────────────────────────────────────────────────────────


@cli.command()
@click.argument("zip_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--legacy",
    is_flag=True,
    default=False,
    help="Use the four-step schema (no canonical raw zip)",
)
@click.option("--wait/--no-wait", default=True, help="Drive the job until it finishes")
@click.pass_obj
def submit(config: PipelineConfig, zip_path: str, legacy: bool, wait: bool):
    """Upload a ZIP of page images and start an OCR job."""
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]OCR Pipeline v{__version__}[/]\n"
            f"[dim]Submitting: {Path(zip_path).name}[/]",
            border_style="cyan",
        )
    )
    console.print()

    try:
        machine = _machine(config)
        job_id = str(uuid.uuid4())
        zip_key = storage.input_zip_key(job_id)
        machine.store.put(zip_key, Path(zip_path).read_bytes(), "application/zip")
        schema = StepSchema.LEGACY_FOUR_STEP if legacy else StepSchema.FIVE_STEP
        job = machine.create_job(zip_key, step_schema=schema, job_id=job_id)
        console.print(f"Created job [bold]{job.id}[/]")
        if wait:
            _drive(machine, job.id, machine.advance)
        _display_job(machine.load_job(job.id))
    except PipelineError as e:
        _fail(e)


@cli.command()
@click.argument("job_id")
@click.option("--wait/--no-wait", default=False, help="Keep ticking while the batch runs")
@click.pass_obj
def run(config: PipelineConfig, job_id: str, wait: bool):
    """Advance a job from its current step."""
    try:
        machine = _machine(config)
        if wait:
            _drive(machine, job_id, machine.advance)
        else:
            outcome = machine.advance(job_id)
            console.print(f"Outcome: [bold]{outcome.value}[/]")
        _display_job(machine.load_job(job_id))
    except PipelineError as e:
        _fail(e)


@cli.command()
@click.argument("job_id")
@click.option("--wait/--no-wait", default=True, help="Keep ticking while the batch runs")
@click.pass_obj
def retry(config: PipelineConfig, job_id: str, wait: bool):
    """Retry a job from its current step."""
    try:
        machine = _machine(config)
        outcome = machine.retry_job(job_id)
        if outcome == StepOutcome.SKIPPED:
            console.print("[green]Job already completed — nothing to do[/]")
        elif outcome == StepOutcome.WAITING and wait:
            _drive(machine, job_id, machine.advance)
        _display_job(machine.load_job(job_id))
    except PipelineError as e:
        _fail(e)


@cli.command("retry-from")
@click.argument("job_id")
@click.argument("step", type=click.Choice(STEP_CHOICES, case_sensitive=False))
@click.option("--wait/--no-wait", default=True, help="Keep ticking while the batch runs")
@click.pass_obj
def retry_from(config: PipelineConfig, job_id: str, step: str, wait: bool):
    """Rewind a job to STEP, discard later outputs, and re-run."""
    try:
        machine = _machine(config)
        target = JobStep.from_stored(step)
        outcome = machine.retry_from_step(job_id, target)
        if outcome == StepOutcome.WAITING and wait:
            _drive(machine, job_id, machine.advance)
        _display_job(machine.load_job(job_id))
    except PipelineError as e:
        _fail(e)


@cli.command()
@click.argument("job_id")
@click.pass_obj
def child(config: PipelineConfig, job_id: str):
    """Create a subtitle-removal child job from a completed job."""
    try:
        job = _machine(config).create_child_job(job_id)
        _display_job(job)
    except PipelineError as e:
        _fail(e)


# ─── Inspection ───────────────────────────────────────────────────────────────


@cli.command()
@click.argument("job_id")
@click.pass_obj
def status(config: PipelineConfig, job_id: str):
    """Show a job's step, status and artifacts."""
    try:
        _display_job(_machine(config).load_job(job_id))
    except PipelineError as e:
        _fail(e)


@cli.command()
@click.option(
    "--status", "status_filter",
    default=None,
    type=click.Choice([s.value for s in JobStatus]),
    help="Only jobs with this status",
)
@click.option("--limit", default=50, type=int, help="Maximum rows")
@click.pass_obj
def jobs(config: PipelineConfig, status_filter: str, limit: int):
    """List jobs, newest first."""
    db.init_db(config.db_path)
    rows = db.list_jobs(status=status_filter, limit=limit, db_path=config.db_path)

    table = Table(title="Jobs", border_style="cyan")
    table.add_column("Job", style="bold")
    table.add_column("Type")
    table.add_column("Step")
    table.add_column("Status", justify="center")
    table.add_column("Images", justify="right")
    table.add_column("Created")
    for row in rows:
        job = Job.from_row(row)
        table.add_row(
            job.id,
            job.job_type.value,
            job.current_step.value,
            _status_text(job.status),
            f"{job.processed_images}/{job.total_images}",
            job.created_at or "",
        )
    console.print(table)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
@click.pass_obj
def serve(config: PipelineConfig, host: str, port: int, debug: bool):
    """Start the HTTP microservice server."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]OCR Pipeline Microservice[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug, config=config)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _drive(machine: PipelineStateMachine, job_id: str, tick) -> StepOutcome:
    """Tick a job until it stops waiting, showing a spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Processing...", total=None)
        outcome = tick(job_id)
        while outcome == StepOutcome.WAITING:
            job = machine.load_job(job_id)
            progress.update(
                task,
                description=(
                    f"Waiting on batch {job.batch.batch_id or ''} "
                    f"({job.batch.last_known_status or 'submitted'}, "
                    f"{job.processed_images}/{job.total_images} recognized)"
                ),
            )
            time.sleep(machine.config.poll_interval_seconds)
            outcome = machine.advance(job_id)
    return outcome


def _status_text(status: JobStatus) -> str:
    colour = {
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.RUNNING: "yellow",
    }.get(status, "white")
    return f"[{colour}]{status.value}[/]"


def _display_job(job: Job):
    """Display a job record as a table."""
    console.print()
    table = Table(title=f"Job {job.id}", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Type", job.job_type.value)
    table.add_row("Schema", job.step_schema.value)
    table.add_row("Current Step", job.current_step.value)
    table.add_row("Status", _status_text(job.status))
    table.add_row("Images", f"{job.processed_images}/{job.total_images} "
                            f"({job.progress_percentage}%)")
    if job.parent_job_id:
        table.add_row("Parent", job.parent_job_id)
    if job.batch.batch_id:
        table.add_row("Batch", f"{job.batch.batch_id} ({job.batch.last_known_status})")
    for name, value in job.artifacts.model_dump().items():
        if value is not None:
            table.add_row(name, str(value))
    if job.failed_step:
        table.add_row("Failed Step", f"[red]{job.failed_step.value}[/]")
    if job.last_error:
        table.add_row("Last Error", f"[red]{job.last_error[:500]}[/]")
    console.print(table)
    console.print()
