"""CLI commands for templatepipe using Typer and Rich.

Implements 4 CLI commands:
- run: Create a template job from a pipeline file or preset and run it
- status: Show detailed job information, optionally until it finishes
- list: List all template jobs in a table
- presets: List saved pipeline presets
"""

import asyncio
import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select

from templatepipe import validate_dependencies
from templatepipe.config import settings
from templatepipe.db import init_database, async_session
from templatepipe.db.models import TemplateJob, TemplatePreset
from templatepipe.errors import PipelineValidationError
from templatepipe.orchestrator.runner import run_template_job
from templatepipe.orchestrator.state import TERMINAL_STATES, poll_interval
from templatepipe.pipeline.resolver import validate_pipeline

app = typer.Typer(name="templatepipe", help="Configurable step pipelines for short-form video")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_pipeline_file(path: Path) -> list:
    """Read a step list from JSON; accepts a bare list or {"pipeline": [...]}."""
    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = data.get("pipeline")
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a pipeline step list")
    return data


def _stage_local_video(video_url: str) -> str:
    """Copy a local video into the upload directory and return its file:// URI.

    Jobs only read local sources from ``storage.upload_dir``. URLs and paths
    that are not existing files are returned unchanged.
    """
    path = Path(video_url)
    if "://" in video_url or not path.is_file():
        return video_url
    upload_dir = settings.storage.upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    staged = upload_dir / f"{uuid.uuid4().hex}{path.suffix.lower() or '.mp4'}"
    shutil.copyfile(path, staged)
    return staged.resolve().as_uri()


@app.command()
def run(
    pipeline_file: Optional[Path] = typer.Argument(
        None, exists=True, dir_okay=False, help="JSON file with the pipeline steps"
    ),
    name: str = typer.Option("CLI template", "--name", "-n", help="Job name"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset UUID to run instead of a file"),
    tiktok_url: Optional[str] = typer.Option(None, "--tiktok-url", help="TikTok video to process"),
    video_url: Optional[str] = typer.Option(None, "--video-url", help="Video URL, or local path copied into the upload directory"),
):
    """Create a template job and run it in this process.

    The pipeline comes from PIPELINE_FILE or from a saved preset.
    """
    if (pipeline_file is None) == (preset is None):
        console.print("[red]Error:[/red] Pass either a pipeline file or --preset")
        raise typer.Exit(code=1)

    # Fail-fast dependency validation
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    pipeline = None
    if pipeline_file is not None:
        try:
            pipeline = _load_pipeline_file(pipeline_file)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

    if video_url:
        video_url = _stage_local_video(video_url)

    asyncio.run(_run_async(name, pipeline, preset, tiktok_url, video_url))


async def _run_async(
    name: str,
    pipeline: Optional[list],
    preset_id: Optional[str],
    tiktok_url: Optional[str],
    video_url: Optional[str],
):
    """Async implementation of run command."""
    # Initialize database
    await init_database()

    async with async_session() as session:
        if pipeline is None:
            preset = await session.get(TemplatePreset, _parse_uuid(preset_id, "preset"))
            if not preset:
                console.print(f"[red]Error:[/red] Preset not found: {preset_id}")
                raise typer.Exit(code=1)
            pipeline = preset.pipeline

        try:
            steps = validate_pipeline(pipeline, tiktok_url, video_url)
        except PipelineValidationError as e:
            console.print(f"[red]Invalid pipeline:[/red] {str(e)}")
            raise typer.Exit(code=1)

        job = TemplateJob(
            name=name,
            status="queued",
            step="Queued",
            total_steps=len(steps),
            pipeline=pipeline,
            video_source="upload" if video_url else "tiktok",
            tiktok_url=tiktok_url,
            video_url=video_url,
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)

        console.print(f"[green]Created job:[/green] {job.id} ({len(steps)} steps)")
        console.print()

        try:
            with console.status("[bold green]Starting pipeline...") as status:
                # Wrapper to update rich status from callback
                def callback_wrapper(msg: str):
                    status.update(f"[bold green]{msg}")

                await run_template_job(session, job.id, progress_callback=callback_wrapper)

            console.print(f"[green]✓[/green] Template job complete!")
            console.print(f"[green]Output:[/green] {job.output_url}")

        except KeyboardInterrupt:
            console.print()
            console.print("[yellow]Job interrupted. Runs are not resumable; submit it again to retry.[/yellow]")
            raise typer.Exit(code=130)

        except Exception:
            console.print()
            console.print(f"[red]✗ Template job failed:[/red] {job.error}")
            raise typer.Exit(code=1)


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Template job UUID"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Refresh until the job finishes"),
):
    """Show detailed template job status and information."""
    asyncio.run(_status_async(job_id, watch))


async def _status_async(job_id_str: str, watch: bool):
    """Async implementation of status command."""
    job_uuid = _parse_uuid(job_id_str, "job")

    # Initialize database
    await init_database()

    while True:
        async with async_session() as session:
            job = await session.get(TemplateJob, job_uuid)

        if not job:
            console.print(f"[red]Error:[/red] Template job not found: {job_uuid}")
            raise typer.Exit(code=1)

        console.print(_job_panel(job))
        if not watch or job.status in TERMINAL_STATES:
            return
        await asyncio.sleep(poll_interval([job.status]))


def _job_panel(job: TemplateJob) -> Panel:
    """Build the Rich panel shown by the status command."""
    status_color = _get_status_color(job.status)
    info_lines = [
        f"[bold]ID:[/bold] {job.id}",
        f"[bold]Name:[/bold] {job.name}",
        f"[bold]Status:[/bold] [{status_color}]{job.status}[/{status_color}]",
        f"[bold]Step:[/bold] {job.step}",
        f"[bold]Progress:[/bold] {_progress_display(job)}",
        f"[bold]Source:[/bold] {job.video_url or job.tiktok_url or 'generated'}",
        f"[bold]Created:[/bold] {job.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]

    if job.started_at and job.completed_at:
        duration = (job.completed_at - job.started_at).total_seconds()
        info_lines.append(f"[bold]Run Duration:[/bold] {duration:.1f}s")

    # Add output URL if complete
    if job.status == "completed" and job.output_url:
        info_lines.append(f"[bold]Output:[/bold] [green]{job.output_url}[/green]")

    # Add error message if failed
    if job.status == "failed" and job.error:
        info_lines.append(f"[bold]Error:[/bold] [red]{job.error}[/red]")

    return Panel(
        "\n".join(info_lines),
        title="[bold]Template Job Status[/bold]",
        border_style="blue",
    )


@app.command(name="list")
def list_jobs():
    """List all template jobs."""
    asyncio.run(_list_async())


async def _list_async():
    """Async implementation of list command."""
    # Initialize database
    await init_database()

    async with async_session() as session:
        result = await session.execute(
            select(TemplateJob).order_by(TemplateJob.created_at.desc())
        )
        jobs = result.scalars().all()

    if not jobs:
        console.print("[yellow]No template jobs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Created")

    for job in jobs:
        name_display = job.name if len(job.name) <= 40 else job.name[:37] + "..."
        status_color = _get_status_color(job.status)
        table.add_row(
            str(job.id)[:8] + "...",
            name_display,
            f"[{status_color}]{job.status}[/{status_color}]",
            _progress_display(job),
            job.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def presets():
    """List saved pipeline presets."""
    asyncio.run(_presets_async())


async def _presets_async():
    """Async implementation of presets command."""
    await init_database()

    async with async_session() as session:
        result = await session.execute(
            select(TemplatePreset).order_by(TemplatePreset.updated_at.desc())
        )
        rows = result.scalars().all()

    if not rows:
        console.print("[yellow]No presets found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Steps")
    table.add_column("Description")

    for preset in rows:
        step_types = [s.get("type", "?") for s in preset.pipeline if isinstance(s, dict)]
        table.add_row(
            str(preset.id),
            preset.name,
            ", ".join(step_types),
            preset.description or "",
        )

    console.print(table)


def _parse_uuid(value: str, kind: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid {kind} UUID: {value}")
        raise typer.Exit(code=1)


def _progress_display(job: TemplateJob) -> str:
    if job.total_steps == 0:
        return "-"
    if job.status == "completed":
        return f"{job.total_steps}/{job.total_steps}"
    return f"{job.current_step + 1}/{job.total_steps}"


def _get_status_color(status: str) -> str:
    """Get Rich color for a job status.

    Color coding:
    - completed: green
    - failed: red
    - processing: yellow
    - queued: dim
    """
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status == "processing":
        return "yellow"
    return "dim"


if __name__ == "__main__":
    app()
