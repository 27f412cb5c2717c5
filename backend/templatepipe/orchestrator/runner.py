"""Pipeline runner: executes a template job's enabled steps in order.

Coordinates one run of a job with:
- Revalidation of the pipeline snapshot stored on the job
- A per-run working directory, removed on every exit path
- Lazy staging of the source video (yt-dlp for TikTok, httpx otherwise)
- Media operations in worker threads, generation through the provider
- Step-granular progress and failure persisted through the state machine
- Progress callback interface for CLI/API integration
"""

import asyncio
import logging
import mimetypes
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from templatepipe.config import settings
from templatepipe.db.models import TemplateJob
from templatepipe.errors import (
    PipelineValidationError,
    StepExecutionError,
    StepTimeoutError,
)
from templatepipe.orchestrator.state import JobStateMachine, step_label
from templatepipe.pipeline import media_ops
from templatepipe.pipeline.resolver import ResolvedStep, resolve_plan, validate_pipeline
from templatepipe.schemas.pipeline import (
    AttachVideoStep,
    BgMusicStep,
    TextOverlayStep,
    VideoGenerationStep,
)
from templatepipe.services import catalog, source_fetcher
from templatepipe.services.file_manager import FileManager
from templatepipe.services.generation import GenerationRequest, VideoGenerator, get_generator
from templatepipe.services.storage import StorageBackend, get_storage

logger = logging.getLogger(__name__)


class _RunContext:
    """Mutable state of one run: the running output and retained step outputs."""

    def __init__(self, job: TemplateJob, workdir: Path, plan: list[ResolvedStep]):
        self.job = job
        self.workdir = workdir
        self.running: Optional[Path] = None
        self.outputs: dict[str, Path] = {}
        self.retained: set[Path] = {r.output_path for r in plan if r.retain_output}

    def advance(self, resolved: ResolvedStep) -> None:
        """Make the step's output the running output, dropping the previous one."""
        previous = self.running
        self.running = resolved.output_path
        self.outputs[resolved.step.id] = resolved.output_path
        if previous is not None and previous not in self.retained and previous != self.running:
            previous.unlink(missing_ok=True)


async def _stage_source_video(job: TemplateJob, workdir: Path, timeout: float) -> Path:
    """Download the job's source video into the run directory."""
    if job.video_url:
        dest = workdir / f"source{source_fetcher.url_suffix(job.video_url)}"
        return await source_fetcher.fetch_to_file(job.video_url, dest, timeout)
    if job.tiktok_url:
        return await source_fetcher.fetch_tiktok(job.tiktok_url, workdir / "source.mp4", timeout)
    raise StepExecutionError("No source video to process")


async def _generate_video(
    session: AsyncSession,
    step: VideoGenerationStep,
    output_path: Path,
    generator: Optional[VideoGenerator],
    timeout: float,
) -> None:
    cfg = step.config
    image_url = await catalog.resolve_image_url(session, cfg)
    image_bytes = await source_fetcher.fetch_bytes(image_url, timeout)
    mime_type = mimetypes.guess_type(image_url)[0] or "image/png"

    request = GenerationRequest(
        image_bytes=image_bytes,
        mime_type=mime_type,
        mode=cfg.mode,
        prompt=cfg.prompt,
        max_seconds=cfg.duration_seconds,
    )
    generator = generator or get_generator()
    try:
        video_bytes = await asyncio.wait_for(generator.generate(request), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StepTimeoutError(f"Video generation did not finish within {timeout:g}s") from e
    await asyncio.to_thread(output_path.write_bytes, video_bytes)
    logger.info(f"Generated {len(video_bytes)} bytes ({cfg.mode}) -> {output_path.name}")


async def _add_music(
    session: AsyncSession,
    step: BgMusicStep,
    ctx: _RunContext,
    resolved: ResolvedStep,
    timeout: float,
) -> None:
    track_url = await catalog.resolve_track_url(session, step.config)
    suffix = source_fetcher.url_suffix(track_url, default=".mp3")
    audio_path = ctx.workdir / f"step_{resolved.index:02d}_music{suffix}"
    await source_fetcher.fetch_to_file(track_url, audio_path, timeout)
    try:
        await asyncio.to_thread(
            media_ops.mix_audio,
            ctx.running,
            audio_path,
            resolved.output_path,
            step.config,
            timeout,
        )
    finally:
        audio_path.unlink(missing_ok=True)


async def _attach_video(
    step: AttachVideoStep,
    ctx: _RunContext,
    resolved: ResolvedStep,
    timeout: float,
) -> None:
    source = resolved.attach_source
    downloaded: Optional[Path] = None
    if source.kind == "step":
        clip = ctx.outputs[source.step_id]
    elif source.kind == "tiktok":
        downloaded = ctx.workdir / f"step_{resolved.index:02d}_attach.mp4"
        clip = await source_fetcher.fetch_tiktok(source.url, downloaded, timeout)
    else:
        suffix = source_fetcher.url_suffix(source.url)
        downloaded = ctx.workdir / f"step_{resolved.index:02d}_attach{suffix}"
        clip = await source_fetcher.fetch_to_file(source.url, downloaded, timeout)

    if step.config.position == "before":
        ordered = [clip, ctx.running]
    else:
        ordered = [ctx.running, clip]
    try:
        await asyncio.to_thread(media_ops.concat_videos, ordered, resolved.output_path, timeout)
    finally:
        if downloaded is not None:
            downloaded.unlink(missing_ok=True)


async def _execute_step(
    session: AsyncSession,
    resolved: ResolvedStep,
    ctx: _RunContext,
    generator: Optional[VideoGenerator],
    timeout: float,
) -> None:
    step = resolved.step
    if resolved.consumes_running_output and ctx.running is None:
        ctx.running = await _stage_source_video(ctx.job, ctx.workdir, timeout)

    if isinstance(step, VideoGenerationStep):
        await _generate_video(session, step, resolved.output_path, generator, timeout)
    elif isinstance(step, TextOverlayStep):
        await asyncio.to_thread(
            media_ops.add_text_overlay,
            ctx.running,
            resolved.output_path,
            step.config,
            timeout,
        )
    elif isinstance(step, BgMusicStep):
        await _add_music(session, step, ctx, resolved, timeout)
    elif isinstance(step, AttachVideoStep):
        await _attach_video(step, ctx, resolved, timeout)
    else:
        raise StepExecutionError(f"Unsupported step type: {step.type}")


def failure_message(label: str, exc: BaseException) -> str:
    """User-facing error text stored on a failed job."""
    if isinstance(exc, StepExecutionError):
        return f"{label} failed: {exc}"
    return f"{label} failed: {type(exc).__name__}: {exc}"


async def run_template_job(
    session: AsyncSession,
    job_id: uuid.UUID,
    *,
    generator: Optional[VideoGenerator] = None,
    storage: Optional[StorageBackend] = None,
    file_mgr: Optional[FileManager] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> TemplateJob:
    """Execute every enabled step of a job and publish the final video.

    Args:
        session: Async database session; job changes are committed per step
        job_id: UUID of the queued job to run
        generator: Image-to-video provider (default: configured provider)
        storage: Publishing backend (default: configured backend)
        file_mgr: Working directory manager (default: settings paths)
        progress_callback: Optional callback receiving the status text of
            each step as it starts

    Returns:
        The job row in its terminal state.

    Raises:
        ValueError: If the job does not exist
        InvalidTransitionError: If the job is not queued
        Exception: Re-raises the step failure after persisting the failed state
    """
    job = await session.get(TemplateJob, job_id)
    if job is None:
        raise ValueError(f"Template job {job_id} not found")

    machine = JobStateMachine(job)
    try:
        steps = validate_pipeline(job.pipeline, job.tiktok_url, job.video_url)
    except PipelineValidationError as e:
        logger.error(f"Job {job_id}: invalid pipeline: {e}")
        machine.fail(f"Invalid pipeline: {e}")
        await session.commit()
        raise

    machine.start(len(steps))
    await session.commit()
    logger.info(f"Starting template job {job_id} ({job.name}) with {len(steps)} steps")

    timeout = settings.pipeline.step_timeout_seconds
    label = "Pipeline"
    run_start = time.monotonic()

    try:
        file_mgr = file_mgr or FileManager()
        storage = storage or get_storage()
        with file_mgr.run_workspace(job.id) as workdir:
            plan = resolve_plan(steps, workdir)
            ctx = _RunContext(job, workdir, plan)

            for resolved in plan:
                label = step_label(resolved.step.type)
                machine.begin_step(resolved.index, resolved.step.type)
                await session.commit()
                if progress_callback:
                    progress_callback(job.step)

                step_start = time.monotonic()
                await _execute_step(session, resolved, ctx, generator, timeout)
                ctx.advance(resolved)
                logger.info(
                    f"Job {job_id}: {job.step} done in {time.monotonic() - step_start:.2f}s"
                )

            label = "Publishing output"
            machine.set_activity("Publishing output")
            await session.commit()
            output_url = await storage.publish(ctx.running, job.id)

        machine.complete(output_url)
        await session.commit()
        logger.info(
            f"Template job {job_id} completed in {time.monotonic() - run_start:.2f}s: {output_url}"
        )
        if progress_callback:
            progress_callback(job.step)
        return job

    except Exception as e:
        message = failure_message(label, e)
        logger.error(f"Template job {job_id} failed at step {job.current_step}: {message}")
        machine.fail(message, step_text=f"Failed: {job.step}")
        await session.commit()
        raise
