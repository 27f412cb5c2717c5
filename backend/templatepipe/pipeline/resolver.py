"""Pipeline validation and per-step input resolution.

Turns a raw step list (as stored on a job or submitted by the UI) into an
execution plan. Only enabled steps are parsed; disabled steps are dropped
without looking at their config.

Usage:
    from templatepipe.pipeline.resolver import validate_pipeline, resolve_plan

    steps = validate_pipeline(job.pipeline, job.tiktok_url, job.video_url)
    plan = resolve_plan(steps, workdir)
"""

import logging
from pathlib import Path
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from templatepipe.errors import PipelineValidationError, SourceFetchError
from templatepipe.schemas.pipeline import (
    AttachVideoStep,
    BgMusicStep,
    PipelineStep,
    VideoGenerationStep,
)
from templatepipe.services.source_fetcher import local_source_path

logger = logging.getLogger(__name__)

_STEP_ADAPTER: TypeAdapter = TypeAdapter(PipelineStep)


class AttachSource(BaseModel):
    """Where an attach-video step gets its clip from."""

    kind: Literal["step", "tiktok", "url"]
    step_id: Optional[str] = None
    url: Optional[str] = None


class ResolvedStep(BaseModel):
    """One enabled step with its inputs and staged output location."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int
    step: PipelineStep
    consumes_running_output: bool
    attach_source: Optional[AttachSource] = None
    output_path: Path
    retain_output: bool = False


def is_enabled(raw_step: Any) -> bool:
    """A step runs only when its ``enabled`` flag is truthy."""
    return isinstance(raw_step, dict) and bool(raw_step.get("enabled"))


def _describe_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def parse_step(raw_step: dict, position: int) -> PipelineStep:
    """Validate one raw step; ``position`` is its 0-based place in the raw list."""
    try:
        return _STEP_ADAPTER.validate_python(raw_step)
    except ValidationError as e:
        step_type = raw_step.get("type", "unknown")
        raise PipelineValidationError(
            f"Step {position + 1} ({step_type}) is invalid: {_describe_error(e)}"
        ) from e


def enabled_steps(raw_pipeline: Sequence[Any]) -> list[PipelineStep]:
    """Parse the enabled steps of a raw pipeline, preserving order."""
    return [
        parse_step(raw, position)
        for position, raw in enumerate(raw_pipeline)
        if is_enabled(raw)
    ]


def _check_unique_ids(raw_pipeline: Sequence[dict]) -> None:
    seen: set[str] = set()
    for raw in raw_pipeline:
        step_id = raw.get("id")
        if not step_id:
            continue
        if str(step_id) in seen:
            raise PipelineValidationError(f"Duplicate step id: {step_id}")
        seen.add(str(step_id))


def _check_references(steps: list[PipelineStep], disabled_ids: set[str]) -> None:
    positions = {step.id: index for index, step in enumerate(steps)}

    for index, step in enumerate(steps):
        if not isinstance(step, AttachVideoStep) or step.config.source_kind != "step":
            continue
        ref = step.config.source_step_id
        if ref == step.id:
            raise PipelineValidationError(f"Step {step.id} cannot attach its own output")
        if ref not in positions:
            if ref in disabled_ids:
                raise PipelineValidationError(
                    f"Step {step.id} attaches the output of disabled step {ref}"
                )
            raise PipelineValidationError(
                f"Step {step.id} attaches the output of unknown step {ref}"
            )
        if positions[ref] > index:
            raise PipelineValidationError(
                f"Step {step.id} attaches the output of step {ref}, which runs later"
            )


def _source_urls(steps: list[PipelineStep]) -> list[Optional[str]]:
    urls: list[Optional[str]] = []
    for step in steps:
        if isinstance(step, VideoGenerationStep):
            urls.append(step.config.image_url)
        elif isinstance(step, BgMusicStep):
            urls.append(step.config.custom_track_url)
        elif isinstance(step, AttachVideoStep):
            urls.append(step.config.video_url)
    return urls


def _check_local_sources(steps: list[PipelineStep], video_url: Optional[str]) -> None:
    for url in [video_url, *_source_urls(steps)]:
        if not url:
            continue
        try:
            local_source_path(url)
        except SourceFetchError as e:
            raise PipelineValidationError(str(e)) from e


def validate_pipeline(
    raw_pipeline: Any,
    tiktok_url: Optional[str] = None,
    video_url: Optional[str] = None,
) -> list[PipelineStep]:
    """Validate a submitted pipeline and return its enabled steps.

    Raises:
        PipelineValidationError: If the pipeline is empty, has no enabled
            step, contains an invalid enabled step, has a video-generation
            step after the first position, has duplicate step ids or a bad
            back-reference, needs a source video that was not supplied, or
            points at a local file outside the upload directory.
    """
    if not isinstance(raw_pipeline, list) or not raw_pipeline:
        raise PipelineValidationError("Pipeline must contain at least one step")
    if any(not isinstance(raw, dict) for raw in raw_pipeline):
        raise PipelineValidationError("Every pipeline step must be an object")
    _check_unique_ids(raw_pipeline)

    steps = enabled_steps(raw_pipeline)
    if not steps:
        raise PipelineValidationError("At least one pipeline step must be enabled")

    for index, step in enumerate(steps):
        if isinstance(step, VideoGenerationStep) and index > 0:
            raise PipelineValidationError(
                "Video generation is only supported as the first enabled step"
            )

    disabled_ids = {
        str(raw.get("id")) for raw in raw_pipeline if not is_enabled(raw) and raw.get("id")
    }
    _check_references(steps, disabled_ids)

    if not isinstance(steps[0], VideoGenerationStep) and not (tiktok_url or video_url):
        raise PipelineValidationError(
            "A video source is required (TikTok URL or uploaded video)"
        )
    _check_local_sources(steps, video_url)
    return steps


def referenced_step_ids(steps: list[PipelineStep]) -> set[str]:
    """Ids of steps whose output a later attach-video step consumes."""
    return {
        step.config.source_step_id
        for step in steps
        if isinstance(step, AttachVideoStep) and step.config.source_kind == "step"
    }


def resolve_plan(steps: list[PipelineStep], workdir: Path) -> list[ResolvedStep]:
    """Compute inputs and output paths for validated enabled steps.

    Every step except video-generation consumes the running output. Output
    files are named by position so a step's output never overwrites its input.
    """
    retained = referenced_step_ids(steps)
    plan: list[ResolvedStep] = []
    for index, step in enumerate(steps):
        attach_source = None
        if isinstance(step, AttachVideoStep):
            cfg = step.config
            kind = cfg.source_kind
            if kind == "step":
                attach_source = AttachSource(kind="step", step_id=cfg.source_step_id)
            elif kind == "tiktok":
                attach_source = AttachSource(kind="tiktok", url=cfg.tiktok_url)
            else:
                attach_source = AttachSource(kind="url", url=cfg.video_url)

        plan.append(
            ResolvedStep(
                index=index,
                step=step,
                consumes_running_output=not isinstance(step, VideoGenerationStep),
                attach_source=attach_source,
                output_path=workdir / f"step_{index:02d}_{step.type}.mp4",
                retain_output=step.id in retained,
            )
        )
    logger.debug(f"Resolved plan with {len(plan)} steps, retained outputs: {sorted(retained)}")
    return plan
