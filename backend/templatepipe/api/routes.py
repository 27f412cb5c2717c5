"""API route handlers and Pydantic request/response schemas."""

import logging
import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse
from pydantic import Field
from sqlalchemy import select

from templatepipe import __version__
from templatepipe.db import async_session
from templatepipe.db.models import MusicTrack, TemplateJob, TemplatePreset
from templatepipe.errors import PipelineValidationError
from templatepipe.pipeline.resolver import validate_pipeline
from templatepipe.schemas.pipeline import CamelModel
from templatepipe.services.storage import get_storage, local_path_from_uri
from templatepipe.workers.job_tasks import active_job_ids, start_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Request / Response Schemas
# ============================================================================

class CreateTemplateJobRequest(CamelModel):
    """Request schema for POST /api/templates."""
    name: str = Field(min_length=1, max_length=200)
    pipeline: list[Any]
    video_source: Optional[Literal["tiktok", "upload"]] = None
    tiktok_url: Optional[str] = None
    video_url: Optional[str] = None


class TemplateJobResponse(CamelModel):
    """Job representation returned by the template endpoints."""
    id: str
    name: str
    status: str
    current_step: int
    total_steps: int
    step: str
    pipeline: list[Any]
    video_source: str
    tiktok_url: Optional[str]
    video_url: Optional[str]
    output_url: Optional[str]
    error: Optional[str]
    created_at: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    signed_url: Optional[str] = None


class PresetRequest(CamelModel):
    """Request schema for POST /api/template-presets."""
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    pipeline: list[Any]


class UpdatePresetRequest(CamelModel):
    """Request schema for PUT /api/template-presets/{id}."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    pipeline: Optional[list[Any]] = None


class PresetResponse(CamelModel):
    id: str
    name: str
    description: Optional[str]
    pipeline: list[Any]
    created_at: Optional[str]
    updated_at: Optional[str]


class MusicTrackResponse(CamelModel):
    id: str
    name: str
    url: str
    duration: Optional[float]
    is_default: bool


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _job_to_response(job: TemplateJob, signed_url: Optional[str] = None) -> TemplateJobResponse:
    """Convert TemplateJob ORM model to TemplateJobResponse."""
    return TemplateJobResponse(
        id=str(job.id),
        name=job.name,
        status=job.status,
        current_step=job.current_step,
        total_steps=job.total_steps,
        step=job.step,
        pipeline=job.pipeline,
        video_source=job.video_source,
        tiktok_url=job.tiktok_url,
        video_url=job.video_url,
        output_url=job.output_url,
        error=job.error,
        created_at=_iso(job.created_at),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
        signed_url=signed_url,
    )


def _preset_to_response(preset: TemplatePreset) -> PresetResponse:
    """Convert TemplatePreset ORM model to PresetResponse."""
    return PresetResponse(
        id=str(preset.id),
        name=preset.name,
        description=preset.description,
        pipeline=preset.pipeline,
        created_at=_iso(preset.created_at),
        updated_at=_iso(preset.updated_at),
    )


async def _signed_output_url(job: TemplateJob) -> Optional[str]:
    """Browser-fetchable URL for a job's output.

    Falls back to the stored URL when the output is not in managed storage
    or signing fails.
    """
    if not job.output_url:
        return None
    try:
        signed = await get_storage().signed_url(job.output_url, job.id)
    except Exception as e:
        logger.warning(f"Failed to sign output URL for job {job.id}: {type(e).__name__}: {e}")
        return job.output_url
    return signed or job.output_url


# ============================================================================
# Template Job Endpoints
# ============================================================================

@router.post("/templates", status_code=202, response_model=TemplateJobResponse)
async def create_template_job(request: CreateTemplateJobRequest):
    """Validate a pipeline and start it as a background job.

    Returns 422 without creating a job if the pipeline or source is invalid.
    Returns 202 Accepted with the queued job otherwise.
    """
    try:
        steps = validate_pipeline(request.pipeline, request.tiktok_url, request.video_url)
    except PipelineValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    async with async_session() as session:
        job = TemplateJob(
            name=request.name,
            status="queued",
            step="Queued",
            current_step=0,
            total_steps=len(steps),
            pipeline=request.pipeline,
            video_source="upload" if request.video_url else "tiktok",
            tiktok_url=request.tiktok_url,
            video_url=request.video_url,
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)
        logger.info(f"Created template job {job.id} ({job.name}) with {len(steps)} enabled steps")

    # Schedule AFTER committing the job
    start_job(job.id)
    return _job_to_response(job)


@router.get("/templates", response_model=list[TemplateJobResponse])
async def list_template_jobs(limit: int = 50):
    """List template jobs ordered by creation date (newest first)."""
    async with async_session() as session:
        result = await session.execute(
            select(TemplateJob).order_by(TemplateJob.created_at.desc()).limit(limit)
        )
        jobs = result.scalars().all()

    return [_job_to_response(j) for j in jobs]


@router.get("/templates/{job_id}", response_model=TemplateJobResponse)
async def get_template_job(job_id: uuid.UUID):
    """Get a template job with a signed URL for its output."""
    async with async_session() as session:
        job = await session.get(TemplateJob, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Template job not found")

    return _job_to_response(job, signed_url=await _signed_output_url(job))


@router.get("/templates/{job_id}/download")
async def download_template_output(job_id: uuid.UUID):
    """Download a locally published output video.

    Returns 409 if the job is not completed.
    Returns 404 if the output is not stored on this server.
    """
    async with async_session() as session:
        job = await session.get(TemplateJob, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Template job not found")

    if job.status != "completed":
        raise HTTPException(
            status_code=409,
            detail=f"Template job not ready for download (status: {job.status})"
        )

    output_path = local_path_from_uri(job.output_url or "")
    if output_path is None:
        raise HTTPException(status_code=404, detail="Output is not stored on this server")
    if not output_path.exists():
        raise HTTPException(status_code=404, detail="Output file not found on disk")

    return FileResponse(
        path=str(output_path),
        media_type="video/mp4",
        filename=f"template_{job_id}.mp4",
    )


# ============================================================================
# Preset Endpoints
# ============================================================================

@router.get("/template-presets", response_model=list[PresetResponse])
async def list_presets():
    """List saved pipelines, most recently updated first."""
    async with async_session() as session:
        result = await session.execute(
            select(TemplatePreset).order_by(TemplatePreset.updated_at.desc())
        )
        return [_preset_to_response(p) for p in result.scalars().all()]


@router.post("/template-presets", status_code=201, response_model=PresetResponse)
async def create_preset(request: PresetRequest):
    """Save a pipeline for reuse."""
    async with async_session() as session:
        preset = TemplatePreset(
            name=request.name,
            description=request.description,
            pipeline=request.pipeline,
        )
        session.add(preset)
        await session.commit()
        await session.refresh(preset)
        logger.info(f"Created template preset {preset.id} ({preset.name})")
        return _preset_to_response(preset)


@router.put("/template-presets/{preset_id}", response_model=PresetResponse)
async def update_preset(preset_id: uuid.UUID, request: UpdatePresetRequest):
    """Update preset fields."""
    async with async_session() as session:
        preset = await session.get(TemplatePreset, preset_id)
        if not preset:
            raise HTTPException(status_code=404, detail="Template preset not found")

        # Only apply fields that were provided
        for key, value in request.model_dump(exclude_unset=True).items():
            if value is not None or key == "description":
                setattr(preset, key, value)
        preset.updated_at = datetime.utcnow()
        await session.commit()
        await session.refresh(preset)
        return _preset_to_response(preset)


@router.delete("/template-presets/{preset_id}")
async def delete_preset(preset_id: uuid.UUID):
    """Delete a preset. Jobs keep their own pipeline snapshot."""
    async with async_session() as session:
        preset = await session.get(TemplatePreset, preset_id)
        if not preset:
            raise HTTPException(status_code=404, detail="Template preset not found")
        await session.delete(preset)
        await session.commit()
        return {"status": "deleted", "preset_id": str(preset_id)}


# ============================================================================
# Catalog / Health Endpoints
# ============================================================================

@router.get("/music-tracks", response_model=list[MusicTrackResponse])
async def list_music_tracks():
    """List catalog tracks, default tracks first."""
    async with async_session() as session:
        result = await session.execute(
            select(MusicTrack).order_by(MusicTrack.is_default.desc(), MusicTrack.name)
        )
        return [
            MusicTrackResponse(
                id=str(t.id),
                name=t.name,
                url=t.url,
                duration=t.duration,
                is_default=t.is_default,
            )
            for t in result.scalars().all()
        ]


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "active_jobs": len(active_job_ids()),
    }
