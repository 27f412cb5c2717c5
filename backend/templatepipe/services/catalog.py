"""Lookups of catalog records referenced by step configs.

Video-generation steps may point at a stored model image and bg-music steps
at a catalog track instead of carrying a URL directly.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from templatepipe.db.models import ModelImage, MusicTrack
from templatepipe.errors import StepExecutionError
from templatepipe.schemas.pipeline import BgMusicConfig, VideoGenConfig

logger = logging.getLogger(__name__)


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def resolve_image_url(session: AsyncSession, config: VideoGenConfig) -> str:
    """URL of the image a video-generation step animates.

    The stored model image wins when both forms are configured.

    Raises:
        StepExecutionError: If the model image does not exist.
    """
    if not config.uses_catalog_image:
        return config.image_url

    image_id = _as_uuid(config.image_id)
    image = None
    if image_id is not None:
        result = await session.execute(
            select(ModelImage).where(
                ModelImage.id == image_id,
                ModelImage.model_id == config.model_id,
            )
        )
        image = result.scalar_one_or_none()
    if image is None:
        raise StepExecutionError(
            f"Model image {config.image_id} not found for model {config.model_id}"
        )
    logger.debug(f"Resolved model image {image.id} -> {image.url}")
    return image.url


async def resolve_track_url(session: AsyncSession, config: BgMusicConfig) -> str:
    """URL of the audio a bg-music step mixes in.

    A custom track URL wins over a catalog track.

    Raises:
        StepExecutionError: If the catalog track does not exist.
    """
    if config.custom_track_url:
        return config.custom_track_url

    track_id = _as_uuid(config.track_id)
    track = await session.get(MusicTrack, track_id) if track_id is not None else None
    if track is None:
        raise StepExecutionError(f"Music track {config.track_id} not found")
    logger.debug(f"Resolved music track {track.name} -> {track.url}")
    return track.url
