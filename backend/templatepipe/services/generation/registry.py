"""Provider selection for image-to-video generation."""

import logging
from typing import Optional

from templatepipe.config import settings
from templatepipe.services.generation.base import VideoGenerator
from templatepipe.services.generation.veo_adapter import VEO_DURATIONS, VeoGenerator

logger = logging.getLogger(__name__)

_generators: dict[str, VideoGenerator] = {}


def get_generator(model_id: Optional[str] = None) -> VideoGenerator:
    """Return a cached generator for ``model_id`` (default: models.video_gen).

    Raises:
        ValueError: If the model id is not a known provider model.
    """
    model_id = model_id or settings.models.video_gen
    if model_id not in VEO_DURATIONS:
        raise ValueError(
            f"Unknown video generation model: {model_id}. "
            f"Supported: {sorted(VEO_DURATIONS)}"
        )
    if model_id not in _generators:
        logger.info(f"Creating video generator for {model_id}")
        _generators[model_id] = VeoGenerator(model_id)
    return _generators[model_id]
