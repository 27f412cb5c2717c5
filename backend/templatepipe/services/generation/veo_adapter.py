"""Veo image-to-video adapter using the google-genai SDK on Vertex AI.

Submits a generate_videos operation seeded with the step's image, polls it
until done and returns the video bytes. Transient 429/5xx responses on the
submit and poll RPCs are retried with tenacity; everything else surfaces as a
GenerationError.
"""

import asyncio
import logging
from typing import Optional

import httpx
from google.genai import types
from google.genai.errors import ClientError, ServerError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_random,
    retry_if_exception,
    before_sleep_log,
)

from templatepipe.config import settings
from templatepipe.errors import GenerationError
from templatepipe.services.generation.base import GenerationRequest, VideoGenerator
from templatepipe.services.vertex_client import get_vertex_client

logger = logging.getLogger(__name__)

# Clip lengths each Veo model accepts
VEO_DURATIONS: dict[str, list[int]] = {
    "veo-2.0-generate-001": [5, 6, 7, 8],
    "veo-3.0-generate-001": [4, 6, 8],
    "veo-3.0-fast-generate-001": [4, 6, 8],
    "veo-3.1-generate-001": [4, 6, 8],
    "veo-3.1-fast-generate-001": [4, 6, 8],
}

MODE_PROMPTS = {
    "subtle-animation": (
        "Subtle, natural motion only: gentle breathing, blinking and small head "
        "movements. Static camera, framing unchanged."
    ),
    "motion-control": (
        "Natural, expressive full-body movement with clear gestures. Keep the "
        "subject's identity, outfit and setting consistent with the image."
    ),
}


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying (429, 5xx)."""
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return getattr(exc, "code", 0) == 429
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


def pick_duration(model_id: str, max_seconds: int) -> int:
    """Longest duration the model supports that does not exceed ``max_seconds``.

    Falls back to the model's shortest duration when ``max_seconds`` is below
    every supported value.
    """
    allowed = VEO_DURATIONS.get(model_id, [4, 6, 8])
    fitting = [d for d in allowed if d <= max_seconds]
    return max(fitting) if fitting else min(allowed)


def build_prompt(request: GenerationRequest) -> str:
    base = MODE_PROMPTS[request.mode]
    if request.prompt:
        return f"{request.prompt.strip()} {base}"
    return base


class VeoGenerator(VideoGenerator):
    """Veo image-to-video provider."""

    def __init__(self, model_id: Optional[str] = None, client=None):
        self.model_id = model_id or settings.models.video_gen
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_vertex_client()
        return self._client

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=2, min=4, max=60) + wait_random(0, 3),
        retry=retry_if_exception(_is_retriable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _submit(self, request: GenerationRequest, duration: int):
        config = types.GenerateVideosConfig(
            duration_seconds=duration,
            number_of_videos=1,
        )
        return await self.client.aio.models.generate_videos(
            model=self.model_id,
            prompt=build_prompt(request),
            image=types.Image(image_bytes=request.image_bytes, mime_type=request.mime_type),
            config=config,
        )

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=2, min=4, max=60) + wait_random(0, 3),
        retry=retry_if_exception(_is_retriable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _poll(self, operation):
        return await self.client.aio.operations.get(operation=operation)

    async def _video_bytes(self, operation) -> bytes:
        response = getattr(operation, "response", None)
        if not response or not response.generated_videos:
            error = getattr(operation, "error", None)
            if getattr(response, "rai_media_filtered_count", None):
                raise GenerationError("Video generation was blocked by content filtering")
            raise GenerationError(f"Video generation failed: {error or 'no video returned'}")

        video = response.generated_videos[0].video
        if video and video.video_bytes:
            return video.video_bytes
        if video and video.uri:
            uri = video.uri
            if uri.startswith("gs://"):
                uri = uri.replace("gs://", "https://storage.googleapis.com/", 1)
            async with httpx.AsyncClient(follow_redirects=True) as http:
                result = await http.get(uri)
                result.raise_for_status()
                return result.content
        raise GenerationError("Video generation returned no video data")

    async def generate(self, request: GenerationRequest) -> bytes:
        duration = pick_duration(self.model_id, request.max_seconds)
        if duration != request.max_seconds:
            logger.info(
                f"{self.model_id} does not support {request.max_seconds}s clips, using {duration}s"
            )

        try:
            operation = await self._submit(request, duration)
        except (ClientError, ServerError) as e:
            raise GenerationError(f"Video generation request rejected: {e}") from e
        logger.info(f"Submitted {self.model_id} operation {operation.name} ({request.mode})")

        poll_interval = settings.pipeline.generation_poll_interval
        for _ in range(settings.pipeline.generation_poll_max):
            if operation.done:
                return await self._video_bytes(operation)
            await asyncio.sleep(poll_interval)
            try:
                operation = await self._poll(operation)
            except (ClientError, ServerError) as e:
                raise GenerationError(f"Video generation polling failed: {e}") from e

        if operation.done:
            return await self._video_bytes(operation)
        raise GenerationError(
            "Video generation did not complete after "
            f"{settings.pipeline.generation_poll_max * poll_interval} seconds"
        )
