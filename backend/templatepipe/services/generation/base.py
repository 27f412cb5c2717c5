"""Abstract base class for image-to-video generation providers.

The pipeline runner only depends on this interface: given an image, a mode,
an optional prompt and a maximum duration, produce MP4 bytes. Providers own
their polling, retry and timeout behaviour and report failure by raising.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from templatepipe.schemas.pipeline import VideoGenMode


class GenerationRequest(BaseModel):
    """Inputs for one image-to-video generation."""

    image_bytes: bytes
    mime_type: str = "image/png"
    mode: VideoGenMode
    prompt: Optional[str] = None
    max_seconds: int = Field(gt=0)


class VideoGenerator(ABC):
    """Abstract base class for image-to-video providers."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> bytes:
        """Generate a clip from a still image.

        Args:
            request: Image, mode, prompt and maximum clip length.

        Returns:
            Raw bytes of the generated MP4.

        Raises:
            GenerationError: The provider rejected the request, failed or
                returned no video.
        """
        ...
