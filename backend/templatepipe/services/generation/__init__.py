"""Image-to-video generation provider abstraction.

Usage:
    from templatepipe.services.generation import get_generator, GenerationRequest

    generator = get_generator()
    video_bytes = await generator.generate(GenerationRequest(...))
"""

from templatepipe.services.generation.base import GenerationRequest, VideoGenerator
from templatepipe.services.generation.registry import get_generator

__all__ = ["GenerationRequest", "VideoGenerator", "get_generator"]
