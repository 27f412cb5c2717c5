"""Template Pipeline - configurable step chains over short-form video.

This module provides startup validation functions to ensure required
dependencies are available before any job runs.
Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies() -> None:
    """Validate required system dependencies are available.

    This function should be called during application startup to fail fast
    with clear installation instructions if required dependencies are missing.

    Raises:
        RuntimeError: If ffmpeg or ffprobe is not found or not functional.
    """
    from templatepipe.config import settings

    for binary in (settings.binaries.ffmpeg, settings.binaries.ffprobe):
        try:
            result = subprocess.run(
                [binary, '-version'],
                capture_output=True,
                check=True,
                text=True
            )
            version_line = result.stdout.split('\n')[0]
            logger.info(f"{binary} validated: {version_line}")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{binary} not found on PATH. Install ffmpeg to run template jobs.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e
