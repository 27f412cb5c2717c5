"""Exception types raised by the template pipeline engine.

Validation errors are raised before a job exists and are never retried.
Step execution errors abort a running job; their message is what ends up in
``TemplateJob.error``. Probe failures are not represented here because they
degrade to defaults instead of raising.
"""

from typing import Optional


class TemplatePipeError(Exception):
    """Base class for all engine errors."""


class PipelineValidationError(TemplatePipeError):
    """The submitted pipeline or video source is incomplete or inconsistent."""


class InvalidTransitionError(TemplatePipeError):
    """A job state change that the lifecycle does not allow."""


class StepExecutionError(TemplatePipeError):
    """A pipeline step could not produce its output."""


class TranscoderError(StepExecutionError):
    """ffmpeg exited with a non-zero status."""

    def __init__(self, message: str, stderr: Optional[str] = None):
        super().__init__(message)
        self.stderr = stderr


class StepTimeoutError(StepExecutionError):
    """A subprocess, download or generation request exceeded the step timeout."""


class SourceFetchError(StepExecutionError):
    """A remote clip, image or audio track could not be downloaded."""


class GenerationError(StepExecutionError):
    """The image-to-video service failed or returned no video."""
