"""Pydantic schemas for template pipeline steps.

A pipeline is an ordered list of steps. Each step is one of four types and
carries a config matching its type, so steps are modelled as a discriminated
union on ``type``. The wire format (API bodies, JSON columns, preset files)
uses camelCase keys as produced by the authoring UI.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

StepType = Literal["video-generation", "text-overlay", "bg-music", "attach-video"]

VideoGenMode = Literal["motion-control", "subtle-animation"]

# mode -> (min seconds, max seconds, default seconds)
VIDEO_GEN_DURATION_BOUNDS: dict[str, tuple[int, int, int]] = {
    "motion-control": (5, 30, 10),
    "subtle-animation": (2, 10, 5),
}


class CamelModel(BaseModel):
    """Base model accepting both camelCase aliases and snake_case names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


# ---------------------------------------------------------------------------
# Step configs
# ---------------------------------------------------------------------------

class VideoGenConfig(CamelModel):
    """Generate a clip from a still image.

    The image comes from the model catalog (``modelId`` + ``imageId``) or
    from a direct ``imageUrl``. The catalog image wins when both are given.
    """

    mode: VideoGenMode
    model_id: Optional[str] = None
    image_id: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = None
    max_seconds: Optional[int] = None

    @model_validator(mode="after")
    def _check_image_and_duration(self) -> "VideoGenConfig":
        if not self.uses_catalog_image and not self.image_url:
            raise ValueError(
                "video generation requires a model image (modelId + imageId) or an imageUrl"
            )
        if self.max_seconds is not None:
            low, high, _ = VIDEO_GEN_DURATION_BOUNDS[self.mode]
            if not low <= self.max_seconds <= high:
                raise ValueError(
                    f"maxSeconds for {self.mode} must be between {low} and {high}, "
                    f"got {self.max_seconds}"
                )
        return self

    @property
    def uses_catalog_image(self) -> bool:
        return bool(self.model_id and self.image_id)

    @property
    def duration_seconds(self) -> int:
        """Requested clip length, falling back to the mode default."""
        if self.max_seconds is not None:
            return self.max_seconds
        return VIDEO_GEN_DURATION_BOUNDS[self.mode][2]


class TextOverlayConfig(CamelModel):
    """Burn text onto the running video."""

    text: str = Field(min_length=1)
    position: Literal["top", "center", "bottom", "custom"] = "bottom"
    custom_x: Optional[float] = Field(default=None, ge=0, le=100)
    custom_y: Optional[float] = Field(default=None, ge=0, le=100)
    font_size: float = Field(default=48, gt=0)
    font_color: str = "#FFFFFF"
    font_family: Optional[str] = None
    text_style: Optional[str] = None
    bg_color: Optional[str] = None
    entire_video: bool = False
    start_time: Optional[float] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, gt=0)
    padding_left: float = Field(default=0, ge=0)
    padding_right: float = Field(default=0, ge=0)


class BgMusicConfig(CamelModel):
    """Mix a background track into the running video.

    A custom track URL wins over a catalog ``trackId`` when both are given.
    """

    track_id: Optional[str] = None
    custom_track_url: Optional[str] = None
    volume: float = Field(default=30, ge=0, le=100)
    fade_in: Optional[float] = Field(default=None, ge=0)
    fade_out: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_track(self) -> "BgMusicConfig":
        if not self.track_id and not self.custom_track_url:
            raise ValueError("background music requires a trackId or a customTrackUrl")
        return self


class AttachVideoConfig(CamelModel):
    """Splice another clip before or after the running video."""

    video_url: Optional[str] = None
    tiktok_url: Optional[str] = None
    source_step_id: Optional[str] = None
    position: Literal["before", "after"] = "after"

    @model_validator(mode="after")
    def _check_source(self) -> "AttachVideoConfig":
        if not (self.source_step_id or self.tiktok_url or self.video_url):
            raise ValueError(
                "attach-video requires a sourceStepId, a tiktokUrl or a videoUrl"
            )
        return self

    @property
    def source_kind(self) -> Literal["step", "tiktok", "url"]:
        """Which of the configured sources is used, by precedence."""
        if self.source_step_id:
            return "step"
        if self.tiktok_url:
            return "tiktok"
        return "url"


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

class _StepBase(CamelModel):
    id: str = Field(min_length=1)
    enabled: bool = True


class VideoGenerationStep(_StepBase):
    type: Literal["video-generation"]
    config: VideoGenConfig


class TextOverlayStep(_StepBase):
    type: Literal["text-overlay"]
    config: TextOverlayConfig


class BgMusicStep(_StepBase):
    type: Literal["bg-music"]
    config: BgMusicConfig


class AttachVideoStep(_StepBase):
    type: Literal["attach-video"]
    config: AttachVideoConfig


PipelineStep = Annotated[
    Union[VideoGenerationStep, TextOverlayStep, BgMusicStep, AttachVideoStep],
    Field(discriminator="type"),
]
