"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class GoogleCloudConfig(BaseModel):
    """Google Cloud configuration.

    project_id is only needed when the Veo generator or GCS publishing is used.
    """

    project_id: Optional[str] = None
    location: str = "us-central1"


class ModelsConfig(BaseModel):
    """AI model identifiers."""

    video_gen: str = "veo-3.1-fast-generate-001"


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    step_timeout_seconds: int = 900
    generation_poll_interval: int = 10
    generation_poll_max: int = 90
    active_poll_interval: float = 2.0
    idle_poll_interval: float = 60.0
    frame_width: int = 720
    text_margin: int = 50


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///templatepipe.db"
    tmp_dir: Path = Path("tmp/runs")
    output_dir: Path = Path("tmp/outputs")
    upload_dir: Path = Path("tmp/uploads")
    gcs_bucket: Optional[str] = None
    signed_url_ttl_seconds: int = 3600

    @field_validator("tmp_dir", "output_dir", "upload_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class BinariesConfig(BaseModel):
    """External executables invoked as subprocesses."""

    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    yt_dlp: str = "yt-dlp"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: TEMPLATEPIPE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="TEMPLATEPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    google_cloud: GoogleCloudConfig = GoogleCloudConfig()
    models: ModelsConfig = ModelsConfig()
    pipeline: PipelineConfig = PipelineConfig()
    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()
    binaries: BinariesConfig = BinariesConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
