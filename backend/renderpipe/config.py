"""Render pipeline settings: defaults, then config.yaml, then RENDERPIPE_* environment variables."""

import logging
import os
from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_CONCURRENCY = 3

CONFIG_PATH_ENV = "RENDERPIPE_CONFIG"


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Whole-document YAML source; the file path comes from RENDERPIPE_CONFIG."""

    def get_field_value(self, field, field_name: str):
        # __call__ returns the full mapping instead
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path(os.environ.get(CONFIG_PATH_ENV, "config.yaml"))
        if not yaml_path.is_file():
            return {}

        data = yaml.safe_load(yaml_path.read_text()) or {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {yaml_path}: top level must be a mapping")
            return {}
        logger.debug(f"Loaded settings from {yaml_path}")
        return data


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///renderpipe.db"
    artifacts_dir: Path = Path("artifacts")

    @field_validator("artifacts_dir", mode="before")
    @classmethod
    def convert_artifacts_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class RenderConfig(BaseModel):
    """Step execution parameters."""

    image_concurrency: int = DEFAULT_IMAGE_CONCURRENCY
    capability_timeout_seconds: float = 180.0
    encode_timeout_seconds: float = 1200.0
    caption_pause_gap_seconds: float = 0.5
    caption_max_words: int = 6
    music_library_dir: Path = Path("assets/music")
    music_volume: float = 0.15
    image_size: str = "1024x1792"

    @field_validator("image_concurrency", mode="before")
    @classmethod
    def fallback_invalid_concurrency(cls, v):
        """Fall back to the default cap for zero, negative or non-numeric values."""
        try:
            parsed = int(float(v))
        except (TypeError, ValueError):
            logger.warning(f"Invalid image_concurrency {v!r}, using {DEFAULT_IMAGE_CONCURRENCY}")
            return DEFAULT_IMAGE_CONCURRENCY
        if parsed < 1:
            logger.warning(f"Invalid image_concurrency {v!r}, using {DEFAULT_IMAGE_CONCURRENCY}")
            return DEFAULT_IMAGE_CONCURRENCY
        return parsed


class OutputConfig(BaseModel):
    """Fixed output constraints for the final container."""

    width: int = 1080
    height: int = 1920
    fps: int = 30
    video_bitrate: str = "6M"
    max_bitrate: str = "8M"
    buffer_size: str = "12M"
    audio_bitrate: str = "192k"
    loudness_target: float = -14.0
    true_peak: float = -1.5
    loudness_range: float = 11.0
    thumbnail_width: int = 540


class QAConfig(BaseModel):
    """Automated post-render quality thresholds."""

    max_silence_seconds: float = 2.0
    silence_noise_db: float = -50.0
    max_file_size_mb: float = 287.0


class DryRunConfig(BaseModel):
    """Deterministic zero-cost capability stand-ins and fault injection."""

    enabled: bool = False
    fail_step: Optional[str] = None
    step_delay_ms: int = 0


class ProvidersConfig(BaseModel):
    """Live capability provider settings (OpenAI-compatible HTTP API)."""

    api_key: Optional[str] = None
    base_url: str = "https://api.openai.com/v1"
    tts_model: str = "tts-1"
    default_voice: str = "alloy"
    transcription_model: str = "whisper-1"
    image_model: str = "dall-e-3"
    request_timeout_seconds: float = 120.0
    max_attempts: int = 3


class ProgressConfig(BaseModel):
    """Progress fan-out parameters."""

    keepalive_seconds: float = 15.0
    subscriber_queue_size: int = 500


class RecoveryConfig(BaseModel):
    """Crash/restart reconciliation policy."""

    resume_interrupted: bool = False


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


class Settings(BaseSettings):
    """All render pipeline settings.

    Nested sections map to YAML mappings and to environment variables such as
    RENDERPIPE_DRY_RUN__ENABLED=true or RENDERPIPE_QA__MAX_SILENCE_SECONDS=1.5.
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="RENDERPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    storage: StorageConfig = StorageConfig()
    render: RenderConfig = RenderConfig()
    output: OutputConfig = OutputConfig()
    qa: QAConfig = QAConfig()
    dry_run: DryRunConfig = DryRunConfig()
    providers: ProvidersConfig = ProvidersConfig()
    progress: ProgressConfig = ProgressConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    server: ServerConfig = ServerConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Keyword arguments win, then environment (.env included), then YAML."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Process-wide settings; tests build their own Settings instances
settings = Settings()
