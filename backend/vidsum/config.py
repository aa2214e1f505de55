"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
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


class PipelineConfig(BaseModel):
    """Job orchestration parameters."""

    max_retries: int = Field(default=3, ge=0)
    stage_timeout_seconds: float = Field(default=600.0, gt=0)
    redelivery_attempts: int = Field(default=3, ge=1)
    redelivery_base_delay: float = Field(default=1.0, ge=0)
    # "package.module:ClassName" paths of stage executors to register
    executors: list[str] = []


class StreamConfig(BaseModel):
    """Status stream polling parameters.

    read_timeout defaults to poll_interval so a slow store read never
    outlives one polling tick.
    """

    poll_interval: float = Field(default=1.0, gt=0)
    read_timeout: Optional[float] = Field(default=None, gt=0)

    @property
    def effective_read_timeout(self) -> float:
        return self.read_timeout if self.read_timeout is not None else self.poll_interval


class AnalysisConfig(BaseModel):
    """AI analysis stage mode.

    transcript: analyse transcript + metadata (faster, cheaper)
    video: direct media analysis (slower, more accurate)
    """

    mode: Literal["transcript", "video"] = "transcript"


class KeyframeConfig(BaseModel):
    """Keyframe selection and extraction policy."""

    min_gap_seconds: float = Field(default=30.0, ge=0)
    max_count: Optional[int] = Field(default=15, ge=1)
    quality: int = Field(default=2, ge=1, le=31)
    max_width: int = 1280
    max_height: int = 720


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///vidsum.db"
    tmp_dir: Path = Path("tmp/jobs")
    cleanup_temp_files: bool = True

    @field_validator("tmp_dir", mode="before")
    @classmethod
    def convert_tmp_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000"]


class AuthConfig(BaseModel):
    """Static bearer tokens mapped to user ids."""

    tokens: dict[str, str] = {}


class LoggingConfig(BaseModel):
    level: str = "INFO"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: VIDSUM_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="VIDSUM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    pipeline: PipelineConfig = PipelineConfig()
    stream: StreamConfig = StreamConfig()
    analysis: AnalysisConfig = AnalysisConfig()
    keyframes: KeyframeConfig = KeyframeConfig()
    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()
    auth: AuthConfig = AuthConfig()
    logging: LoggingConfig = LoggingConfig()

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
        1. Init settings (explicit keyword arguments, used by tests)
        2. Environment variables
        3. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()
