"""Configuration settings for cnb_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cnb_imagegen.types import PullPolicy

DEFAULT_BUILDER = "paketobuildpacks/builder-noble-java-tiny:latest"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CNB_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CNB_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Engine
    docker_host: str = Field(
        default="unix:///var/run/docker.sock",
        description="Container engine endpoint (unix:// socket or tcp:// address)",
    )
    engine_api_version: str = Field(
        default="1.41",
        description="Docker Engine API version used in request paths",
    )
    engine_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for individual engine API requests (seconds)",
    )
    bind_host_to_builder: bool = Field(
        default=False,
        description="Bind the configured engine socket into daemon lifecycle phases",
    )

    # Build defaults
    default_builder: str = Field(
        default=DEFAULT_BUILDER,
        description="Builder image used when a request does not name one",
    )
    pull_policy: PullPolicy = Field(
        default=PullPolicy.ALWAYS,
        description="Default image pull policy",
    )
    phase_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Maximum wait for a single lifecycle phase (seconds, None = no limit)",
    )

    # Paths
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for archives (uses system default if not set)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DEFAULT_BUILDER", "Settings", "get_settings", "print_settings_json"]
