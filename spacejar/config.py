"""Configuration settings for spacejar.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_IMAGE = "python:3.9-slim"


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "spacejar"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SPACEJAR_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPACEJAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the layer and config cache",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for builds (uses system default if not set)",
    )

    # Image
    base_image: str = Field(
        default=DEFAULT_BASE_IMAGE,
        description="Base image reference used when none is given",
    )
    compression_level: int = Field(
        default=6,
        ge=1,
        le=9,
        description="Fixed gzip level for built layers",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Registry
    registry_username: str | None = Field(
        default=None,
        description="Username sent to the registry token endpoint",
    )
    registry_password: SecretStr | None = Field(
        default=None,
        description="Password or access token sent to the registry token endpoint",
    )
    max_concurrent_downloads: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent blob downloads within one image pull",
    )
    max_idle_connections: int = Field(
        default=5,
        ge=1,
        description="Maximum idle keep-alive connections per client",
    )

    # Timeouts (in seconds)
    connect_timeout: float = Field(
        default=60,
        gt=0,
        description="Timeout for establishing registry connections",
    )
    request_timeout: float = Field(
        default=300,
        gt=0,
        description="Timeout for reading registry responses",
    )
    pool_idle_timeout: float = Field(
        default=90,
        gt=0,
        description="How long idle connections are kept alive",
    )
    build_timeout: int = Field(
        default=1800,
        ge=60,
        description="Timeout for each virtualenv or pip command",
    )

    # Python tooling
    python_executable: str = Field(
        default="python",
        description="Interpreter used to create the virtualenv and run pip",
    )
    upgrade_pip: bool = Field(
        default=True,
        description="Upgrade pip inside the new virtualenv",
    )

    # Cache
    cache_max_age_days: int = Field(
        default=30,
        ge=0,
        description="Default age after which cache entries are pruned",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

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


__all__ = ["DEFAULT_BASE_IMAGE", "Settings", "get_settings", "print_settings_json"]
