"""Configuration settings for bundlesmith.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bundlesmith.types import CacheMode


def _default_cache_dir() -> Path:
    """Return the default local cache storage directory."""
    return Path.home() / ".cache" / "bundlesmith" / "storage"


def _default_work_dir() -> Path:
    """Return the default build workspace directory."""
    return Path.home() / ".cache" / "bundlesmith" / "work"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "bundlesmith" / "history.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUNDLESMITH_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUNDLESMITH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    output_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "XCFrameworks",
        description="Directory receiving bundles and version records",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the local cache storage",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-product build workspaces",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build history",
    )

    # Cache
    cache_mode: CacheMode = Field(
        default=CacheMode.PROJECT,
        description="Cache mode: disabled, project or storage",
    )
    remote_cache_url: str | None = Field(
        default=None,
        description="Base URL of a remote HTTP cache storage",
    )
    lock_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds to wait for a per-product build lock",
    )

    # Toolchain
    compiler_command: list[str] = Field(
        default_factory=lambda: ["swift-framework-build"],
        description="Command invoked to compile one platform slice",
    )
    merge_command: list[str] = Field(
        default_factory=lambda: ["xcodebuild"],
        description="Command invoked to merge slices into one bundle",
    )
    toolchain_version: str | None = Field(
        default=None,
        description="Toolchain version override (detected when not set)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum products built at the same time",
    )
    max_concurrent_tasks: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum platform slices compiled at the same time per product",
    )
    toolchain_exclusive: bool = Field(
        default=False,
        description="Serialize every compiler invocation behind one global lock",
    )
    stop_on_first_error: bool = Field(
        default=False,
        description="Cancel remaining products after the first failure",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for one compiler invocation",
    )
    merge_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for one merge tool invocation",
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


__all__ = ["Settings", "get_settings", "print_settings_json"]
