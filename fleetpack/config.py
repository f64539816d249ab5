"""Configuration settings for fleetpack.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ARTIFACT_STORE_URL = (
    "https://buildomat.eng.oxide.computer/public/file/oxidecomputer"
)


def _default_download_dir() -> Path:
    """Return the default prebuilt download cache directory."""
    return Path.home() / ".cache" / "fleetpack" / "downloads"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "fleetpack" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the FLEETPACK_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETPACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    manifest_path: Path = Field(
        default=Path("package-manifest.toml"),
        description="Package manifest to load",
    )
    base_dir: Path = Field(
        default=Path("."),
        description="Directory that relative source paths are resolved against",
    )
    output_dir: Path = Field(
        default=Path("out"),
        description="Root directory for package outputs (one subdirectory per package)",
    )
    manual_dir: Path | None = Field(
        default=None,
        description="Directory of manually supplied artifacts (default: output_dir)",
    )
    download_dir: Path = Field(
        default_factory=_default_download_dir,
        description="Cache directory for verified prebuilt downloads",
    )
    service_manifest_dir: Path = Field(
        default=Path("smf"),
        description="Directory with one service-manifest subdirectory per service",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build records",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - do not fetch prebuilt artifacts",
    )
    fail_fast: bool = Field(
        default=False,
        description="Cancel unrelated work after the first package failure",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent obtain/compose tasks",
    )

    # Prebuilt artifact store
    artifact_store_url: str = Field(
        default=DEFAULT_ARTIFACT_STORE_URL,
        description="Base URL of the prebuilt artifact store",
    )
    fetch_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per prebuilt fetch before giving up",
    )
    fetch_initial_backoff: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first retry (seconds)",
    )
    fetch_backoff_multiplier: float = Field(
        default=2.0,
        ge=1,
        description="Backoff growth factor between retries",
    )
    fetch_max_backoff: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound on a single retry delay (seconds)",
    )

    # Toolchain
    toolchain_command: str = Field(
        default="cargo",
        description="Command used to build local binaries",
    )
    cargo_target_dir: Path | None = Field(
        default=None,
        description="Toolchain target directory (defaults to <base_dir>/target)",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single prebuilt download",
    )
    build_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single toolchain build",
    )

    @property
    def effective_manual_dir(self) -> Path:
        """Directory searched for manual artifacts."""
        return self.manual_dir if self.manual_dir is not None else self.output_dir


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


__all__ = [
    "DEFAULT_ARTIFACT_STORE_URL",
    "Settings",
    "get_settings",
    "print_settings_json",
]
