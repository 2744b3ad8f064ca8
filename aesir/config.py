"""Configuration settings for aesir.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    """Return the default data directory."""
    return Path.home() / ".local" / "share" / "aesir"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the AESIR_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="AESIR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(
        default_factory=_default_data_dir,
        description="Root directory for the flash history database",
    )
    db_url: str = Field(
        default="",
        description="Database connection URL (defaults to SQLite under data_dir)",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Staging directory for external backends (system temp if unset)",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    auto_reboot: bool = Field(
        default=True,
        description="Reboot the device after a successful flash",
    )

    # Backends
    preferred_backend: Literal["auto", "heimdall", "odin4", "native"] = Field(
        default="auto",
        description="Backend preference; auto prefers an external tool on PATH",
    )
    heimdall_path: str | None = Field(
        default=None,
        description="Explicit path to the heimdall executable",
    )
    odin4_path: str | None = Field(
        default=None,
        description="Explicit path to the odin4 executable",
    )
    pit_file: Path | None = Field(
        default=None,
        description="PIT file for backends that cannot read it from the device",
    )
    native_protocol: str | None = Field(
        default=None,
        description="Dotted 'module:callable' returning a native download protocol",
    )
    packet_size: int = Field(
        default=128 * 1024,
        ge=512,
        description="Native backend transfer packet size in bytes",
    )
    sequence_packets: int = Field(
        default=800,
        ge=1,
        description="Packets per native transfer sequence",
    )

    # Device discovery
    usb_vendor_id: str = Field(
        default="04e8",
        pattern=r"^[0-9a-fA-F]{4}$",
        description="USB vendor id of download-mode devices",
    )
    lsusb_path: str = Field(
        default="lsusb",
        description="USB listing helper used for discovery",
    )
    device_probe_interval: float = Field(
        default=2.0,
        ge=0.5,
        le=60,
        description="Background device re-scan interval in seconds",
    )

    # Privilege escalation
    credential_prompt: Literal["auto", "graphical", "terminal"] = Field(
        default="auto",
        description="Credential prompt selection",
    )
    elevate_external: bool = Field(
        default=False,
        description="Treat external backends as requiring elevated access up front",
    )

    # Timeouts (in seconds)
    detect_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for discovery and detection commands",
    )
    flash_timeout: int = Field(
        default=1800,
        ge=60,
        description="Timeout for one external partition transfer",
    )
    prompt_timeout: int = Field(
        default=120,
        ge=5,
        description="Timeout for credential prompts and validation",
    )

    @model_validator(mode="after")
    def _fill_db_url(self) -> "Settings":
        if not self.db_url:
            self.db_url = f"sqlite:///{self.data_dir / 'history.sqlite'}"
        return self


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
