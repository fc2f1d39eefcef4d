"""
Configuration management for the MDT streaming engine.

Uses pydantic-settings for type-safe environment variable handling.
Session identifiers are loaded from environment variables or the persisted
session state - never from files in repo.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Session identifiers use SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_prefix="MDT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Application environment",
    )

    # Control surface
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8766, ge=1024, le=65535, description="Server port")

    # Data paths
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for persisted session state",
    )
    state_file: Path | None = Field(
        default=None,
        description="Session state file (defaults to <data_dir>/session_state.json)",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # Streaming venue
    ws_url: str = Field(
        default="ws://127.0.0.1:9688/websocket",
        description="Broadcast WebSocket endpoint",
    )
    ws_open_timeout_s: float = Field(
        default=10.0,
        description="Timeout for the WebSocket opening handshake",
        gt=0,
        le=120,
    )
    ws_ping_interval_s: float | None = Field(
        default=20.0,
        description="Keepalive ping interval (None disables pings)",
    )
    auto_login_delay_ms: int = Field(
        default=500,
        description="Delay between transport open and the automatic login request",
        ge=0,
        le=10000,
    )
    auto_connect_on_start: bool = Field(
        default=True,
        description="Reconnect at startup when the previous run ended logged in",
    )
    notification_log_size: int = Field(
        default=500,
        description="Number of notifications kept for the control surface",
        ge=10,
        le=10000,
    )

    # Default session credentials (used until the operator saves others)
    default_gscid: str = Field(default="KS02", description="Default GSCID")
    default_gcid: str = Field(default="218", description="Default GCID")
    default_session_id: SecretStr = Field(
        default=SecretStr("dummy-session"),
        description="Default session id",
    )
    default_device_id: str = Field(default="dummy-device", description="Default device id")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Only WebSocket schemes are accepted."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URL: {v}")
        return v

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Ensure data directory exists."""
        v.mkdir(parents=True, exist_ok=True)
        return v.resolve()

    @property
    def resolved_state_file(self) -> Path:
        """Path of the session state file."""
        if self.state_file is not None:
            return self.state_file
        return self.data_dir / "session_state.json"

    @property
    def auto_login_delay_s(self) -> float:
        """Auto-login delay in seconds."""
        return self.auto_login_delay_ms / 1000.0

    def get_redacted_config(self) -> dict[str, str | int | bool]:
        """
        Get configuration dict with sensitive values redacted.
        Safe for logging and API responses.
        """
        return {
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "data_dir": str(self.data_dir),
            "state_file": str(self.resolved_state_file),
            "log_level": self.log_level,
            "ws_url": self.ws_url,
            "auto_login_delay_ms": self.auto_login_delay_ms,
            "auto_connect_on_start": self.auto_connect_on_start,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout application.
    """
    return Settings()


def get_settings_dep() -> Settings:
    """
    Dependency for FastAPI routes to get settings.
    Allows for easy dependency override in tests.
    """
    return get_settings()
