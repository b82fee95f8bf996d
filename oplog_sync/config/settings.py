"""
Centralized configuration management for oplog-sync.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
Command-line flags override whatever is loaded here.
"""
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..replication.engine import EngineConfig
from ..replication.timestamps import from_parts


class StoreSettings(BaseSettings):
    """Connection settings shared by source and destination."""

    uri: str = Field(default="mongodb://localhost:27017", description="MongoDB connection URI")
    ssl: bool = Field(default=False, description="Connect with TLS")
    tls_allow_invalid_certificates: bool = Field(
        default=False,
        description="Skip TLS certificate verification"
    )
    username: Optional[str] = Field(default=None, description="Username, overrides the URI")
    password: Optional[str] = Field(default=None, description="Password")
    auth_mechanism: Optional[str] = Field(default=None, description="Authentication mechanism")
    timeout: int = Field(
        default=0,
        description="Timeout in seconds for db connections; 0 means 300s"
    )

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 0:
            raise ValueError("timeout must be non-negative")
        return v


class SourceSettings(StoreSettings):
    """Source deployment (the one whose oplog is read)."""

    model_config = SettingsConfigDict(
        env_prefix="SRC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class DestinationSettings(StoreSettings):
    """Destination deployment (the one receiving applyOps)."""

    model_config = SettingsConfigDict(
        env_prefix="DST_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class SyncSettings(BaseSettings):
    """Replication behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    since: int = Field(default=0, description="Seconds since the Unix epoch to start after")
    ordinal: int = Field(
        default=0,
        description="Incrementing ordinal for operations within the since second"
    )
    ignore_apply_error: bool = Field(default=False, description="Ignore errors applying oplog entries")
    fast_stop: bool = Field(default=False, description="Stop at the first idle tailing timeout")

    checkpoint_path: Optional[str] = Field(default=None, description="File path for the timestamp checkpoint")
    checkpoint_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL for a database-backed checkpoint (alternative to checkpoint_path)"
    )
    checkpoint_name: str = Field(default="default", description="Checkpoint row key for checkpoint_url")

    idle_timeout: float = Field(default=1.0, description="Seconds a tailing read waits for new entries")
    catch_up_batch_size: int = Field(default=0, description="Cursor batch size during catch-up; 0 = server default")
    prefetch_size: int = Field(default=0, description="Read-ahead queue capacity; 0 disables read-ahead")
    metrics_port: Optional[int] = Field(default=None, description="Expose Prometheus metrics on this port")

    @field_validator("since", "ordinal")
    @classmethod
    def validate_uint32(cls, v: int) -> int:
        if not 0 <= v <= 0xFFFFFFFF:
            raise ValueError("must fit in an unsigned 32-bit integer")
        return v

    @field_validator("idle_timeout")
    @classmethod
    def validate_idle_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("idle_timeout must be positive")
        return v

    @field_validator("catch_up_batch_size", "prefetch_size")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @model_validator(mode="after")
    def validate_checkpoint_backend(self) -> "SyncSettings":
        if self.checkpoint_path and self.checkpoint_url:
            raise ValueError("checkpoint_path and checkpoint_url are mutually exclusive")
        return self

    def engine_config(self) -> EngineConfig:
        """Build the engine configuration; ``since`` 0 means no explicit start."""
        since = from_parts(self.since, self.ordinal) if self.since > 0 else None
        return EngineConfig(
            since=since,
            ignore_apply_error=self.ignore_apply_error,
            fast_stop=self.fast_stop,
            prefetch_size=self.prefetch_size,
        )


class LoggingSettings(BaseSettings):
    """Process logging setup."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="Root log level")
    format: str = Field(default="json", description="json or text")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        allowed = {"json", "text"}
        if v.lower() not in allowed:
            raise ValueError(f"Log format must be one of: {allowed}")
        return v.lower()


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    source: SourceSettings = Field(default_factory=SourceSettings)
    destination: DestinationSettings = Field(default_factory=DestinationSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
