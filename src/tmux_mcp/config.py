"""Configuration management for tmux-mcp."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os
import tempfile

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TmuxMcpSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    tmux_path: str | None = Field(default=None, validation_alias="TMUX_PATH")
    session_suffix: str = Field(default="-MCP", validation_alias="TMUX_MCP_SESSION_SUFFIX")
    default_session: str = Field(default="default", validation_alias="TMUX_MCP_DEFAULT_SESSION")
    start_directory: str = Field(default="/tmp", validation_alias="TMUX_MCP_START_DIRECTORY")
    artifact_dir: Path = Field(
        default=Path(tempfile.gettempdir()) / "tmux-mcp",
        validation_alias="TMUX_MCP_ARTIFACT_DIR",
    )
    poll_interval: float = Field(default=0.1, validation_alias="TMUX_MCP_POLL_INTERVAL")
    command_timeout: float = Field(default=30.0, validation_alias="TMUX_MCP_COMMAND_TIMEOUT")
    adapter_timeout: float = Field(default=10.0, validation_alias="TMUX_MCP_ADAPTER_TIMEOUT")
    max_retries: int = Field(default=2, validation_alias="TMUX_MCP_MAX_RETRIES")
    retry_delay: float = Field(default=1.0, validation_alias="TMUX_MCP_RETRY_DELAY")
    create_attempts: int = Field(default=3, validation_alias="TMUX_MCP_CREATE_ATTEMPTS")
    create_retry_delay: float = Field(default=0.5, validation_alias="TMUX_MCP_CREATE_RETRY_DELAY")
    idle_threshold_minutes: float = Field(
        default=30.0, validation_alias="TMUX_MCP_IDLE_THRESHOLD_MINUTES"
    )
    health_check_interval: float = Field(
        default=300.0, validation_alias="TMUX_MCP_HEALTH_CHECK_INTERVAL"
    )
    cleanup_interval: float = Field(default=600.0, validation_alias="TMUX_MCP_CLEANUP_INTERVAL")
    stale_artifact_minutes: float = Field(
        default=30.0, validation_alias="TMUX_MCP_STALE_ARTIFACT_MINUTES"
    )
    background_cleanup: bool = Field(default=True, validation_alias="TMUX_MCP_BACKGROUND_CLEANUP")
    layout_paths: tuple[Path, ...] = Field(
        default=(Path("layouts"),), validation_alias="TMUX_MCP_LAYOUT_PATHS"
    )
    history_enabled: bool = Field(default=True, validation_alias="TMUX_MCP_HISTORY_ENABLED")
    history_persist_path: Path = Field(
        default=Path("./storage/history"), validation_alias="TMUX_MCP_HISTORY_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="TMUX_MCP_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TMUX_MCP_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("layout_paths", mode="before")
    @classmethod
    def _parse_layout_paths(cls, value):
        if value is None or value == "":
            return (Path("layouts"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("layouts"),)
        raise TypeError("TMUX_MCP_LAYOUT_PATHS must be a list of paths or a path-separated string")

    @field_validator(
        "poll_interval",
        "command_timeout",
        "adapter_timeout",
        "idle_threshold_minutes",
        "health_check_interval",
        "cleanup_interval",
        "stale_artifact_minutes",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("intervals and timeouts must be > 0")
        return value

    @field_validator("retry_delay", "create_retry_delay")
    @classmethod
    def _validate_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("retry delays must be >= 0")
        return value

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("TMUX_MCP_MAX_RETRIES must be >= 0")
        return value

    @field_validator("create_attempts")
    @classmethod
    def _validate_create_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("TMUX_MCP_CREATE_ATTEMPTS must be >= 1")
        return value

    @field_validator("session_suffix")
    @classmethod
    def _validate_suffix(cls, value: str) -> str:
        if any(char in value for char in ".: \t"):
            raise ValueError("TMUX_MCP_SESSION_SUFFIX must not contain '.', ':' or whitespace")
        return value


@lru_cache(maxsize=1)
def get_settings() -> TmuxMcpSettings:
    """Return cached settings instance."""

    settings = TmuxMcpSettings()
    settings.artifact_dir = settings.artifact_dir.expanduser().resolve()
    settings.history_persist_path = settings.history_persist_path.expanduser().resolve()
    settings.layout_paths = tuple(path.expanduser().resolve() for path in settings.layout_paths)
    return settings


__all__ = ["TmuxMcpSettings", "get_settings"]
