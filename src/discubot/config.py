"""Configuration management for Discubot."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "dev", "local", "test"})


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="discubot", description="Prefix for log file names")

    # Anthropic
    anthropic_api_key: SecretStr | None = Field(
        default=None, description="Anthropic API key for Claude"
    )
    claude_model: str = Field(
        default="claude-sonnet-4-5-20250929", description="Claude model used for analysis"
    )

    # Analysis
    analysis_summary_max_tokens: int = Field(
        default=1024, description="Max output tokens for the summary call"
    )
    analysis_task_max_tokens: int = Field(
        default=2048, description="Max output tokens for the task detection call"
    )
    analysis_timeout: float = Field(
        default=30.0, description="Timeout in seconds for a single analysis call"
    )
    analysis_max_tasks: int = Field(
        default=5, description="Default upper bound on detected tasks per discussion"
    )
    analysis_cache_ttl: int = Field(
        default=3600, description="Analysis cache TTL in seconds (default 1 hour)"
    )
    analysis_cache_max_entries: int = Field(
        default=1000, description="Maximum entries held by the in-process analysis cache"
    )

    # PostgreSQL
    postgres_dsn: str | None = Field(
        default=None,
        description="PostgreSQL connection string (in-memory storage when unset)",
    )
    flows_file: str | None = Field(
        default=None,
        description="JSON file of flows loaded into in-memory storage at start-up",
    )
    user_mappings_file: str | None = Field(
        default=None,
        description="JSON file of source-to-Notion user mappings loaded at start-up",
    )

    # HTTP API
    api_host: str = Field(
        default="0.0.0.0",  # nosec B104 - Intentional for Docker container
        description="Host the processing API binds to",
    )
    api_port: int = Field(default=8080, description="Port the processing API listens on")

    # Retry / back-off
    retry_max_attempts: int = Field(
        default=3, description="Maximum processing attempts per discussion"
    )
    retry_initial_delay: float = Field(
        default=1.0, description="Delay in seconds before the first retry"
    )
    retry_backoff_multiplier: float = Field(
        default=2.0, description="Multiplier applied to the delay after each attempt"
    )
    retry_max_delay: float = Field(default=60.0, description="Upper bound on the retry delay")

    # Integrations
    http_timeout: float = Field(
        default=30.0, description="Timeout in seconds for source and output HTTP calls"
    )
    reply_personality: str = Field(
        default="professional", description="Personality preset for confirmation replies"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the logging level name."""
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("retry_max_attempts", "analysis_max_tasks")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Counts must be at least one."""
        if v < 1:
            raise ValueError("Value must be >= 1")
        return v

    @field_validator("retry_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """A multiplier below one would shrink the delay between attempts."""
        if v < 1.0:
            raise ValueError("retry_backoff_multiplier must be >= 1.0")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in _DEVELOPMENT_ENVIRONMENTS

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
