"""Configuration management for Offline Mail Sync.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FULL_SYNC_QUERIES: tuple[str, ...] = (
    "in:inbox",
    "label:PENDING",
    "label:TODO",
    "label:SNOOZED",
    "is:starred",
    "in:sent",
)


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAIL_SYNC_ prefix (e.g., MAIL_SYNC_CACHE_MAX_SIZE_MB).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAIL_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Cache Configuration
    cache_enabled: bool = Field(
        default=True,
        description="Keep a local cache of threads and write sync results into it",
    )
    cache_max_size_mb: int = Field(
        default=500,
        ge=1,
        description="Cache budget in megabytes; the cache is pruned after every sync",
    )
    cache_db_path: Path = Field(
        default=Path.home() / ".offline-mail-sync" / "cache.sqlite3",
        description="Path to the SQLite database holding the cache and the offline queues",
    )

    # Sync Engine Configuration
    sync_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Fast poll interval: snooze check and incremental sync",
    )
    populate_interval_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Slow poll interval: background population of message bodies",
    )
    populate_batch_size: int = Field(
        default=10,
        ge=1,
        description="Metadata-only threads upgraded to full bodies per population run",
    )
    populate_delay_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Delay between population requests to avoid bursting the remote API",
    )
    refresh_batch_size: int = Field(
        default=20,
        ge=1,
        description="Concurrent thread re-fetches per batch during incremental sync",
    )
    full_sync_queries: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FULL_SYNC_QUERIES),
        description="Search queries fetched during a full sync",
    )
    full_sync_max_results: int = Field(
        default=100,
        ge=1,
        description="Maximum threads fetched per full sync query",
    )
    remote_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Single-attempt timeout for user-initiated remote mutations",
    )
    max_replay_attempts: int = Field(
        default=5,
        ge=1,
        description="Failed queue items are replayed on reconnect until they reach this many attempts",
    )
    account_email: str | None = Field(
        default=None,
        description="Account owner address; defaults to the address reported by the remote profile",
    )

    # Gmail Configuration
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API credentials file",
    )
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to Gmail API token file",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.modify",
        description=(
            "OAuth scope used for Gmail access. Label changes, archiving and sending "
            "need gmail.modify."
        ),
    )

    signature_html: str = Field(
        default="",
        description="HTML signature appended to outgoing mail that asks for one",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @property
    def cache_max_bytes(self) -> int:
        """Cache budget in bytes."""
        return self.cache_max_size_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
