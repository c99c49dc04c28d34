"""Application configuration using Pydantic Settings."""

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from jobsync.orchestration.polling import PollingOptions


class Settings(BaseSettings):
    """Sync layer settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Backend
    api_base_url: str = "http://localhost:8000/api"
    """Base URL of the workbook processing backend."""

    api_timeout: float = 30.0
    """Request timeout in seconds for request/response calls."""

    api_token: str | None = None
    """Bearer token forwarded on every request. Optional."""

    # Error Tracking
    sentry_dsn: str | None = None
    """Sentry DSN for escalated sync errors. Optional."""

    # Environment
    environment: str = "development"
    """Current environment (development, staging, production)."""

    debug: bool = False
    """Enable debug mode."""

    log_format: str | None = None
    """Logging format override (json or console). Defaults by environment."""

    # Polling
    status_poll_interval_ms: int = 2000
    """Interval between job status polls while a job is active."""

    status_poll_max_attempts: int = 150
    """Hard ceiling of status polls before giving up (five minutes at 2s)."""

    queue_poll_interval_ms: int = 5000
    """Interval between processing queue snapshots."""

    queue_position_poll_interval_ms: int = 5000
    """Interval between queue position polls."""

    poll_failure_escalation_threshold: int = 3
    """Consecutive failed polls before the failure is escalated."""

    # Streaming
    stream_initial_backoff_ms: int = 1000
    """First reconnect delay after a log stream drops."""

    stream_max_backoff_ms: int = 30000
    """Upper bound for the doubling reconnect delay."""

    stream_max_reconnect_attempts: int = 5
    """Consecutive reconnect failures before subscribers see a StreamError."""

    log_backfill_limit: int = 50
    """Number of recent log events loaded before a stream connects."""

    # Cache
    cache_max_entries: int | None = None
    """LRU ceiling for cached entries. Unbounded when unset."""

    @field_validator("cache_max_entries", mode="before")
    @classmethod
    def parse_cache_max_entries(cls, value: object) -> object:
        """Treat an empty string as "no ceiling"."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "status_poll_interval_ms",
        "status_poll_max_attempts",
        "queue_poll_interval_ms",
        "queue_position_poll_interval_ms",
        "poll_failure_escalation_threshold",
        "stream_initial_backoff_ms",
        "stream_max_backoff_ms",
        "stream_max_reconnect_attempts",
        "log_backfill_limit",
    )
    @classmethod
    def require_positive(cls, value: int) -> int:
        """Reject zero and negative timing values."""
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "Settings":
        """Ensure the backoff cap is not below the initial delay."""
        if self.stream_max_backoff_ms < self.stream_initial_backoff_ms:
            raise ValueError(
                "STREAM_MAX_BACKOFF_MS must be >= STREAM_INITIAL_BACKOFF_MS"
            )
        if self.cache_max_entries is not None and self.cache_max_entries <= 0:
            raise ValueError("CACHE_MAX_ENTRIES must be positive when set")
        return self

    def polling_options(self, kind: str) -> "PollingOptions":
        """Return polling options for a cache key kind.

        Args:
            kind: First component of a cache key (job, queue, queue-position).

        Returns:
            PollingOptions configured for that kind.

        Raises:
            KeyError: If the kind is not polled.
        """
        from jobsync.orchestration.polling import PollingOptions, always_poll

        if kind == "job":
            return PollingOptions(
                interval_ms=self.status_poll_interval_ms,
                max_attempts=self.status_poll_max_attempts,
            )
        if kind == "queue":
            return PollingOptions(
                interval_ms=self.queue_poll_interval_ms,
                should_poll=always_poll,
            )
        if kind == "queue-position":
            return PollingOptions(
                interval_ms=self.queue_position_poll_interval_ms,
                should_poll=always_poll,
            )
        raise KeyError(f"No polling options for key kind: {kind}")


try:
    settings = Settings()
except Exception as exc:
    env_file = Path(".env")
    suggestions = [
        "Interval, backoff and attempt values must be positive integers.",
        "STREAM_MAX_BACKOFF_MS must not be lower than STREAM_INITIAL_BACKOFF_MS.",
        "CACHE_MAX_ENTRIES may be left empty for an unbounded cache.",
    ]

    raise RuntimeError(
        "Failed to initialize sync settings. "
        f"Check environment variables in {env_file.resolve() if env_file.exists() else '.env'}.\n"
        + f"Error: {exc}\n"
        + "\n".join(suggestions)
    ) from exc
