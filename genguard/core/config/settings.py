#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
generation resilience service. Every threshold used by the health tracker,
recovery orchestrator, dead-letter store and worker lives here.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Easy testing with override mechanisms (``reload_settings`` or direct construction)

Units: all durations are seconds, all costs are US dollars.
"""

import socket
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from genguard.core.config import constants as c


class HealthSettings(BaseSettings):
    """
    Circuit breaker / health tracker thresholds.

    STAGE-CB: Token bucket, sliding window and adaptive timeout
    """

    HEALTH_OPEN_TOKENS: int = Field(default=c.OPEN_TOKENS, ge=1, description="Failure tokens that open the breaker")
    HEALTH_REFILL_SECONDS: float = Field(default=c.REFILL_SECONDS, gt=0, description="Seconds per decayed token")
    HEALTH_OPEN_DURATION_SECONDS: float = Field(default=c.OPEN_DURATION_SECONDS, gt=0, description="Open duration")
    HEALTH_WINDOW_SIZE: int = Field(default=c.WINDOW_SIZE, ge=1, description="Sliding window length")
    HEALTH_WINDOW_MIN_SAMPLES: int = Field(default=c.WINDOW_MIN_SAMPLES, ge=1, description="Samples before rate rule")
    HEALTH_WINDOW_FAILURE_RATE: float = Field(default=c.WINDOW_FAILURE_RATE, gt=0, le=1, description="Trip rate")
    HEALTH_RECOVERY_SUCCESS_COUNT: int = Field(default=c.RECOVERY_SUCCESS_COUNT, ge=1, description="Successes to close")
    HEALTH_HALF_OPEN_SAMPLE_RATE: float = Field(default=c.HALF_OPEN_SAMPLE_RATE, ge=0, le=1, description="Half-open admit rate")
    HEALTH_MIN_TIMEOUT_SECONDS: float = Field(default=c.MIN_TIMEOUT_SECONDS, gt=0, description="Timeout floor")
    HEALTH_MAX_TIMEOUT_SECONDS: float = Field(default=c.MAX_TIMEOUT_SECONDS, gt=0, description="Timeout ceiling")
    HEALTH_TIMEOUT_BUFFER_SECONDS: float = Field(default=c.TIMEOUT_BUFFER_SECONDS, ge=0, description="Added to P95")
    HEALTH_JOB_DEADLINE_BUFFER_SECONDS: float = Field(
        default=c.JOB_DEADLINE_BUFFER_SECONDS, ge=0, description="Extra time before a registered job is stale"
    )
    HEALTH_STATS_WINDOW_SECONDS: float = Field(default=c.STATS_WINDOW_SECONDS, gt=0, description="Latency window")
    HEALTH_DEFAULT_LATENCY_SECONDS: float = Field(default=c.DEFAULT_LATENCY_SECONDS, gt=0, description="Empty-window P")
    HEALTH_MAX_RECOVERY_BATCH_SIZE: int = Field(default=c.MAX_RECOVERY_BATCH_SIZE, ge=1, le=5, description="Batch cap")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)

    @model_validator(mode="after")
    def check_timeout_bounds(self):
        """Reject a floor above the ceiling."""
        if self.HEALTH_MIN_TIMEOUT_SECONDS > self.HEALTH_MAX_TIMEOUT_SECONDS:
            raise ValueError("HEALTH_MIN_TIMEOUT_SECONDS must not exceed HEALTH_MAX_TIMEOUT_SECONDS")
        return self


class RecoverySettings(BaseSettings):
    """
    Recovery probe scheduling and budget.

    STAGE-RP: Jittered probes under an hourly dollar cap
    """

    RECOVERY_PROBE_INTERVAL_SECONDS: float = Field(default=c.PROBE_INTERVAL_SECONDS, gt=0, description="Base interval")
    RECOVERY_PROBE_JITTER: float = Field(default=c.PROBE_JITTER, ge=0, lt=1, description="Jitter fraction")
    RECOVERY_HOURLY_BUDGET: float = Field(default=c.HOURLY_PROBE_BUDGET, ge=0, description="USD per trailing hour")
    RECOVERY_PROBE_COST: float = Field(default=c.PROBE_COST_ESTIMATE, gt=0, description="USD per probe")
    RECOVERY_PROBE_TIMEOUT_SECONDS: float = Field(default=c.PROBE_TIMEOUT_SECONDS, gt=0, description="Probe timeout")
    RECOVERY_BUDGET_RETRY_SECONDS: float = Field(default=c.BUDGET_RETRY_SECONDS, gt=0, description="Over-budget delay")
    RECOVERY_MONITOR_INTERVAL_SECONDS: float = Field(default=c.MONITOR_INTERVAL_SECONDS, gt=0, description="Monitor tick")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class DeadLetterSettings(BaseSettings):
    """Dead-letter store capacity and expiry."""

    DLQ_MAX_SIZE: int = Field(default=c.DLQ_MAX_SIZE, ge=1, description="Maximum quarantined jobs")
    DLQ_MAX_ATTEMPTS: int = Field(default=c.DLQ_MAX_ATTEMPTS, ge=1, description="Attempts before ops are alerted")
    DLQ_JOB_EXPIRY_SECONDS: float = Field(default=c.DLQ_JOB_EXPIRY_SECONDS, gt=0, description="Entry TTL")
    DLQ_CLEANUP_INTERVAL_SECONDS: float = Field(default=c.DLQ_CLEANUP_INTERVAL_SECONDS, gt=0, description="Sweep")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class WorkerSettings(BaseSettings):
    """
    Polling worker configuration.

    STAGE-Q: Poll cadence, concurrency caps and retry backoff
    """

    WORKER_ID: str = Field(default_factory=socket.gethostname, description="Stable worker identity")
    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=c.POLL_INTERVAL_SECONDS, gt=0, description="Poll cadence")
    WORKER_MAX_CONCURRENT_JOBS: int = Field(default=c.MAX_CONCURRENT_JOBS, ge=1, le=10, description="Global cap")
    WORKER_MAX_JOBS_PER_USER: int = Field(default=c.MAX_JOBS_PER_USER, ge=1, description="Per-user cap")
    WORKER_BATCH_SIZE: int = Field(default=c.POLL_BATCH_SIZE, ge=1, description="Rows fetched per poll")
    WORKER_INITIAL_BACKOFF_SECONDS: float = Field(default=c.INITIAL_BACKOFF_SECONDS, gt=0, description="Backoff base")
    WORKER_BACKOFF_MULTIPLIER: float = Field(default=c.BACKOFF_MULTIPLIER, ge=1, description="Backoff growth")
    WORKER_MAX_BACKOFF_SECONDS: float = Field(default=c.MAX_BACKOFF_SECONDS, gt=0, description="Backoff cap")
    WORKER_DEFAULT_MAX_RETRIES: int = Field(default=c.DEFAULT_MAX_RETRIES, ge=0, description="Retries per job")
    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = Field(default=c.SHUTDOWN_TIMEOUT_SECONDS, gt=0, description="Drain wait")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CreditSettings(BaseSettings):
    """Credit accounting per generation attempt."""

    CREDITS_COST_PER_JOB: int = Field(default=c.CREDIT_COST_PER_JOB, ge=0, description="Credits per attempt")
    CREDITS_DEFAULT_BALANCE: int = Field(default=0, ge=0, description="Starting balance for the in-memory ledger")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RedisSettings(BaseSettings):
    """
    Redis configuration for the job store and event publishing.

    STAGE-0.1: Redis connection configuration
    """

    REDIS_ENABLED: bool = Field(default=False, description="Use Redis for jobs and events")
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum total connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """
    General application settings.

    STAGE-0: Application initialization
    """

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="GenGuard Generation Queue", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")
    API_BASE_PATH: str = Field(default="/api/v1", description="Prefix for all API routes")
    GENGUARD_GENERATOR: str | None = Field(
        default=None, description="Import path 'module:callable' of the generation function"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(
    HealthSettings,
    RecoverySettings,
    DeadLetterSettings,
    WorkerSettings,
    CreditSettings,
    RedisSettings,
    LoggingSettings,
    ApplicationSettings,
):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from genguard.core.config.settings import get_settings

        settings = get_settings()
        open_tokens = settings.health.HEALTH_OPEN_TOKENS
        poll = settings.worker.WORKER_POLL_INTERVAL_SECONDS

    Every section field is also available flat on ``Settings`` itself.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
    )

    def _section(self, section_cls):
        values = {name: getattr(self, name) for name in section_cls.model_fields}
        return section_cls.model_construct(**values)

    # Nested configuration views
    @property
    def health(self) -> HealthSettings:
        return self._section(HealthSettings)

    @property
    def recovery(self) -> RecoverySettings:
        return self._section(RecoverySettings)

    @property
    def dead_letter(self) -> DeadLetterSettings:
        return self._section(DeadLetterSettings)

    @property
    def worker(self) -> WorkerSettings:
        return self._section(WorkerSettings)

    @property
    def credits(self) -> CreditSettings:
        return self._section(CreditSettings)

    @property
    def redis(self) -> RedisSettings:
        return self._section(RedisSettings)

    @property
    def logging(self) -> LoggingSettings:
        return self._section(LoggingSettings)

    @property
    def app(self) -> ApplicationSettings:
        return self._section(ApplicationSettings)


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.3: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
