"""Configuration management for resilient-sse.

This module provides the value types that tune each resilience primitive
(retry, heartbeat, circuit breaker, timeouts) and the Settings class that
loads process-wide defaults from environment variables and .env files.

All durations are integer milliseconds. They are converted to seconds only
where they meet asyncio.

Example:
    RESILIENT_SSE_LOG_LEVEL=DEBUG
    RESILIENT_SSE_RETRY__MAX_RETRIES=5
    RESILIENT_SSE_TIMEOUT__IDLE_MS=10000
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryConfig(BaseModel):
    """Retry strategy configuration with exponential backoff."""

    max_retries: int = Field(
        default=3, ge=0, description="Maximum number of retry attempts before giving up"
    )
    initial_delay_ms: int = Field(
        default=1000, ge=0, description="Delay in milliseconds before the first retry"
    )
    max_delay_ms: int = Field(
        default=30000, ge=0, description="Cap on the delay between retries in milliseconds"
    )
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Multiplier for exponential backoff"
    )
    jitter: bool = Field(default=True, description="Add random jitter to each delay")
    jitter_factor: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Maximum jitter as a fraction of the delay",
    )


class HeartbeatConfig(BaseModel):
    """Heartbeat configuration for keeping idle connections alive."""

    interval_ms: int = Field(
        default=5000, gt=0, description="Interval between heartbeat comments in milliseconds"
    )
    enabled: bool = Field(default=True, description="Whether heartbeats are sent")
    message: str = Field(default="heartbeat", description="Text carried by the comment frame")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds."""

    failure_threshold: int = Field(
        default=3, ge=1, description="Consecutive failures before the circuit opens"
    )
    reset_timeout_ms: int = Field(
        default=30000, ge=0, description="Time in open state before probing (half_open)"
    )
    success_threshold: int = Field(
        default=1, ge=1, description="Successes in half_open required to close the circuit"
    )


class TimeoutConfig(BaseModel):
    """Timeouts for a streaming request."""

    request_ms: int = Field(
        default=120000, ge=0, description="Total request deadline (0 disables it)"
    )
    idle_ms: int = Field(
        default=30000, ge=0, description="Maximum gap between chunks (0 disables it)"
    )


class StreamConfig(BaseModel):
    """Complete stream configuration."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    circuit_breaker: CircuitBreakerConfig | None = Field(default_factory=CircuitBreakerConfig)
    timeout: TimeoutConfig | None = Field(default_factory=TimeoutConfig)


class Settings(BaseSettings):
    """Process-wide settings.

    Settings can be configured via environment variables with the
    RESILIENT_SSE_ prefix, or via a .env file. Nested models use a double
    underscore, e.g. RESILIENT_SSE_HEARTBEAT__INTERVAL_MS=15000.
    """

    model_config = SettingsConfigDict(
        env_prefix="RESILIENT_SSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Logging settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format",
    )

    # Resilience defaults
    retry: RetryConfig = Field(default_factory=RetryConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    breaker_ttl_ms: int = Field(
        default=5 * 60 * 1000,
        gt=0,
        description="Inactivity window after which a shared breaker is evicted",
    )

    # Update vocabulary
    complete_phase: str = Field(default="complete", description="Phase tag for results")
    error_phase: str = Field(default="error", description="Phase tag for errors")

    # Parser
    parse_error_preview_chars: int = Field(
        default=120, ge=1, description="Raw line length reported with parse failures"
    )

    def stream_config(self) -> StreamConfig:
        """Build a StreamConfig from these settings."""
        return StreamConfig(
            retry=self.retry,
            heartbeat=self.heartbeat,
            circuit_breaker=self.circuit_breaker,
            timeout=self.timeout,
        )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance.

    Returns:
        The global Settings instance, created on first access.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure_settings(**overrides: Any) -> Settings:
    """Configure settings with overrides.

    Args:
        **overrides: Setting values to override.

    Returns:
        New Settings instance with overrides applied.
    """
    global _settings
    _settings = Settings(**overrides)
    return _settings


DEFAULT_RETRY_CONFIG = RetryConfig()
DEFAULT_HEARTBEAT_CONFIG = HeartbeatConfig()
DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()
DEFAULT_TIMEOUT_CONFIG = TimeoutConfig()


__all__ = [
    "CircuitBreakerConfig",
    "DEFAULT_CIRCUIT_BREAKER_CONFIG",
    "DEFAULT_HEARTBEAT_CONFIG",
    "DEFAULT_RETRY_CONFIG",
    "DEFAULT_TIMEOUT_CONFIG",
    "HeartbeatConfig",
    "RetryConfig",
    "Settings",
    "StreamConfig",
    "TimeoutConfig",
    "configure_settings",
    "get_settings",
]
