# =============================================================================
# File: eventcore/config/reliability_config.py
# Description: Reliability configuration for circuit breakers and retry
# =============================================================================

from functools import lru_cache
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


# =============================================================================
# Configuration Models
# =============================================================================

class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration."""
    name: str
    failure_threshold: int = 5
    success_threshold: int = 3
    reset_timeout_seconds: float = 30
    half_open_max_calls: int = 3
    window_size: Optional[int] = None
    failure_rate_threshold: Optional[float] = None
    # Calls that must be in the window before the failure rate is evaluated
    minimum_request_volume: int = 10


class RetryConfig(BaseModel):
    """Retry configuration (also used as a per-command retry policy)."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 10000
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_type: str = "full"
    retry_condition: Optional[Callable[[BaseException], bool]] = Field(default=None, exclude=True)


# =============================================================================
# Reliability settings (loads from env)
# =============================================================================

class ReliabilitySettings(BaseConfig):
    """
    Global reliability defaults loaded from environment.
    Named breakers are created from these through CircuitBreakerRegistry.
    """

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'RELIABILITY_'},
    )

    default_circuit_breaker_threshold: int = Field(default=5)
    default_circuit_breaker_timeout: float = Field(default=30)
    default_circuit_breaker_success_threshold: int = Field(default=3)
    default_half_open_max_calls: int = Field(default=3)
    default_window_size: int = Field(default=20)
    default_failure_rate_threshold: float = Field(default=0.5)
    default_minimum_request_volume: int = Field(default=10)

    default_retry_max_attempts: int = Field(default=3)
    default_retry_initial_delay_ms: int = Field(default=100)
    default_retry_max_delay_ms: int = Field(default=10000)
    default_retry_backoff_factor: float = Field(default=2.0)
    default_retry_jitter_type: str = Field(default="full")

    enable_circuit_breakers: bool = Field(default=True)
    enable_retries: bool = Field(default=True)

    def circuit_breaker(self, name: str, **overrides) -> CircuitBreakerConfig:
        """Build a breaker config from the global defaults."""
        values = dict(
            name=name,
            failure_threshold=self.default_circuit_breaker_threshold,
            success_threshold=self.default_circuit_breaker_success_threshold,
            reset_timeout_seconds=self.default_circuit_breaker_timeout,
            half_open_max_calls=self.default_half_open_max_calls,
            window_size=self.default_window_size,
            failure_rate_threshold=self.default_failure_rate_threshold,
            minimum_request_volume=self.default_minimum_request_volume,
        )
        values.update(overrides)
        return CircuitBreakerConfig(**values)

    def retry(self, **overrides) -> RetryConfig:
        values = dict(
            max_attempts=self.default_retry_max_attempts,
            initial_delay_ms=self.default_retry_initial_delay_ms,
            max_delay_ms=self.default_retry_max_delay_ms,
            backoff_factor=self.default_retry_backoff_factor,
            jitter_type=self.default_retry_jitter_type,
        )
        values.update(overrides)
        return RetryConfig(**values)


@lru_cache(maxsize=1)
def get_reliability_settings() -> ReliabilitySettings:
    """Get global reliability settings (cached)."""
    return ReliabilitySettings()


def reset_reliability_settings() -> None:
    """Reset settings singleton (for testing)."""
    get_reliability_settings.cache_clear()
