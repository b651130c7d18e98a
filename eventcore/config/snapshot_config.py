# =============================================================================
# File: eventcore/config/snapshot_config.py
# Description: Configuration for automatic aggregate snapshots
# =============================================================================

from enum import Enum
from functools import lru_cache
from typing import Dict

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class SnapshotStrategyType(str, Enum):
    FIXED_COUNT = "fixed_count"
    TIME_BASED = "time_based"
    ADAPTIVE = "adaptive"


class SnapshotConfig(BaseConfig):
    """
    Configuration for automatic snapshots.
    """

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'SNAPSHOT_'},
    )

    # =========================================================================
    # Global Snapshot Settings
    # =========================================================================
    enable_auto_snapshots: bool = Field(default=True, description="Evaluate the strategy after every save")
    enable_async_snapshots: bool = Field(default=True, description="Create snapshots in background tasks")
    strategy: SnapshotStrategyType = Field(default=SnapshotStrategyType.FIXED_COUNT)

    # =========================================================================
    # Strategy Triggers
    # =========================================================================
    default_event_interval: int = Field(default=10, description="Create snapshot every N events")
    time_interval_seconds: float = Field(default=3600.0, description="Time-based threshold")
    aggregate_event_intervals: Dict[str, int] = Field(
        default_factory=dict,
        description="Per aggregate type event interval overrides"
    )

    # Adaptive strategy
    adaptive_event_weight: float = Field(default=0.6)
    adaptive_latency_weight: float = Field(default=0.4)
    adaptive_target_latency_ms: float = Field(default=100.0, description="Replay latency considered acceptable")
    adaptive_trend_factor: float = Field(default=1.5, description="Recent/older latency ratio that forces a snapshot")
    adaptive_min_samples: int = Field(default=3, description="Latency samples required for trend detection")
    adaptive_min_events: int = Field(default=1, description="Never snapshot with fewer new events than this")
    adaptive_max_events: int = Field(default=1000, description="Always snapshot once this many events accumulate")
    latency_history_size: int = Field(default=20)

    # =========================================================================
    # Storage
    # =========================================================================
    compression_enabled: bool = Field(default=True)
    compression_min_bytes: int = Field(default=1024, description="Skip compression for small states")
    compression_level: int = Field(default=6)
    keep_snapshots_count: int = Field(default=3, description="Snapshots retained per aggregate")
    snapshot_timeout_seconds: float = Field(default=30.0)
    max_concurrent_snapshots: int = Field(default=5)

    # =========================================================================
    # Repository
    # =========================================================================
    tracked_aggregates_capacity: int = Field(
        default=10000,
        description="Aggregates whose snapshot marks and load latencies are kept in memory"
    )
    batch_load_concurrency: int = Field(default=10, description="Concurrent loads in load_many()")

    def get_event_interval(self, aggregate_type: str) -> int:
        return self.aggregate_event_intervals.get(aggregate_type, self.default_event_interval)


@lru_cache(maxsize=1)
def get_snapshot_config() -> SnapshotConfig:
    """Get snapshot configuration (cached)."""
    return SnapshotConfig()


def reset_snapshot_config() -> None:
    """Reset config singleton (for testing)."""
    get_snapshot_config.cache_clear()


def validate_snapshot_config(config: SnapshotConfig) -> None:
    """Validate snapshot configuration for common issues."""
    if config.default_event_interval < 1:
        raise ValueError("default_event_interval must be at least 1")
    if config.time_interval_seconds <= 0:
        raise ValueError("time_interval_seconds must be positive")
    if config.keep_snapshots_count < 1:
        raise ValueError("keep_snapshots_count must be at least 1")
    if not 0 <= config.compression_level <= 9:
        raise ValueError("compression_level must be between 0 and 9")
    if config.tracked_aggregates_capacity < 1:
        raise ValueError("tracked_aggregates_capacity must be at least 1")
    if config.batch_load_concurrency < 1:
        raise ValueError("batch_load_concurrency must be at least 1")
    if config.adaptive_trend_factor <= 1.0:
        raise ValueError("adaptive_trend_factor must be greater than 1.0")
