# =============================================================================
# File: eventcore/infra/event_store/snapshot_strategy.py
# Description: Snapshot policies (fixed count, time based, adaptive)
#
# A strategy only decides. Writing the snapshot, and recovering when that
# fails, is the repository's job.
# =============================================================================

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from statistics import mean
from typing import Any, Dict, Optional, Sequence

from eventcore.config.snapshot_config import SnapshotConfig, SnapshotStrategyType

log = logging.getLogger("eventcore.event_store.snapshot_strategy")


class SnapshotTriggerReason(Enum):
    """Reasons why a snapshot was (or was not) triggered"""
    EVENT_INTERVAL = auto()
    TIME_INTERVAL = auto()
    ADAPTIVE_SCORE = auto()
    LATENCY_TREND = auto()
    MAX_EVENTS = auto()
    NOT_DUE = auto()
    NO_NEW_EVENTS = auto()


@dataclass
class SnapshotContext:
    """Inputs to a snapshot decision for one aggregate"""
    aggregate_id: str
    events_since_last_snapshot: int
    elapsed_since_last_snapshot: Optional[float] = None
    load_latency_history: Sequence[float] = ()
    aggregate_type: str = ""


@dataclass
class SnapshotDecision:
    """Result of snapshot decision logic"""
    should_create: bool
    reason: SnapshotTriggerReason
    details: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class SnapshotStrategy(ABC):
    """Base class for snapshot policies."""

    name: str = "base"

    def __init__(self, config: Optional[SnapshotConfig] = None):
        self.config = config or SnapshotConfig()

    @abstractmethod
    def decide(self, context: SnapshotContext) -> SnapshotDecision:
        ...

    def should_snapshot(
            self,
            aggregate_id: str,
            events_since_last_snapshot: int,
            elapsed_since_last_snapshot: Optional[float] = None,
            load_latency_history: Sequence[float] = (),
            aggregate_type: str = "",
    ) -> bool:
        decision = self.decide(SnapshotContext(
            aggregate_id=aggregate_id,
            events_since_last_snapshot=events_since_last_snapshot,
            elapsed_since_last_snapshot=elapsed_since_last_snapshot,
            load_latency_history=load_latency_history,
            aggregate_type=aggregate_type,
        ))
        return decision.should_create


class FixedCountSnapshotStrategy(SnapshotStrategy):
    """Snapshot once N events have accumulated since the last snapshot."""

    name = "fixed_count"

    def __init__(self, config: Optional[SnapshotConfig] = None, interval: Optional[int] = None):
        super().__init__(config)
        self._interval = interval

    def interval_for(self, aggregate_type: str) -> int:
        if self._interval is not None:
            return self._interval
        return self.config.get_event_interval(aggregate_type)

    def decide(self, context: SnapshotContext) -> SnapshotDecision:
        interval = self.interval_for(context.aggregate_type)
        if context.events_since_last_snapshot >= interval:
            return SnapshotDecision(
                True,
                SnapshotTriggerReason.EVENT_INTERVAL,
                f"{context.events_since_last_snapshot} events since last snapshot (interval {interval})",
            )
        return SnapshotDecision(
            False,
            SnapshotTriggerReason.NOT_DUE,
            f"{context.events_since_last_snapshot}/{interval} events",
        )


class TimeBasedSnapshotStrategy(SnapshotStrategy):
    """
    Snapshot once the threshold has elapsed since the last snapshot,
    whatever the event count (at least one new event is required).
    """

    name = "time_based"

    def __init__(self, config: Optional[SnapshotConfig] = None, threshold_seconds: Optional[float] = None):
        super().__init__(config)
        self.threshold_seconds = threshold_seconds or self.config.time_interval_seconds

    def decide(self, context: SnapshotContext) -> SnapshotDecision:
        if context.events_since_last_snapshot <= 0:
            return SnapshotDecision(False, SnapshotTriggerReason.NO_NEW_EVENTS, "no events since last snapshot")

        elapsed = context.elapsed_since_last_snapshot
        if elapsed is not None and elapsed >= self.threshold_seconds:
            return SnapshotDecision(
                True,
                SnapshotTriggerReason.TIME_INTERVAL,
                f"{elapsed:.0f}s since last snapshot (threshold {self.threshold_seconds:.0f}s)",
            )
        return SnapshotDecision(False, SnapshotTriggerReason.NOT_DUE, f"elapsed={elapsed}")


class AdaptiveSnapshotStrategy(SnapshotStrategy):
    """
    Weighs accumulated events against observed replay latency.

        score = event_weight * events / N + latency_weight * mean_latency / target

    A snapshot is taken when score >= 1.0, when replay latency is trending
    up (mean of the newest third of samples above trend_factor times the
    oldest third), or when `adaptive_max_events` is reached. Without latency
    samples the strategy behaves as fixed-count.
    """

    name = "adaptive"

    def __init__(self, config: Optional[SnapshotConfig] = None):
        super().__init__(config)
        self._fallback = FixedCountSnapshotStrategy(self.config)

    def decide(self, context: SnapshotContext) -> SnapshotDecision:
        events = context.events_since_last_snapshot
        history = [float(x) for x in context.load_latency_history]

        if events < max(self.config.adaptive_min_events, 1):
            return SnapshotDecision(False, SnapshotTriggerReason.NO_NEW_EVENTS, f"{events} events")

        if events >= self.config.adaptive_max_events:
            return SnapshotDecision(True, SnapshotTriggerReason.MAX_EVENTS, f"{events} events reached maximum")

        if not history:
            return self._fallback.decide(context)

        interval = self._fallback.interval_for(context.aggregate_type)
        mean_latency = mean(history)
        score = (
            self.config.adaptive_event_weight * events / interval
            + self.config.adaptive_latency_weight * mean_latency / self.config.adaptive_target_latency_ms
        )
        metadata = {"score": round(score, 4), "mean_latency_ms": round(mean_latency, 3)}

        if score >= 1.0:
            return SnapshotDecision(
                True, SnapshotTriggerReason.ADAPTIVE_SCORE, f"score {score:.2f} >= 1.0", metadata
            )

        trend = self.latency_trend(history)
        if trend is not None:
            metadata["trend"] = round(trend, 4)
            if trend > self.config.adaptive_trend_factor:
                return SnapshotDecision(
                    True,
                    SnapshotTriggerReason.LATENCY_TREND,
                    f"replay latency trending up x{trend:.2f}",
                    metadata,
                )

        return SnapshotDecision(False, SnapshotTriggerReason.NOT_DUE, f"score {score:.2f}", metadata)

    def latency_trend(self, history: Sequence[float]) -> Optional[float]:
        """Ratio of the newest third's mean to the oldest third's mean."""
        if len(history) < max(self.config.adaptive_min_samples, 3):
            return None
        third = len(history) // 3
        older = mean(history[:third])
        recent = mean(history[-third:])
        if older <= 0:
            return None
        return recent / older


def create_snapshot_strategy(config: Optional[SnapshotConfig] = None) -> SnapshotStrategy:
    """Build the strategy selected by SnapshotConfig.strategy."""
    config = config or SnapshotConfig()
    strategies = {
        SnapshotStrategyType.FIXED_COUNT: FixedCountSnapshotStrategy,
        SnapshotStrategyType.TIME_BASED: TimeBasedSnapshotStrategy,
        SnapshotStrategyType.ADAPTIVE: AdaptiveSnapshotStrategy,
    }
    strategy = strategies[config.strategy](config)
    log.info(f"Snapshot strategy: {strategy.name} (event interval {config.default_event_interval})")
    return strategy
