# =============================================================================
# File: eventcore/infra/reliability/circuit_breaker.py
# Description: Circuit breaker pattern implementation
# =============================================================================

import asyncio
import logging
from collections import deque
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, Optional, TypeVar

from eventcore.common.exceptions.exceptions import CircuitBreakerOpenError
from eventcore.config.reliability_config import CircuitBreakerConfig, ReliabilitySettings
from eventcore.infra.metrics.circuit_breaker import (
    circuit_breaker_call_duration,
    circuit_breaker_failures,
    circuit_breaker_rejections,
    circuit_breaker_state,
    circuit_breaker_trips,
)
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock

logger = logging.getLogger("eventcore.circuit_breaker")

T = TypeVar('T')

_STATE_GAUGE_VALUES = {"CLOSED": 0, "OPEN": 1, "HALF_OPEN": 2}


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()


class CircuitBreaker(Generic[T]):
    """
    Circuit breaker guarding calls to an external dependency.

    CLOSED -> OPEN when consecutive failures reach `failure_threshold`, or
    when the failure rate over the last `window_size` calls reaches
    `failure_rate_threshold` with at least `minimum_request_volume` calls
    in the window. OPEN rejects without calling until
    `reset_timeout_seconds` have elapsed, then admits up to
    `half_open_max_calls` trial calls. Enough successes close the circuit;
    any failure while HALF_OPEN reopens it.
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Clock = SYSTEM_CLOCK):
        self.name = config.name
        self.config = config
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at: Optional[float] = None
        self._total_calls = 0
        self._total_rejections = 0

        self._call_metrics: Optional[Deque[bool]] = None
        if config.window_size:
            self._call_metrics = deque(maxlen=config.window_size)

        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute function with circuit breaker protection."""
        async with self._lock:
            if not self._can_execute():
                self._total_rejections += 1
                circuit_breaker_rejections.labels(name=self.name).inc()
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is OPEN",
                    details={"circuit_breaker": self.name},
                )
            self._total_calls += 1

        start_time = self._clock.monotonic()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self._on_failure(self._clock.monotonic() - start_time, str(e))
            raise
        await self._on_success(self._clock.monotonic() - start_time)
        return result

    def can_execute(self) -> bool:
        """Check if operation can be executed (does not reserve a half-open slot)."""
        if self._state == CircuitState.OPEN:
            return self._should_attempt_reset()
        if self._state == CircuitState.HALF_OPEN:
            return self._half_open_calls < self.config.half_open_max_calls
        return True

    def _can_execute(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if not self._should_attempt_reset():
                return False
            self._transition_to_half_open()

        if self._half_open_calls < self.config.half_open_max_calls:
            self._half_open_calls += 1
            return True
        return False

    async def _on_success(self, duration: float) -> None:
        async with self._lock:
            if self._call_metrics is not None:
                self._call_metrics.append(True)

            self._failure_count = 0
            self._success_count += 1
            circuit_breaker_call_duration.labels(name=self.name, result='success').observe(duration)

            if self._state == CircuitState.HALF_OPEN:
                needed = min(self.config.success_threshold, self.config.half_open_max_calls)
                if self._success_count >= needed:
                    self._transition_to_closed()

    async def _on_failure(self, duration: float, error_details: Optional[str] = None) -> None:
        async with self._lock:
            if self._call_metrics is not None:
                self._call_metrics.append(False)

            self._failure_count += 1
            if error_details:
                logger.debug(f"Circuit breaker {self.name} failure: {error_details}")

            circuit_breaker_failures.labels(name=self.name).inc()
            circuit_breaker_call_duration.labels(name=self.name, result='failure').observe(duration)

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self._state == CircuitState.CLOSED and self._should_trip():
                self._transition_to_open()

    def _should_trip(self) -> bool:
        if self._failure_count >= self.config.failure_threshold:
            return True
        if (self.config.failure_rate_threshold is not None and
                self._call_metrics is not None and
                len(self._call_metrics) >= self.config.minimum_request_volume):
            return self._calculate_failure_rate() >= self.config.failure_rate_threshold
        return False

    def _calculate_failure_rate(self) -> float:
        """Calculate current failure rate from sliding window."""
        if not self._call_metrics:
            return 0.0
        failures = sum(1 for success in self._call_metrics if not success)
        return failures / len(self._call_metrics)

    def _should_attempt_reset(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock.monotonic() - self._opened_at >= self.config.reset_timeout_seconds

    def _transition_to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = None
        if self._call_metrics is not None:
            self._call_metrics.clear()
        logger.info(f"circuit_breaker_closed for {self.name}")
        circuit_breaker_state.labels(name=self.name).set(_STATE_GAUGE_VALUES["CLOSED"])

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = self._clock.monotonic()
        logger.warning(f"circuit_breaker_opened for {self.name} after {self._failure_count} failures")
        circuit_breaker_state.labels(name=self.name).set(_STATE_GAUGE_VALUES["OPEN"])
        circuit_breaker_trips.labels(name=self.name).inc()

    def _transition_to_half_open(self) -> None:
        self._state = CircuitState.HALF_OPEN
        self._half_open_calls = 0
        self._success_count = 0
        logger.info(f"circuit_breaker_half_open for {self.name}")
        circuit_breaker_state.labels(name=self.name).set(_STATE_GAUGE_VALUES["HALF_OPEN"])

    async def reset(self) -> None:
        """Force the breaker back to CLOSED (operator action)."""
        async with self._lock:
            self._transition_to_closed()

    def get_metrics(self) -> Dict[str, Any]:
        """Get circuit breaker metrics."""
        return {
            "name": self.name,
            "state": self._state.name,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "half_open_calls": self._half_open_calls,
            "failure_rate": self._calculate_failure_rate(),
            "total_calls": self._total_calls,
            "total_rejections": self._total_rejections,
            "config": self.config.model_dump(),
        }


class CircuitBreakerRegistry:
    """
    Named circuit breakers owned by the application.

    Built once at startup and handed to the command bus; handlers obtain
    breakers for their external dependencies from it.
    """

    def __init__(self, settings: Optional[ReliabilitySettings] = None, clock: Clock = SYSTEM_CLOCK):
        self._settings = settings or ReliabilitySettings()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None, **overrides) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            if config is None:
                config = self._settings.circuit_breaker(name, **overrides)
            breaker = CircuitBreaker(config, clock=self._clock)
            self._breakers[name] = breaker
            logger.debug(f"Created circuit breaker {name}")
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_metrics() for name, cb in self._breakers.items()}

