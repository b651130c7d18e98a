# =============================================================================
# File: eventcore/infra/reliability/retry.py
# Description: Retry mechanism with exponential backoff and jitter
# =============================================================================

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

from eventcore.common.exceptions.exceptions import is_retryable
from eventcore.config.reliability_config import RetryConfig
from eventcore.infra.metrics.circuit_breaker import retry_attempts

logger = logging.getLogger("eventcore.retry")

T = TypeVar('T')

SleepFn = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, BaseException, float], Awaitable[None]]


# Jitter strategies
class JitterStrategy(ABC):
    """Base class for jitter strategies."""

    @abstractmethod
    def apply(self, base_delay: float) -> float:
        """Apply jitter to base delay."""


class FullJitter(JitterStrategy):
    """Full jitter: delay = random(0, base_delay)."""

    def apply(self, base_delay: float) -> float:
        return random.uniform(0, base_delay)


class EqualJitter(JitterStrategy):
    """Equal jitter: delay = base_delay/2 + random(0, base_delay/2)."""

    def apply(self, base_delay: float) -> float:
        half = base_delay / 2
        return half + random.uniform(0, half)


class DecorrelatedJitter(JitterStrategy):
    """Decorrelated jitter with memory of previous delay."""

    def __init__(self):
        self.previous_delay: Optional[float] = None

    def apply(self, base_delay: float) -> float:
        if self.previous_delay is None:
            self.previous_delay = base_delay
        self.previous_delay = random.uniform(base_delay, self.previous_delay * 3)
        return self.previous_delay


def get_jitter_strategy(jitter_type: str) -> JitterStrategy:
    """Get jitter strategy by name."""
    strategies = {
        'full': FullJitter,
        'equal': EqualJitter,
        'decorrelated': DecorrelatedJitter,
    }
    return strategies.get(jitter_type, FullJitter)()


def calculate_delay_ms(
        retry_config: RetryConfig,
        attempt: int,
        jitter_strategy: Optional[JitterStrategy] = None,
) -> float:
    """Backoff before the retry that follows `attempt` (1-based)."""
    base_delay_ms = min(
        retry_config.initial_delay_ms * (retry_config.backoff_factor ** (attempt - 1)),
        retry_config.max_delay_ms
    )
    if jitter_strategy is not None:
        return jitter_strategy.apply(base_delay_ms)
    return base_delay_ms


async def retry_async(
        func: Callable[..., Awaitable[T]],
        *args,
        retry_config: Optional[RetryConfig] = None,
        context: str = "operation",
        sleep: SleepFn = asyncio.sleep,
        on_retry: Optional[RetryHook] = None,
        **kwargs
) -> T:
    """
    Execute async function with retry logic.

    Only errors accepted by `retry_config.retry_condition` (default:
    `is_retryable`) are retried. The last error is re-raised once
    `max_attempts` is reached.
    """
    if retry_config is None:
        retry_config = RetryConfig()

    retry_condition = retry_config.retry_condition or is_retryable
    jitter_strategy = get_jitter_strategy(retry_config.jitter_type) if retry_config.jitter else None

    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            if not retry_condition(e):
                logger.debug(f"Not retrying {context} after attempt {attempt}: {type(e).__name__} is permanent")
                raise

            if attempt >= retry_config.max_attempts:
                logger.warning(
                    f"Retry exhausted for {context} after {attempt} attempts. Last error: {e}"
                )
                raise

            delay_seconds = calculate_delay_ms(retry_config, attempt, jitter_strategy) / 1000
            retry_attempts.labels(context=context.split(":")[0]).inc()

            logger.info(
                f"Retry attempt {attempt}/{retry_config.max_attempts} for {context} "
                f"after error: {e}. Waiting {delay_seconds:.2f}s before retry."
            )

            if on_retry is not None:
                await on_retry(attempt, e, delay_seconds)
            await sleep(delay_seconds)
