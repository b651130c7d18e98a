from __future__ import annotations

import pytest

from eventcore.common.exceptions.exceptions import StorageUnavailableError, UnauthorizedError
from eventcore.config.reliability_config import RetryConfig
from eventcore.infra.reliability.retry import calculate_delay_ms, get_jitter_strategy, retry_async


def no_jitter(**overrides) -> RetryConfig:
    return RetryConfig(jitter=False, **overrides)


class Failing:
    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


async def test_retries_until_success(no_sleep, sleeps):
    func = Failing(2, StorageUnavailableError("blip"))
    hooks = []

    async def on_retry(attempt, error, delay):
        hooks.append(attempt)

    result = await retry_async(
        func, "done",
        retry_config=no_jitter(max_attempts=3, initial_delay_ms=100, backoff_factor=2),
        sleep=no_sleep,
        on_retry=on_retry,
    )

    assert result == "done"
    assert func.calls == 3
    assert hooks == [1, 2]
    assert sleeps == [0.1, 0.2]


async def test_reraises_last_error_when_exhausted(no_sleep):
    func = Failing(5, StorageUnavailableError("down"))

    with pytest.raises(StorageUnavailableError):
        await retry_async(func, "x", retry_config=no_jitter(max_attempts=2), sleep=no_sleep)

    assert func.calls == 2


async def test_permanent_errors_are_not_retried(no_sleep, sleeps):
    func = Failing(1, UnauthorizedError("nope"))

    with pytest.raises(UnauthorizedError):
        await retry_async(func, "x", retry_config=no_jitter(max_attempts=5), sleep=no_sleep)

    assert func.calls == 1
    assert sleeps == []


async def test_custom_retry_condition(no_sleep):
    func = Failing(1, ValueError("flaky parse"))
    config = no_jitter(max_attempts=2, retry_condition=lambda e: isinstance(e, ValueError))

    assert await retry_async(func, "ok", retry_config=config, sleep=no_sleep) == "ok"


@pytest.mark.parametrize("attempt, expected", [(1, 100), (2, 200), (3, 400), (6, 1000)])
def test_backoff_is_exponential_and_capped(attempt, expected):
    config = no_jitter(initial_delay_ms=100, backoff_factor=2, max_delay_ms=1000)

    assert calculate_delay_ms(config, attempt) == expected


def test_full_jitter_stays_within_base_delay():
    config = RetryConfig(initial_delay_ms=100, jitter=True, jitter_type="full")
    strategy = get_jitter_strategy("full")

    for attempt in range(1, 5):
        assert 0 <= calculate_delay_ms(config, attempt, strategy) <= calculate_delay_ms(config, attempt)
