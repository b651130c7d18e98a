from __future__ import annotations

import pytest

from eventcore.common.exceptions.exceptions import CircuitBreakerOpenError, ErrorKind, StorageUnavailableError
from eventcore.config.reliability_config import CircuitBreakerConfig, ReliabilitySettings
from eventcore.infra.reliability.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState


class Dependency:
    def __init__(self):
        self.healthy = True
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if not self.healthy:
            raise StorageUnavailableError("down")
        return "ok"


@pytest.fixture
def dependency() -> Dependency:
    return Dependency()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        name="payments",
        failure_threshold=3,
        success_threshold=2,
        reset_timeout_seconds=30,
        half_open_max_calls=2,
    )
    return CircuitBreaker(config, clock=clock)


async def fail_times(breaker, dependency, n: int) -> None:
    dependency.healthy = False
    for _ in range(n):
        with pytest.raises(StorageUnavailableError):
            await breaker.call(dependency)


async def test_opens_after_consecutive_failures(breaker, dependency):
    await fail_times(breaker, dependency, 3)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.call(dependency)
    assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN
    assert dependency.calls == 3
    assert breaker.get_metrics()["total_rejections"] == 1


async def test_success_resets_consecutive_failure_count(breaker, dependency):
    await fail_times(breaker, dependency, 2)
    dependency.healthy = True
    await breaker.call(dependency)
    await fail_times(breaker, dependency, 2)

    assert breaker.state == CircuitState.CLOSED


async def test_recovers_through_half_open(breaker, dependency, clock):
    await fail_times(breaker, dependency, 3)
    clock.advance(29)
    assert not breaker.can_execute()

    clock.advance(1)
    dependency.healthy = True
    assert breaker.can_execute()
    assert await breaker.call(dependency) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    await breaker.call(dependency)

    assert breaker.state == CircuitState.CLOSED


async def test_failure_while_half_open_reopens(breaker, dependency, clock):
    await fail_times(breaker, dependency, 3)
    clock.advance(30)

    await fail_times(breaker, dependency, 1)

    assert breaker.state == CircuitState.OPEN
    assert not breaker.can_execute()


async def test_failure_rate_window_trips_breaker(clock, dependency):
    breaker = CircuitBreaker(
        CircuitBreakerConfig(
            name="search",
            failure_threshold=100,
            window_size=4,
            failure_rate_threshold=0.5,
            minimum_request_volume=4,
        ),
        clock=clock,
    )
    for healthy in (True, False, True, False):
        dependency.healthy = healthy
        try:
            await breaker.call(dependency)
        except StorageUnavailableError:
            pass

    assert breaker.state == CircuitState.OPEN


async def test_reset_closes_immediately(breaker, dependency):
    await fail_times(breaker, dependency, 3)

    await breaker.reset()

    assert breaker.state == CircuitState.CLOSED


def test_registry_returns_one_breaker_per_name(clock):
    registry = CircuitBreakerRegistry(ReliabilitySettings(default_circuit_breaker_threshold=7), clock=clock)

    first = registry.get_or_create("redis")
    again = registry.get_or_create("redis", failure_threshold=1)
    other = registry.get_or_create("postgres", failure_threshold=2)

    assert first is again
    assert first.config.failure_threshold == 7
    assert other.config.failure_threshold == 2
    assert set(registry.get_all_metrics()) == {"redis", "postgres"}
