"""Shared fixtures: in-memory stores, repository, buses and fakes."""

from __future__ import annotations

import pytest

from eventcore.config.cache_config import CacheConfig, reset_cache_config
from eventcore.config.cqrs_config import CommandBusConfig, reset_command_bus_config
from eventcore.config.dlq_config import reset_dlq_config
from eventcore.config.event_store_config import reset_event_store_config
from eventcore.config.pg_client_config import reset_postgres_config
from eventcore.config.redis_config import reset_redis_config
from eventcore.config.reliability_config import reset_reliability_settings
from eventcore.config.saga_config import reset_saga_config
from eventcore.config.snapshot_config import SnapshotConfig, reset_snapshot_config
from eventcore.infra.cqrs.authorization import Authorizer
from eventcore.infra.cqrs.command_bus import CommandBus
from eventcore.infra.cqrs.handler_registry import HandlerRegistry
from eventcore.infra.cqrs.query_bus import QueryBus
from eventcore.infra.event_store.aggregate_repository import AggregateRepository
from eventcore.infra.event_store.dlq_service import DLQService
from eventcore.infra.event_store.snapshot_store import InMemorySnapshotStore
from eventcore.infra.persistence.cache_manager import InMemoryReadModelStore, build_query_cache
from tests.fakes.fake_clock import FakeClock
from tests.fakes.fake_redis import FakeRedis
from tests.fakes.flaky_stores import FlakyEventStore
from tests.fakes.sample_domain import build_domain_registry, register_order_handlers


@pytest.fixture(autouse=True)
def fresh_config():
    """Settings getters are cached; start and end every test with a clean cache."""
    resets = (
        reset_cache_config, reset_command_bus_config, reset_dlq_config, reset_event_store_config,
        reset_postgres_config, reset_redis_config, reset_reliability_settings, reset_saga_config,
        reset_snapshot_config,
    )
    for reset in resets:
        reset()
    yield
    for reset in resets:
        reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps():
    """Delays requested by retry loops; nothing actually sleeps."""
    return []


@pytest.fixture
def no_sleep(sleeps):
    async def sleep(delay: float) -> None:
        sleeps.append(delay)
    return sleep


@pytest.fixture
def event_store() -> FlakyEventStore:
    return FlakyEventStore()


@pytest.fixture
def snapshot_store(clock) -> InMemorySnapshotStore:
    return InMemorySnapshotStore(SnapshotConfig(compression_min_bytes=256), clock=clock)


@pytest.fixture
def domain_registry():
    return build_domain_registry()


@pytest.fixture
def snapshot_config() -> SnapshotConfig:
    return SnapshotConfig(default_event_interval=10)


@pytest.fixture
async def repository(event_store, snapshot_store, domain_registry, snapshot_config, clock):
    repo = AggregateRepository(event_store, snapshot_store, domain_registry, config=snapshot_config, clock=clock)
    yield repo
    await repo.close()


@pytest.fixture
def handler_registry(repository) -> HandlerRegistry:
    registry = HandlerRegistry()
    register_order_handlers(registry, repository)
    return registry


@pytest.fixture
def dlq(clock) -> DLQService:
    return DLQService(clock=clock)


@pytest.fixture
def authorizer() -> Authorizer:
    return Authorizer({"admin": {"*"}, "support": {"order:cancel"}})


@pytest.fixture
async def command_bus(handler_registry, event_store, dlq, authorizer, no_sleep):
    bus = CommandBus(
        handler_registry,
        event_store=event_store,
        dlq=dlq,
        authorizer=authorizer,
        config=CommandBusConfig(default_timeout_seconds=5, worker_count=2),
        sleep=no_sleep,
    )
    yield bus
    await bus.close(drain=False)


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def read_models(clock) -> InMemoryReadModelStore:
    return InMemoryReadModelStore(clock)


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(key_prefix="test", l1_capacity=100, invalidation_coalesce_window_ms=10)


@pytest.fixture
def query_cache(cache_config, fake_redis, read_models, clock):
    return build_query_cache(cache_config, redis_client=fake_redis, read_model_store=read_models, clock=clock)


@pytest.fixture
def query_bus(handler_registry, query_cache, repository) -> QueryBus:
    bus = QueryBus(handler_registry, cache=query_cache)
    repository.add_commit_listener(bus.on_aggregate_committed)
    return bus
