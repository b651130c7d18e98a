from __future__ import annotations

import logging

import asyncpg
import pytest

from eventcore.bootstrap import initialize_event_core
from eventcore.config.cache_config import CacheConfig
from eventcore.config.cqrs_config import CommandBusConfig
from eventcore.config.dlq_config import DLQConfig
from eventcore.config.event_store_config import EventStoreConfig
from eventcore.config.pg_client_config import PostgresConfig
from eventcore.config.reliability_config import ReliabilitySettings
from eventcore.config.saga_config import SagaConfig
from eventcore.config.snapshot_config import SnapshotConfig
from eventcore.infra.event_store.dlq_service import InMemoryDeadLetterStore, PostgresDeadLetterStore
from eventcore.infra.event_store.event_archival import EventArchiver
from eventcore.infra.event_store.event_store import InMemoryEventStore
from eventcore.infra.event_store.pg_event_store import PostgresEventStore
from eventcore.infra.event_store.snapshot_store import PostgresSnapshotStore
from eventcore.infra.persistence.cache_manager import PostgresReadModelStore
from eventcore.infra.persistence.pg_client import PostgresClient
from eventcore.infra.saga.saga_state_store import InMemorySagaStateStore, PostgresSagaStateStore
from tests.fakes.fake_pg import FakePgPool
from tests.fakes.sample_domain import ORDER, GetOrder, PlaceOrder, build_domain_registry, register_order_handlers


def configs(backend: str = "memory") -> dict:
    return dict(
        event_store_config=EventStoreConfig(backend=backend),
        snapshot_config=SnapshotConfig(),
        cache_config=CacheConfig(key_prefix="boot"),
        command_bus_config=CommandBusConfig(worker_count=1),
        dlq_config=DLQConfig(backend=backend),
        saga_config=SagaConfig(state_backend=backend),
        reliability=ReliabilitySettings(),
    )


@pytest.fixture
async def core(clock, fake_redis):
    core = await initialize_event_core(
        build_domain_registry(),
        register_handlers=register_order_handlers,
        redis_client=fake_redis,
        clock=clock,
        **configs(),
    )
    yield core
    await core.shutdown()


async def test_memory_backends_are_wired_end_to_end(core):
    result = await core.command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))
    view = await core.query_bus.execute(GetOrder(order_id="order-1"))

    assert result.succeeded
    assert view.customer_id == "customer-1"
    assert isinstance(core.event_store, InMemoryEventStore)
    assert isinstance(core.dlq.store, InMemoryDeadLetterStore)
    assert isinstance(core.saga_state_store, InMemorySagaStateStore)
    assert [tier.name for tier in core.query_cache.tiers] == ["l1", "l2", "l3"]
    assert core.pg_client is None


async def test_commits_invalidate_query_cache(core):
    await core.command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))
    await core.query_bus.execute(GetOrder(order_id="order-1"))

    order, _ = await core.repository.load("order-1", ORDER)
    order.add_item("sku-1", 1, 2.0)
    await core.repository.save(order)
    view = await core.query_bus.execute(GetOrder(order_id="order-1"))

    assert view.version == 2
    assert "cache" in core.get_metrics()["query_bus"]


async def test_postgres_backends_share_the_given_client(clock):
    client = PostgresClient(clock=clock)

    core = await initialize_event_core(
        build_domain_registry(),
        pg_client=client,
        recover_sagas=False,
        clock=clock,
        **configs("postgres"),
    )
    try:
        assert isinstance(core.event_store, PostgresEventStore)
        assert isinstance(core.snapshot_store, PostgresSnapshotStore)
        assert isinstance(core.read_model_store, PostgresReadModelStore)
        assert isinstance(core.dlq.store, PostgresDeadLetterStore)
        assert isinstance(core.saga_state_store, PostgresSagaStateStore)
        assert core.pg_client is client
        health = await core.health_check()
        assert health["postgres"]["is_healthy"] is False
        assert not health["is_healthy"]
    finally:
        await core.shutdown()

    assert not client.is_started


async def test_unknown_backend_is_rejected(clock):
    bad = configs()
    bad["dlq_config"] = DLQConfig(backend="mongo")

    with pytest.raises(ValueError, match="Unknown storage backend"):
        await initialize_event_core(build_domain_registry(), clock=clock, **bad)


async def test_health_check_reports_redis(core, fake_redis):
    healthy = await core.health_check()
    fake_redis.fail("ping")
    degraded = await core.health_check()

    assert healthy["is_healthy"]
    assert healthy["redis"]["redis_version"] == "7.2.0-fake"
    assert "postgres" not in healthy
    assert not degraded["is_healthy"]
    assert not degraded["redis"]["ping_successful"]


async def test_invalid_snapshot_config_fails_startup(clock):
    bad = configs()
    bad["snapshot_config"] = SnapshotConfig(adaptive_trend_factor=0.5)

    with pytest.raises(ValueError, match="adaptive_trend_factor"):
        await initialize_event_core(build_domain_registry(), clock=clock, **bad)


async def test_startup_logs_effective_config_without_secrets(clock, monkeypatch, caplog):
    pool = FakePgPool()
    monkeypatch.setattr(asyncpg, "create_pool", pool.create_pool)
    caplog.set_level(logging.INFO, logger="eventcore.startup")

    core = await initialize_event_core(
        build_domain_registry(),
        postgres_config=PostgresConfig(dsn="postgresql://app:hunter2@db:5432/events"),
        clock=clock,
        **configs("postgres"),
    )
    await core.shutdown()

    logged = [r.getMessage() for r in caplog.records if r.name == "eventcore.startup"]
    sections = [m.split(":")[0] for m in logged if m.startswith("eventcore config [")]
    assert sections == [
        "eventcore config [event_store]",
        "eventcore config [snapshot]",
        "eventcore config [cache]",
        "eventcore config [command_bus]",
        "eventcore config [dlq]",
        "eventcore config [saga]",
        "eventcore config [postgres]",
    ]
    assert not any("hunter2" in m for m in logged)
    assert pool.closed
    assert isinstance(core.archiver, EventArchiver)
