# =============================================================================
# File: eventcore/bootstrap.py
# Description: Assembles stores, repository, buses, DLQ and sagas from config
# =============================================================================

"""
Startup and shutdown for an eventcore process.

`initialize_event_core` builds every component in phases, choosing the
in-memory or PostgreSQL backend for each store from its config section.
Clients passed in by the caller stay owned by the caller; clients created
here are closed by `EventCore.shutdown()`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from eventcore.common.base.base_config import BaseConfig
from eventcore.common.exceptions.exceptions import StorageUnavailableError
from eventcore.config.cache_config import CacheConfig, get_cache_config
from eventcore.config.cqrs_config import CommandBusConfig, get_command_bus_config
from eventcore.config.dlq_config import DLQConfig, get_dlq_config
from eventcore.config.event_store_config import EventStoreConfig, get_event_store_config
from eventcore.config.logging_config import log_metrics_table
from eventcore.config.pg_client_config import PostgresConfig, get_postgres_config
from eventcore.config.redis_config import RedisConfig
from eventcore.config.reliability_config import ReliabilitySettings, get_reliability_settings
from eventcore.config.saga_config import SagaConfig, get_saga_config
from eventcore.config.snapshot_config import SnapshotConfig, get_snapshot_config, validate_snapshot_config
from eventcore.infra.cqrs.authorization import Authorizer
from eventcore.infra.cqrs.command_bus import CommandBus
from eventcore.infra.cqrs.handler_registry import HandlerRegistry
from eventcore.infra.cqrs.query_bus import QueryBus
from eventcore.infra.event_store.aggregate_repository import AggregateRepository
from eventcore.infra.event_store.dlq_service import DLQService, InMemoryDeadLetterStore, PostgresDeadLetterStore
from eventcore.infra.event_store.domain_registry import DomainRegistry
from eventcore.infra.event_store.event_archival import EventArchiver
from eventcore.infra.event_store.event_store import EventStore, InMemoryEventStore
from eventcore.infra.event_store.pg_event_store import PostgresEventStore
from eventcore.infra.event_store.snapshot_store import InMemorySnapshotStore, PostgresSnapshotStore, SnapshotStore
from eventcore.infra.persistence.cache_manager import (
    CacheTier,
    InMemoryReadModelStore,
    MultiTierCache,
    PostgresReadModelStore,
    build_query_cache,
)
from eventcore.infra.persistence.pg_client import PostgresClient
from eventcore.infra.persistence.redis_client import create_and_test_redis_client
from eventcore.infra.persistence.redis_client import health_check as redis_health_check
from eventcore.infra.reliability.circuit_breaker import CircuitBreakerRegistry
from eventcore.infra.saga.saga_manager import SagaManager, SagaRegistry
from eventcore.infra.saga.saga_state_store import InMemorySagaStateStore, PostgresSagaStateStore, SagaStateStore
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock

log = logging.getLogger("eventcore.startup")

POSTGRES = "postgres"
MEMORY = "memory"

HandlerSetup = Callable[[HandlerRegistry, AggregateRepository], Any]


class EventCore:
    """Holds the assembled components of one process"""

    def __init__(self):
        # Storage
        self.pg_client: Optional[PostgresClient] = None
        self.redis_client: Any = None
        self.event_store: Optional[EventStore] = None
        self.snapshot_store: Optional[SnapshotStore] = None
        self.read_model_store: Optional[CacheTier] = None
        self.saga_state_store: Optional[SagaStateStore] = None

        # Domain
        self.domain_registry: Optional[DomainRegistry] = None
        self.repository: Optional[AggregateRepository] = None
        self.archiver: Optional[EventArchiver] = None

        # CQRS
        self.handler_registry: Optional[HandlerRegistry] = None
        self.query_cache: Optional[MultiTierCache] = None
        self.command_bus: Optional[CommandBus] = None
        self.query_bus: Optional[QueryBus] = None
        self.dlq: Optional[DLQService] = None

        # Sagas
        self.saga_registry: Optional[SagaRegistry] = None
        self.saga_manager: Optional[SagaManager] = None

        self.circuit_breakers: Optional[CircuitBreakerRegistry] = None

        self._owns_pg_client = False
        self._owns_redis_client = False
        self._closed = False

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {}
        if self.command_bus is not None:
            metrics["command_bus"] = self.command_bus.get_metrics()
        if self.query_bus is not None:
            metrics["query_bus"] = self.query_bus.get_metrics()
        if self.saga_manager is not None:
            metrics["sagas"] = self.saga_manager.get_metrics()
        return metrics

    async def health_check(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {}
        if self.pg_client is not None:
            try:
                await self.pg_client.fetchval("SELECT 1")
                health["postgres"] = {"is_healthy": True}
            except StorageUnavailableError as e:
                health["postgres"] = {"is_healthy": False, "error": str(e)}
        if self.redis_client is not None:
            health["redis"] = await redis_health_check(self.redis_client, self.circuit_breakers.get_or_create("redis"))
        health["is_healthy"] = all(part["is_healthy"] for part in health.values())
        return health

    async def shutdown(self) -> None:
        """Drain the async queue, flush snapshots and close owned clients."""
        if self._closed:
            return
        self._closed = True
        log.info("eventcore shutting down...")

        if self.command_bus is not None:
            await self.command_bus.close(drain=True)
        if self.repository is not None:
            await self.repository.close()
        if self.redis_client is not None and self._owns_redis_client:
            await self.redis_client.aclose()
            log.info("Redis client closed")
        if self.pg_client is not None and self._owns_pg_client:
            await self.pg_client.close()

        log.info("eventcore shutdown complete")


def _uses_postgres(*backends: str) -> bool:
    for backend in backends:
        if backend not in (MEMORY, POSTGRES):
            raise ValueError(f"Unknown storage backend: {backend!r} (expected 'memory' or 'postgres')")
    return POSTGRES in backends


async def initialize_event_core(
        domain_registry: DomainRegistry,
        register_handlers: Optional[HandlerSetup] = None,
        saga_registry: Optional[SagaRegistry] = None,
        authorizer: Optional[Authorizer] = None,
        pg_client: Optional[PostgresClient] = None,
        redis_client: Any = None,
        redis_config: Optional[RedisConfig] = None,
        event_store_config: Optional[EventStoreConfig] = None,
        snapshot_config: Optional[SnapshotConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        command_bus_config: Optional[CommandBusConfig] = None,
        dlq_config: Optional[DLQConfig] = None,
        saga_config: Optional[SagaConfig] = None,
        postgres_config: Optional[PostgresConfig] = None,
        reliability: Optional[ReliabilitySettings] = None,
        recover_sagas: bool = True,
        clock: Clock = SYSTEM_CLOCK,
) -> EventCore:
    """
    Build an EventCore from config.

    Args:
        domain_registry: Aggregate and event types known to this process
        register_handlers: Called with the handler registry and repository
        saga_registry: Saga types; an empty registry is used when omitted
        pg_client: Existing PostgreSQL client, used by every postgres backend
        redis_client: Existing Redis client for the L2 cache tier
        redis_config: When given without a client, a client is created and pinged
        recover_sagas: Resume sagas left unfinished by a previous process
    """
    event_store_config = event_store_config or get_event_store_config()
    snapshot_config = snapshot_config or get_snapshot_config()
    cache_config = cache_config or get_cache_config()
    command_bus_config = command_bus_config or get_command_bus_config()
    dlq_config = dlq_config or get_dlq_config()
    saga_config = saga_config or get_saga_config()
    reliability = reliability or get_reliability_settings()

    core = EventCore()
    core.domain_registry = domain_registry
    core.circuit_breakers = CircuitBreakerRegistry(reliability, clock=clock)
    sections: Dict[str, BaseConfig] = {
        "event_store": event_store_config,
        "snapshot": snapshot_config,
        "cache": cache_config,
        "command_bus": command_bus_config,
        "dlq": dlq_config,
        "saga": saga_config,
    }

    try:
        # Phase 1: Storage clients
        log.info("Phase 1: Initializing storage clients...")
        needs_postgres = _uses_postgres(
            event_store_config.backend, dlq_config.backend, saga_config.state_backend
        )
        if pg_client is None and needs_postgres:
            postgres_config = postgres_config or get_postgres_config()
            sections["postgres"] = postgres_config
            pg_client = PostgresClient(
                postgres_config,
                circuit_breaker=core.circuit_breakers.get_or_create("postgres"),
                retry_config=reliability.retry(),
                clock=clock,
            )
            core._owns_pg_client = True
            await pg_client.start()
        core.pg_client = pg_client

        if redis_client is None and redis_config is not None and cache_config.l2_enabled:
            redis_client = await create_and_test_redis_client(redis_config)
            core._owns_redis_client = True
        core.redis_client = redis_client

        # Phase 2: Event and snapshot stores
        log.info("Phase 2: Initializing event and snapshot stores...")
        validate_snapshot_config(snapshot_config)
        if event_store_config.backend == POSTGRES:
            pg_event_store = PostgresEventStore(pg_client, event_store_config)
            await pg_event_store.initialize()
            core.event_store = pg_event_store
            core.snapshot_store = PostgresSnapshotStore(pg_client, snapshot_config, clock)
            core.read_model_store = PostgresReadModelStore(pg_client, clock)
        else:
            core.event_store = InMemoryEventStore(event_store_config.page_size, event_store_config.max_batch_size)
            core.snapshot_store = InMemorySnapshotStore(snapshot_config, clock)
            core.read_model_store = InMemoryReadModelStore(clock)
        core.archiver = EventArchiver(core.event_store, core.snapshot_store, event_store_config, clock)
        log.info(f"Event store backend: {event_store_config.backend}")

        # Phase 3: Repository
        log.info("Phase 3: Initializing aggregate repository...")
        core.repository = AggregateRepository(
            core.event_store,
            core.snapshot_store,
            domain_registry,
            config=snapshot_config,
            clock=clock,
        )

        # Phase 4: Handlers, DLQ and buses
        log.info("Phase 4: Initializing CQRS...")
        core.handler_registry = HandlerRegistry()
        if register_handlers is not None:
            register_handlers(core.handler_registry, core.repository)

        if dlq_config.enabled and command_bus_config.enable_dead_letter:
            dlq_store = PostgresDeadLetterStore(pg_client) if dlq_config.backend == POSTGRES else InMemoryDeadLetterStore()
            core.dlq = DLQService(dlq_store, dlq_config, clock)

        core.command_bus = CommandBus(
            core.handler_registry,
            event_store=core.event_store,
            dlq=core.dlq,
            authorizer=authorizer,
            config=command_bus_config,
            circuit_breakers=core.circuit_breakers,
        )
        await core.command_bus.start()

        core.query_cache = build_query_cache(
            cache_config,
            redis_client=core.redis_client,
            read_model_store=core.read_model_store,
            clock=clock,
        )
        core.query_bus = QueryBus(core.handler_registry, cache=core.query_cache)
        core.repository.add_commit_listener(core.query_bus.on_aggregate_committed)
        log.info("CQRS buses initialized")

        # Phase 5: Sagas
        log.info("Phase 5: Initializing sagas...")
        core.saga_state_store = (
            PostgresSagaStateStore(pg_client) if saga_config.state_backend == POSTGRES else InMemorySagaStateStore()
        )
        core.saga_registry = saga_registry or SagaRegistry()
        core.saga_manager = SagaManager(
            core.command_bus,
            core.saga_registry,
            core.saga_state_store,
            saga_config,
            clock=clock,
        )
        if recover_sagas:
            recovered = await core.saga_manager.recover_incomplete()
            if recovered:
                log.info(f"Recovered {len(recovered)} incomplete saga(s)")

    except Exception as startup_error:
        log.error(f"Critical error during startup: {startup_error}", exc_info=True)
        await core.shutdown()
        raise

    log.info("=" * 60)
    for name, section in sections.items():
        log_metrics_table(log, f"eventcore config [{name}]", section.effective_settings())
    log_metrics_table(log, "eventcore handlers", core.handler_registry.get_handler_info())
    log.info("eventcore startup complete")
    log.info("=" * 60)
    return core
