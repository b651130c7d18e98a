# =============================================================================
# File: eventcore/infra/persistence/pg_client.py
# Description: asyncpg pool wrapper with transaction context propagation
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, List, NoReturn, Optional

import asyncpg
from asyncpg.exceptions import (
    CannotConnectNowError,
    ConnectionDoesNotExistError,
    InterfaceError,
    PostgresConnectionError,
    TooManyConnectionsError,
)

from eventcore.common.exceptions.exceptions import StorageUnavailableError
from eventcore.config.pg_client_config import PostgresConfig
from eventcore.config.reliability_config import RetryConfig
from eventcore.infra.reliability.circuit_breaker import CircuitBreaker
from eventcore.infra.reliability.retry import retry_async
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock

log = logging.getLogger("eventcore.persistence.pg")

# Connection of the transaction active in the current task, if any
_current_transaction_connection: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
    'transaction_connection', default=None
)

_UNAVAILABLE_ERRORS = (
    PostgresConnectionError,
    ConnectionDoesNotExistError,
    CannotConnectNowError,
    TooManyConnectionsError,
    InterfaceError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def raise_translated(error: BaseException, operation: str) -> NoReturn:
    """Re-raise connection-level failures as StorageUnavailableError, anything else as is."""
    if isinstance(error, _UNAVAILABLE_ERRORS):
        raise StorageUnavailableError(f"PostgreSQL unavailable during {operation}: {error}") from error
    raise error


async def _init_connection(conn: asyncpg.Connection) -> None:
    # JSON columns round-trip as Python dicts
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresClient:
    """
    Owns one asyncpg pool.

    `transaction()` publishes its connection through a ContextVar so that
    fetch/execute calls made anywhere inside the block join the same
    transaction. Nested `transaction()` calls become savepoints.
    """

    def __init__(
            self,
            config: Optional[PostgresConfig] = None,
            circuit_breaker: Optional[CircuitBreaker] = None,
            retry_config: Optional[RetryConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        self.config = config or PostgresConfig()
        self._circuit_breaker = circuit_breaker
        self._retry_config = retry_config or RetryConfig(max_attempts=3, initial_delay_ms=200)
        self._clock = clock
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def is_started(self) -> bool:
        return self._pool is not None

    async def start(self) -> None:
        if self._pool is not None:
            return

        async def create_pool() -> asyncpg.Pool:
            try:
                return await asyncpg.create_pool(
                    dsn=self.config.dsn.get_secret_value(),
                    min_size=self.config.min_size,
                    max_size=self.config.max_size,
                    command_timeout=self.config.command_timeout,
                    statement_cache_size=self.config.statement_cache_size,
                    server_settings={"application_name": self.config.application_name or "eventcore"},
                    init=_init_connection,
                )
            except Exception as err:
                raise_translated(err, "pool creation")

        self._pool = await retry_async(create_pool, retry_config=self._retry_config, context="pg:create_pool")
        log.info(f"PostgreSQL pool ready (min={self.config.min_size}, max={self.config.max_size})")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("PostgreSQL pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageUnavailableError("PostgreSQL pool is not started")
        return self._pool

    async def _acquire(self) -> asyncpg.Connection:
        pool = self._require_pool()

        async def do_acquire() -> asyncpg.Connection:
            try:
                return await pool.acquire(timeout=self.config.acquire_timeout)
            except Exception as err:
                raise_translated(err, "connection acquire")

        if self._circuit_breaker is not None:
            return await self._circuit_breaker.call(do_acquire)
        return await do_acquire()

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncIterator[asyncpg.Connection]:
        tx_conn = _current_transaction_connection.get()
        if tx_conn is not None:
            yield tx_conn
            return

        conn = await self._acquire()
        try:
            yield conn
        finally:
            await self._require_pool().release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Usage:
            async with client.transaction() as conn:
                await conn.execute("INSERT INTO ...")
        """
        outer = _current_transaction_connection.get()
        if outer is not None:
            async with outer.transaction():
                yield outer
            return

        conn = await self._acquire()
        token = _current_transaction_connection.set(conn)
        tx_start = self._clock.monotonic()
        try:
            try:
                async with conn.transaction():
                    yield conn
            except Exception as err:
                raise_translated(err, "transaction")

            tx_duration_ms = (self._clock.monotonic() - tx_start) * 1000
            if tx_duration_ms > self.config.long_transaction_threshold_ms:
                log.warning(
                    f"[LONG TRANSACTION] took {tx_duration_ms:.0f}ms "
                    f"(threshold: {self.config.long_transaction_threshold_ms:.0f}ms)"
                )
        finally:
            _current_transaction_connection.reset(token)
            await self._require_pool().release(conn)

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self.acquire_connection() as conn:
            try:
                return await conn.fetch(query, *args)
            except Exception as err:
                raise_translated(err, "fetch")

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        async with self.acquire_connection() as conn:
            try:
                return await conn.fetchrow(query, *args)
            except Exception as err:
                raise_translated(err, "fetchrow")

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.acquire_connection() as conn:
            try:
                return await conn.fetchval(query, *args)
            except Exception as err:
                raise_translated(err, "fetchval")

    async def execute(self, query: str, *args: Any) -> str:
        async with self.acquire_connection() as conn:
            try:
                return await conn.execute(query, *args)
            except Exception as err:
                raise_translated(err, "execute")

    async def run_schema(self, sql_text: str) -> None:
        """Apply a schema script (idempotent CREATE ... IF NOT EXISTS statements)."""
        async with self.acquire_connection() as conn:
            await conn.execute(sql_text)
        log.info("Schema applied")
