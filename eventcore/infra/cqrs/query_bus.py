# =============================================================================
# File: eventcore/infra/cqrs/query_bus.py
# Description: Query Bus with multi-tier cache-aside and batch execution
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Dict, Iterable, List, Optional, Sequence, Type

from pydantic import BaseModel, Field

from eventcore.common.exceptions.exceptions import ErrorKind, error_kind_of
from eventcore.config.cache_config import CacheConfig
from eventcore.infra.cqrs.handler_registry import HandlerRegistry
from eventcore.infra.event_store.aggregate_repository import CommitNotice
from eventcore.infra.metrics.cqrs_metrics import query_duration_seconds, query_total
from eventcore.infra.persistence.cache_manager import MultiTierCache
from eventcore.utils.serialization import canonical_json

log = logging.getLogger("eventcore.cqrs.query")


def aggregate_tag(aggregate_id: str) -> str:
    """Tag carried by cached results derived from one aggregate."""
    return f"aggregate:{aggregate_id}"


# =============================================================================
# Base Classes
# =============================================================================

class Query(BaseModel):
    """Base class for all queries using Pydantic v2"""

    # None uses CacheConfig.default_ttl_seconds; 0 disables caching
    cache_ttl_seconds: ClassVar[Optional[int]] = None
    # Cached results come back as JSON; set this to get models back
    result_model: ClassVar[Optional[Type[BaseModel]]] = None

    query_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    saga_id: Optional[str] = None

    def cache_key(self) -> str:
        """Generate a cache key from query - handles nested dicts properly"""
        query_json = canonical_json(self.model_dump(mode="json", exclude={"query_id", "saga_id"}))
        hash_digest = hashlib.sha256(query_json.encode()).hexdigest()[:32]
        return f"{type(self).__name__}:{hash_digest}"

    def cache_tags(self) -> List[str]:
        """Tags whose invalidation must evict this query's cached result."""
        return []


class IQueryHandler(ABC):
    """Base class for all query handlers"""

    @abstractmethod
    async def handle(self, query: Query) -> Any:
        """
        Handle the query and return result.
        Subclasses must implement this method.
        """
        pass


@dataclass
class QueryError:
    """Per-entry failure marker returned by execute_batch"""
    index: int
    query_id: str
    query_type: str
    error_kind: ErrorKind
    message: str
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "query_id": self.query_id,
            "query_type": self.query_type,
            "error_kind": self.error_kind.value,
            "message": self.message,
        }


# =============================================================================
# Middleware Support (Query-specific)
# =============================================================================

QueryNext = Callable[[Query], Awaitable[Any]]


class QueryMiddleware(ABC):
    """Base middleware class for queries"""

    @abstractmethod
    async def process(self, query: Query, next_handler: QueryNext) -> Any:
        """Process query and call next handler"""
        pass


class QueryLoggingMiddleware(QueryMiddleware):
    """Logs all queries with context"""

    async def process(self, query: Query, next_handler: QueryNext) -> Any:
        query_type = type(query).__name__
        extra = {"query_id": query.query_id}
        log.debug(f"Processing query {query_type}", extra=extra)
        try:
            result = await next_handler(query)
            log.debug(f"Query {query_type} completed successfully", extra=extra)
            return result
        except Exception as e:
            extra["error_kind"] = error_kind_of(e).value
            log.error(f"Query {query_type} failed: {e}", extra=extra)
            raise


class QueryMetricsMiddleware(QueryMiddleware):
    """Tracks query execution metrics"""

    def __init__(self):
        self.query_counts: Dict[str, int] = {}
        self.query_errors: Dict[str, int] = {}

    async def process(self, query: Query, next_handler: QueryNext) -> Any:
        query_name = type(query).__name__
        self.query_counts[query_name] = self.query_counts.get(query_name, 0) + 1
        start = time.perf_counter()
        try:
            result = await next_handler(query)
            query_total.labels(query_type=query_name, outcome="success").inc()
            return result
        except Exception:
            self.query_errors[query_name] = self.query_errors.get(query_name, 0) + 1
            query_total.labels(query_type=query_name, outcome="error").inc()
            raise
        finally:
            query_duration_seconds.labels(query_type=query_name).observe(time.perf_counter() - start)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "query_counts": self.query_counts.copy(),
            "query_errors": self.query_errors.copy(),
            "total_queries": sum(self.query_counts.values()),
            "total_errors": sum(self.query_errors.values())
        }


class QueryCachingMiddleware(QueryMiddleware):
    """Cache-aside over the multi-tier cache"""

    def __init__(self, cache: MultiTierCache):
        self.cache = cache

    async def process(self, query: Query, next_handler: QueryNext) -> Any:
        query_type = type(query)
        if query_type.cache_ttl_seconds == 0 or not self.cache.enabled:
            return await next_handler(query)

        key = query.cache_key()
        lookup = await self.cache.get(key)
        if lookup is not None:
            return self._rehydrate(query_type, lookup.value)

        # Read before the handler runs so an invalidation during it wins
        epoch = self.cache.epoch
        result = await next_handler(query)

        try:
            cacheable = to_cacheable(result)
        except (TypeError, ValueError) as e:
            log.warning(f"Result of {query_type.__name__} is not cacheable: {e}")
            return result
        await self.cache.set(key, cacheable, query_type.cache_ttl_seconds, query.cache_tags(), epoch=epoch)
        return result

    @staticmethod
    def _rehydrate(query_type: Type[Query], value: Any) -> Any:
        model = query_type.result_model
        if model is None or value is None:
            return value
        if isinstance(value, list):
            return [model.model_validate(v) for v in value]
        return model.model_validate(value)


def to_cacheable(value: Any) -> Any:
    """JSON-compatible form of a query result."""
    return json.loads(canonical_json(value))


# =============================================================================
# Query Bus Implementation
# =============================================================================

class QueryBus:
    """
    Query Bus for read operations.

    Pipeline: logging -> metrics -> cache -> handler. Handlers are resolved
    from the shared HandlerRegistry.
    """

    def __init__(
            self,
            registry: HandlerRegistry,
            cache: Optional[MultiTierCache] = None,
            config: Optional[CacheConfig] = None,
    ):
        self.registry = registry
        self.cache = cache
        self.config = config or (cache.config if cache is not None else CacheConfig())

        self._middleware: List[QueryMiddleware] = []
        self._metrics_middleware = QueryMetricsMiddleware()
        self.use(QueryLoggingMiddleware())
        self.use(self._metrics_middleware)
        if cache is not None:
            self.use(QueryCachingMiddleware(cache))

    def use(self, middleware: QueryMiddleware) -> "QueryBus":
        """Add middleware to the pipeline"""
        self._middleware.append(middleware)
        return self

    async def execute(self, query: Query) -> Any:
        """Execute a query through the middleware pipeline"""
        return await self._build_handler_chain(query)(query)

    def _build_handler_chain(self, query: Query) -> QueryNext:
        """Build the middleware chain for queries"""
        final_handler = self.registry.query_handler(type(query))

        async def handler_wrapper(q):
            return await final_handler.handle(q)

        chain: QueryNext = handler_wrapper
        for middleware in reversed(self._middleware):
            current_chain = chain

            async def wrapped(q, mw=middleware, next_h=current_chain):
                return await mw.process(q, next_h)

            chain = wrapped

        return chain

    async def execute_batch(self, queries: Sequence[Query]) -> Dict[int, Any]:
        """
        Run independent queries concurrently (at most `batch_concurrency` at
        a time). Returns {index: result}; a failed query maps to a QueryError
        instead of failing the batch.
        """
        semaphore = asyncio.Semaphore(max(self.config.batch_concurrency, 1))

        async def run(index: int, query: Query) -> Any:
            async with semaphore:
                try:
                    return await self.execute(query)
                except Exception as e:
                    return QueryError(
                        index=index,
                        query_id=query.query_id,
                        query_type=type(query).__name__,
                        error_kind=error_kind_of(e),
                        message=str(e),
                        error=e,
                    )

        results = await asyncio.gather(*(run(i, q) for i, q in enumerate(queries)))
        return dict(enumerate(results))

    async def invalidate_cache(self, tags: Iterable[str]) -> int:
        """Remove every cached result carrying any of `tags` from all tiers."""
        if self.cache is None:
            return 0
        return await self.cache.invalidate_tags(tags)

    async def on_aggregate_committed(self, notice: CommitNotice) -> None:
        """Repository commit listener: evict results derived from the aggregate."""
        await self.invalidate_cache([aggregate_tag(notice.aggregate_id)])

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self._metrics_middleware.get_metrics()
        if self.cache is not None:
            metrics["cache"] = self.cache.get_metrics()
        return metrics
