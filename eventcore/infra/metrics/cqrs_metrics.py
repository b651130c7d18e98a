# eventcore/infra/metrics/cqrs_metrics.py
"""Command and query bus metrics."""

from prometheus_client import Counter, Gauge, Histogram

command_dispatch_total = Counter(
    'eventcore_command_dispatch_total',
    'Commands dispatched by terminal status',
    ['command_type', 'status']
)

command_attempts_total = Counter(
    'eventcore_command_attempts_total',
    'Command handler attempts',
    ['command_type']
)

command_duration_seconds = Histogram(
    'eventcore_command_duration_seconds',
    'End-to-end command dispatch duration',
    ['command_type'],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

async_queue_depth = Gauge(
    'eventcore_async_command_queue_depth',
    'Commands waiting for an async dispatch worker'
)

query_total = Counter(
    'eventcore_query_total',
    'Queries executed by outcome',
    ['query_type', 'outcome']
)

query_duration_seconds = Histogram(
    'eventcore_query_duration_seconds',
    'Query execution duration',
    ['query_type'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0]
)

cache_hits = Counter(
    'eventcore_cache_hits_total',
    'Query cache hits by tier',
    ['tier']
)

cache_misses = Counter(
    'eventcore_cache_misses_total',
    'Query cache misses by tier',
    ['tier']
)

cache_invalidations = Counter(
    'eventcore_cache_invalidations_total',
    'Tag invalidations applied to the cache tiers'
)
