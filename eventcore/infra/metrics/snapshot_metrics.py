# eventcore/infra/metrics/snapshot_metrics.py
"""Event store and snapshot metrics."""

from prometheus_client import Counter, Histogram

events_appended = Counter(
    'eventcore_events_appended_total',
    'Events appended to the log',
    ['aggregate_type']
)

concurrency_conflicts = Counter(
    'eventcore_concurrency_conflicts_total',
    'Appends rejected by optimistic concurrency',
    ['aggregate_type']
)

snapshots_created = Counter(
    'eventcore_snapshots_created_total',
    'Snapshots written',
    ['aggregate_type', 'strategy']
)

snapshot_failures = Counter(
    'eventcore_snapshot_failures_total',
    'Snapshot attempts that failed',
    ['aggregate_type']
)

snapshots_corrupted = Counter(
    'eventcore_snapshots_corrupted_total',
    'Snapshots rejected on load (hash mismatch or decode failure)',
    ['aggregate_type']
)

snapshot_size_bytes = Histogram(
    'eventcore_snapshot_size_bytes',
    'Stored snapshot size',
    ['aggregate_type'],
    buckets=[256, 1024, 4096, 16384, 65536, 262144, 1048576]
)

aggregate_load_seconds = Histogram(
    'eventcore_aggregate_load_seconds',
    'Aggregate reconstruction latency',
    ['aggregate_type'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

events_replayed = Histogram(
    'eventcore_events_replayed',
    'Events replayed per aggregate load',
    ['aggregate_type'],
    buckets=[0, 1, 5, 10, 25, 50, 100, 500, 1000]
)

events_archived = Counter(
    'eventcore_events_archived_total',
    'Events moved from the hot log to the archive',
    ['aggregate_type']
)
