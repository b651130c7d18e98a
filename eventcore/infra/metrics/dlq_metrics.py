# eventcore/infra/metrics/dlq_metrics.py
"""Dead letter queue metrics."""

from prometheus_client import Counter, Gauge

dlq_entries_added = Counter(
    'eventcore_dlq_entries_added_total',
    'Commands moved to the dead letter queue',
    ['command_type', 'error_kind']
)

dlq_entries_retried = Counter(
    'eventcore_dlq_entries_retried_total',
    'Dead letter entries re-dispatched',
    ['outcome']
)

dlq_entries_discarded = Counter(
    'eventcore_dlq_entries_discarded_total',
    'Dead letter entries discarded by an operator'
)

dlq_pending = Gauge(
    'eventcore_dlq_pending_entries',
    'Dead letter entries awaiting action'
)
