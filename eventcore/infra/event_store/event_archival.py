# eventcore/infra/event_store/event_archival.py
"""
Event archival.

Streams that have been idle for `archive_after_days` have the events
covered by their latest snapshot moved out of the hot log. Loading such
an aggregate starts from that snapshot, so the hot log only has to hold
the events after it. Full replays still see every event: the store reads
the archive transparently.

A stream without a snapshot is left alone, since every one of its events
is still needed to rebuild it.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from eventcore.common.exceptions.exceptions import SnapshotCorruptedError, StorageUnavailableError
from eventcore.config.event_store_config import EventStoreConfig
from eventcore.infra.event_store.event_store import EventStore
from eventcore.infra.event_store.snapshot_store import SnapshotStore
from eventcore.infra.metrics.snapshot_metrics import events_archived
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock

log = logging.getLogger("eventcore.event_store.archival")


@dataclass
class ArchivalStats:
    processed_aggregates: int = 0
    archived_events: int = 0
    skipped_aggregates: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventArchiver:
    """Moves snapshotted history of idle streams into the archive"""

    def __init__(
            self,
            event_store: EventStore,
            snapshot_store: SnapshotStore,
            config: Optional[EventStoreConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        self._event_store = event_store
        self._snapshot_store = snapshot_store
        self._config = config or EventStoreConfig()
        self._clock = clock

    async def archive_aggregate(self, aggregate_id: str) -> int:
        """Archive events up to the latest snapshot; returns how many moved."""
        snapshot = await self._snapshot_store.load_latest_at_or_before(aggregate_id)
        if snapshot is None:
            return 0
        moved = await self._event_store.archive(aggregate_id, snapshot.version)
        if moved:
            events_archived.labels(aggregate_type=snapshot.aggregate_type).inc(moved)
            log.info(
                f"Archived {moved} events of {snapshot.aggregate_type}-{aggregate_id} "
                f"(through version {snapshot.version})"
            )
        return moved

    async def archive_inactive(self) -> ArchivalStats:
        """One archival run over at most `archive_batch_size` idle streams."""
        stats = ArchivalStats()
        cutoff = self._clock.now() - timedelta(days=self._config.archive_after_days)
        aggregate_ids = await self._event_store.find_inactive_streams(cutoff, self._config.archive_batch_size)

        for aggregate_id in aggregate_ids:
            try:
                moved = await self.archive_aggregate(aggregate_id)
            except (StorageUnavailableError, SnapshotCorruptedError) as e:
                stats.errors += 1
                log.error(
                    f"Failed to archive {aggregate_id}: {e}",
                    extra={"error_kind": e.kind.value},
                )
                continue
            if moved:
                stats.processed_aggregates += 1
                stats.archived_events += moved
            else:
                stats.skipped_aggregates += 1

        if aggregate_ids:
            log.info(
                f"Archival run: {stats.archived_events} events from {stats.processed_aggregates} streams "
                f"({stats.skipped_aggregates} skipped, {stats.errors} errors)"
            )
        return stats
