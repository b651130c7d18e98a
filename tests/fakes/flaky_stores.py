# =============================================================================
# File: tests/fakes/flaky_stores.py
# Description: Event and snapshot stores with injectable failures
# =============================================================================

from __future__ import annotations

import asyncio
from typing import List, Sequence

from eventcore.common.exceptions.exceptions import StorageUnavailableError
from eventcore.infra.event_store.event_store import AppendRequest, InMemoryEventStore
from eventcore.infra.event_store.snapshot_store import InMemorySnapshotStore, StoredSnapshot


class FlakyEventStore(InMemoryEventStore):
    """
    Fails the next `fail_appends` append batches with StorageUnavailableError;
    the next `hang_appends` batches never return unless cancelled.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_appends = 0
        self.hang_appends = 0
        self.append_calls = 0

    async def append_batch(self, requests: Sequence[AppendRequest]) -> List[int]:
        self.append_calls += 1
        if self.fail_appends > 0:
            self.fail_appends -= 1
            raise StorageUnavailableError("event store connection lost")
        if self.hang_appends > 0:
            self.hang_appends -= 1
            await asyncio.Event().wait()
        return await super().append_batch(requests)


class FailingSnapshotStore(InMemorySnapshotStore):
    """Snapshot writes fail while `failing` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.failing = False
        self.put_calls = 0

    async def _put(self, stored: StoredSnapshot) -> None:
        self.put_calls += 1
        if self.failing:
            raise StorageUnavailableError("snapshot table unavailable")
        await super()._put(stored)
