# =============================================================================
# File: eventcore/infra/event_store/aggregate_repository.py
# Description: Load/save aggregates with snapshot-accelerated replay
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from eventcore.common.base.base_aggregate import AggregateRoot
from eventcore.common.base.base_model import BaseEvent
from eventcore.common.exceptions.exceptions import AggregateNotFoundError, SnapshotCorruptedError
from eventcore.config.snapshot_config import SnapshotConfig
from eventcore.infra.event_store.domain_registry import DomainRegistry
from eventcore.infra.event_store.event_envelope import NewEvent
from eventcore.infra.event_store.event_store import AppendRequest, EventStore
from eventcore.infra.event_store.snapshot_store import Snapshot, SnapshotStore
from eventcore.infra.event_store.snapshot_strategy import (
    SnapshotContext,
    SnapshotStrategy,
    create_snapshot_strategy,
)
from eventcore.infra.metrics.snapshot_metrics import (
    aggregate_load_seconds,
    events_replayed,
    snapshot_failures,
    snapshots_corrupted,
    snapshots_created,
)
from eventcore.infra.persistence.lru_cache import LRUCache
from eventcore.infra.persistence.unit_of_work import current_unit_of_work
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock

log = logging.getLogger("eventcore.event_store.repository")


@dataclass
class CommitNotice:
    """Published to commit listeners after events are durably appended"""
    aggregate_id: str
    aggregate_type: str
    from_version: int
    to_version: int
    event_types: List[str] = field(default_factory=list)


CommitListener = Callable[[CommitNotice], Awaitable[None]]


@dataclass
class _SnapshotMark:
    version: int
    created_at: Optional[datetime]


class AggregateRepository:
    """
    Rebuilds aggregates from the latest usable snapshot plus the events
    after it, and appends their uncommitted events.

    After each commit the snapshot strategy is consulted. Snapshot writes
    are best effort: they run in background tasks (or inline when async
    snapshots are disabled), never fail the save, and a failed write is
    attempted again on the next save of that aggregate or through
    `retry_failed_snapshots()`.

    A concurrency conflict is never retried here; it propagates to the
    caller (the command bus decides whether to retry).
    """

    def __init__(
            self,
            event_store: EventStore,
            snapshot_store: SnapshotStore,
            registry: DomainRegistry,
            strategy: Optional[SnapshotStrategy] = None,
            config: Optional[SnapshotConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        self._event_store = event_store
        self._snapshot_store = snapshot_store
        self._registry = registry
        self._config = config or SnapshotConfig()
        self._strategy = strategy or create_snapshot_strategy(self._config)
        self._clock = clock

        # Both are per aggregate, so they are capped like the L1 query cache
        self._snapshot_marks = LRUCache(self._config.tracked_aggregates_capacity, clock)
        self._latency_history = LRUCache(self._config.tracked_aggregates_capacity, clock)
        self._pending_snapshots: Set[asyncio.Task] = set()
        self._failed_snapshots: Dict[str, str] = {}
        self._snapshot_semaphore = asyncio.Semaphore(self._config.max_concurrent_snapshots)
        self._listeners: List[CommitListener] = []

    @property
    def event_store(self) -> EventStore:
        return self._event_store

    @property
    def strategy(self) -> SnapshotStrategy:
        return self._strategy

    def add_commit_listener(self, listener: CommitListener) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # Load
    # =========================================================================

    def create(self, aggregate_type: str, aggregate_id: str) -> AggregateRoot:
        """New, empty aggregate for creation commands."""
        return self._registry.aggregate_class(aggregate_type)(str(aggregate_id))

    async def load(self, aggregate_id: str, aggregate_type: str) -> Tuple[AggregateRoot, int]:
        """
        Rebuild an aggregate.

        Returns (aggregate, current_version). Raises AggregateNotFoundError
        when there are neither events nor a snapshot. A corrupted or stale
        snapshot is logged and replaced by a full replay.
        """
        aggregate_id = str(aggregate_id)
        aggregate_cls = self._registry.aggregate_class(aggregate_type)
        start = self._clock.monotonic()

        snapshot = await self._load_snapshot(aggregate_id, aggregate_type)
        aggregate, replayed, snapshot = await self._replay(aggregate_cls, aggregate_id, snapshot)

        if snapshot is not None and replayed == 0:
            # A snapshot is only usable if it reaches the stream's current version
            current = await self._event_store.get_version(aggregate_id)
            if current != snapshot.version:
                log.warning(
                    f"Data quality: snapshot {aggregate_type}-{aggregate_id}@{snapshot.version} "
                    f"does not match stream version {current}; replaying from version 0"
                )
                aggregate, replayed, snapshot = await self._replay(aggregate_cls, aggregate_id, None)

        if aggregate.version == 0 and snapshot is None:
            raise AggregateNotFoundError(aggregate_type, aggregate_id)

        if snapshot is not None:
            if aggregate_id not in self._snapshot_marks:
                self._snapshot_marks.set(aggregate_id, _SnapshotMark(snapshot.version, snapshot.created_at))

        elapsed = self._clock.monotonic() - start
        self._record_latency(aggregate_id, elapsed * 1000)
        aggregate_load_seconds.labels(aggregate_type=aggregate_type).observe(elapsed)
        events_replayed.labels(aggregate_type=aggregate_type).observe(replayed)
        log.debug(
            f"Loaded {aggregate_type}-{aggregate_id} v{aggregate.version} "
            f"(snapshot={snapshot.version if snapshot else None}, replayed={replayed}, {elapsed * 1000:.1f}ms)"
        )
        return aggregate, aggregate.version

    async def load_many(
            self,
            aggregate_ids: Iterable[str],
            aggregate_type: str,
    ) -> Dict[str, Tuple[AggregateRoot, int]]:
        """
        Load several aggregates of one type concurrently.

        Keyed by aggregate id; ids with no stream are left out instead of
        failing the batch. Other errors propagate.
        """
        ids = list(dict.fromkeys(str(i) for i in aggregate_ids))
        semaphore = asyncio.Semaphore(self._config.batch_load_concurrency)

        async def load_one(aggregate_id: str) -> Optional[Tuple[AggregateRoot, int]]:
            async with semaphore:
                try:
                    return await self.load(aggregate_id, aggregate_type)
                except AggregateNotFoundError:
                    return None

        results = await asyncio.gather(*(load_one(i) for i in ids))
        loaded = {i: result for i, result in zip(ids, results) if result is not None}
        log.debug(f"Batch loaded {len(loaded)}/{len(ids)} {aggregate_type} aggregates")
        return loaded

    async def get_versions(self, aggregate_ids: Iterable[str]) -> Dict[str, int]:
        """Current stream version per id (0 for ids with no events)."""
        ids = list(dict.fromkeys(str(i) for i in aggregate_ids))
        versions = await asyncio.gather(*(self._event_store.get_version(i) for i in ids))
        return dict(zip(ids, versions))

    async def _load_snapshot(self, aggregate_id: str, aggregate_type: str) -> Optional[Snapshot]:
        try:
            return await self._snapshot_store.load_latest_at_or_before(aggregate_id)
        except SnapshotCorruptedError as e:
            snapshots_corrupted.labels(aggregate_type=aggregate_type).inc()
            log.warning(f"Data quality: {e}; falling back to full replay")
            return None

    async def _replay(
            self,
            aggregate_cls: type,
            aggregate_id: str,
            snapshot: Optional[Snapshot],
    ) -> Tuple[AggregateRoot, int, Optional[Snapshot]]:
        aggregate = aggregate_cls(aggregate_id)
        if snapshot is not None:
            try:
                aggregate.restore_from_snapshot(snapshot.state, snapshot.version)
            except ValueError as e:
                log.warning(
                    f"Data quality: snapshot {aggregate_id}@{snapshot.version} does not fit "
                    f"{aggregate_cls.__name__} state ({e}); replaying from version 0"
                )
                aggregate = aggregate_cls(aggregate_id)
                snapshot = None

        replayed = 0
        async for stored in self._event_store.load(aggregate_id, aggregate.version):
            aggregate.apply_committed(self._registry.deserialize(stored), stored.aggregate_version)
            replayed += 1
        return aggregate, replayed, snapshot

    def _record_latency(self, aggregate_id: str, latency_ms: float) -> None:
        history: Optional[Deque[float]] = self._latency_history.get(aggregate_id)
        if history is None:
            history = deque(maxlen=self._config.latency_history_size)
            self._latency_history.set(aggregate_id, history)
        history.append(latency_ms)

    def get_latency_history(self, aggregate_id: str) -> List[float]:
        return list(self._latency_history.get(str(aggregate_id), ()))

    # =========================================================================
    # Save
    # =========================================================================

    async def save(
            self,
            aggregate: AggregateRoot,
            expected_version: Optional[int] = None,
            uncommitted_events: Optional[Sequence[BaseEvent]] = None,
            *,
            metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Append `uncommitted_events` at `expected_version`.

        Both default to the aggregate's own bookkeeping: its pending events
        and the version it was loaded at. Inside an active UnitOfWork the
        append is staged and committed with the unit of work; the returned
        version is the one it will have.
        """
        events = aggregate.get_uncommitted_events() if uncommitted_events is None else list(uncommitted_events)
        expected = aggregate.committed_version if expected_version is None else expected_version
        if not events:
            return expected

        request = AppendRequest(
            aggregate_id=aggregate.id,
            aggregate_type=aggregate.aggregate_type,
            expected_version=expected,
            events=[NewEvent.from_domain_event(e) for e in events],
            metadata=dict(metadata or {}),
        )

        uow = current_unit_of_work()
        if uow is not None:
            async def on_committed(new_version: int) -> None:
                await self._after_commit(aggregate, request, new_version, events)

            uow.stage(request, on_committed=on_committed)
            return expected + len(events)

        new_version = await self._event_store.append(
            request.aggregate_id,
            request.aggregate_type,
            request.expected_version,
            request.events,
            request.metadata,
        )
        await self._after_commit(aggregate, request, new_version, events)
        return new_version

    async def _after_commit(
            self,
            aggregate: AggregateRoot,
            request: AppendRequest,
            new_version: int,
            events: Sequence[BaseEvent],
    ) -> None:
        aggregate.mark_events_committed(events)
        aggregate.version = new_version + len(aggregate.get_uncommitted_events())

        notice = CommitNotice(
            aggregate_id=request.aggregate_id,
            aggregate_type=request.aggregate_type,
            from_version=request.expected_version,
            to_version=new_version,
            event_types=[e.event_type for e in request.events],
        )
        for listener in self._listeners:
            try:
                await listener(notice)
            except Exception as e:
                log.error(f"Commit listener failed for {request.aggregate_id}: {e}", exc_info=True)

        if self._config.enable_auto_snapshots:
            await self._evaluate_snapshot(aggregate, new_version)

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def _snapshot_mark(self, aggregate_id: str, aggregate_type: str) -> _SnapshotMark:
        mark = self._snapshot_marks.get(aggregate_id)
        if mark is not None:
            return mark

        versions = await self._snapshot_store.list_versions(aggregate_id)
        if versions:
            snapshot = await self._load_snapshot(aggregate_id, aggregate_type)
            mark = _SnapshotMark(versions[-1], snapshot.created_at if snapshot else None)
        else:
            # No snapshot yet: time is measured from the start of the stream
            first = None
            async for stored in self._event_store.load(aggregate_id, 0, 1):
                first = stored
            mark = _SnapshotMark(0, first.occurred_at if first else None)
        self._snapshot_marks.set(aggregate_id, mark)
        return mark

    async def _evaluate_snapshot(self, aggregate: AggregateRoot, new_version: int) -> None:
        try:
            mark = await self._snapshot_mark(aggregate.id, aggregate.aggregate_type)
            elapsed = None
            if mark.created_at is not None:
                elapsed = (self._clock.now() - mark.created_at).total_seconds()

            decision = self._strategy.decide(SnapshotContext(
                aggregate_id=aggregate.id,
                events_since_last_snapshot=new_version - mark.version,
                elapsed_since_last_snapshot=elapsed,
                load_latency_history=self.get_latency_history(aggregate.id),
                aggregate_type=aggregate.aggregate_type,
            ))
            if not decision.should_create:
                return

            state = aggregate.create_snapshot()
        except Exception as e:
            snapshot_failures.labels(aggregate_type=aggregate.aggregate_type).inc()
            log.warning(f"Snapshot evaluation failed for {aggregate.aggregate_type}-{aggregate.id}: {e}")
            self._failed_snapshots[aggregate.id] = aggregate.aggregate_type
            return

        # Claim the version now so that saves racing the background write do not
        # schedule a second snapshot for the same interval
        self._snapshot_marks.set(aggregate.id, _SnapshotMark(new_version, self._clock.now()))
        write = self._write_snapshot(
            aggregate.aggregate_type, aggregate.id, new_version, state, mark, decision.details
        )
        if self._config.enable_async_snapshots:
            task = asyncio.create_task(write)
            self._pending_snapshots.add(task)
            task.add_done_callback(self._pending_snapshots.discard)
        else:
            await write

    async def _write_snapshot(
            self,
            aggregate_type: str,
            aggregate_id: str,
            version: int,
            state: Dict[str, Any],
            previous_mark: _SnapshotMark,
            reason: str,
    ) -> None:
        async with self._snapshot_semaphore:
            try:
                snapshot = await asyncio.wait_for(
                    self._snapshot_store.save(aggregate_id, aggregate_type, version, state),
                    timeout=self._config.snapshot_timeout_seconds,
                )
            except Exception as e:
                snapshot_failures.labels(aggregate_type=aggregate_type).inc()
                log.warning(
                    f"Snapshot {aggregate_type}-{aggregate_id}@{version} failed, will retry later: {e}",
                    exc_info=True,
                )
                current = self._snapshot_marks.get(aggregate_id)
                if current is not None and current.version == version:
                    self._snapshot_marks.set(aggregate_id, previous_mark)
                self._failed_snapshots[aggregate_id] = aggregate_type
                return

        self._snapshot_marks.set(aggregate_id, _SnapshotMark(version, snapshot.created_at))
        self._failed_snapshots.pop(aggregate_id, None)
        snapshots_created.labels(aggregate_type=aggregate_type, strategy=self._strategy.name).inc()
        log.info(f"Snapshot created for {aggregate_type}-{aggregate_id}@{version} ({reason})")

    async def flush_snapshots(self) -> None:
        """Wait for in-flight background snapshot writes."""
        while self._pending_snapshots:
            await asyncio.gather(*list(self._pending_snapshots), return_exceptions=True)

    @property
    def failed_snapshots(self) -> Dict[str, str]:
        return dict(self._failed_snapshots)

    async def retry_failed_snapshots(self) -> int:
        """Snapshot every aggregate whose last snapshot attempt failed. Returns successes."""
        succeeded = 0
        for aggregate_id, aggregate_type in list(self._failed_snapshots.items()):
            try:
                aggregate, version = await self.load(aggregate_id, aggregate_type)
            except AggregateNotFoundError:
                self._failed_snapshots.pop(aggregate_id, None)
                continue
            previous = self._snapshot_marks.get(aggregate_id, _SnapshotMark(0, None))
            await self._write_snapshot(
                aggregate_type, aggregate_id, version, aggregate.create_snapshot(), previous, "retry"
            )
            if aggregate_id not in self._failed_snapshots:
                succeeded += 1
        return succeeded

    async def snapshot_now(self, aggregate_id: str, aggregate_type: str) -> Snapshot:
        """Create a snapshot at the current version regardless of strategy."""
        aggregate, version = await self.load(aggregate_id, aggregate_type)
        snapshot = await self._snapshot_store.save(aggregate_id, aggregate_type, version, aggregate.create_snapshot())
        self._snapshot_marks.set(str(aggregate_id), _SnapshotMark(version, snapshot.created_at))
        self._failed_snapshots.pop(str(aggregate_id), None)
        return snapshot

    async def close(self) -> None:
        await self.flush_snapshots()
