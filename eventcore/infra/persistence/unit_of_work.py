# =============================================================================
# File: eventcore/infra/persistence/unit_of_work.py
# Description: Transaction scope for command handlers
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from eventcore.infra.event_store.event_store import AppendRequest, EventStore

log = logging.getLogger("eventcore.unit_of_work")

CommittedCallback = Callable[[int], Awaitable[None]]
PostCommitHook = Callable[[], Awaitable[None]]

_current_unit_of_work: ContextVar[Optional["UnitOfWork"]] = ContextVar('unit_of_work', default=None)
_background_callbacks: Set[asyncio.Task] = set()


def current_unit_of_work() -> Optional["UnitOfWork"]:
    """Unit of work active in the current task, if any."""
    return _current_unit_of_work.get()


@dataclass
class _StagedAppend:
    request: AppendRequest
    on_committed: Optional[CommittedCallback] = None


class UnitOfWork:
    """
    Collects every append made while it is active and commits them with
    one `append_batch` call.

    Usage:
        async with UnitOfWork(event_store) as uow:
            aggregate, version = await repository.load(...)
            aggregate.do_something()
            await repository.save(aggregate)
        # committed here; any exception (or cancellation) discards it all

    Callbacks registered with `stage()` and `add_post_commit_hook()` run
    after a successful commit. Their failures are logged and never undo
    the commit.
    """

    def __init__(self, event_store: EventStore, metadata: Optional[Dict[str, Any]] = None):
        self._event_store = event_store
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self._staged: List[_StagedAppend] = []
        self._post_commit_hooks: List[PostCommitHook] = []
        self._token: Optional[Token] = None
        self.committed = False
        self.rolled_back = False
        self.committed_versions: List[int] = []
        self.post_commit_task: Optional[asyncio.Task] = None

    @property
    def staged_event_count(self) -> int:
        return sum(len(s.request.events) for s in self._staged)

    @property
    def staged_aggregate_ids(self) -> List[str]:
        return [s.request.aggregate_id for s in self._staged]

    def stage(self, request: AppendRequest, on_committed: Optional[CommittedCallback] = None) -> None:
        self._ensure_open()
        request.metadata = {**self.metadata, **request.metadata}
        self._staged.append(_StagedAppend(request=request, on_committed=on_committed))

    def add_post_commit_hook(self, hook: PostCommitHook) -> None:
        self._ensure_open()
        self._post_commit_hooks.append(hook)

    def _ensure_open(self) -> None:
        if self.committed or self.rolled_back:
            raise RuntimeError("Unit of work is already finished")

    async def commit(self) -> List[int]:
        self._ensure_open()
        if self._staged:
            try:
                self.committed_versions = await self._event_store.append_batch([s.request for s in self._staged])
            except BaseException:
                await self.rollback()
                raise
        self.committed = True

        # Cancelling the committer (a command deadline) must not cut cache
        # invalidation or snapshot evaluation short; they finish in the background
        self.post_commit_task = asyncio.create_task(self._run_post_commit())
        _background_callbacks.add(self.post_commit_task)
        self.post_commit_task.add_done_callback(_background_callbacks.discard)
        await asyncio.shield(self.post_commit_task)
        return self.committed_versions

    async def _run_post_commit(self) -> None:
        for staged, version in zip(self._staged, self.committed_versions):
            if staged.on_committed is not None:
                await self._run_safely(staged.on_committed(version), staged.request.aggregate_id)
        for hook in self._post_commit_hooks:
            await self._run_safely(hook(), "post-commit hook")

    async def rollback(self) -> None:
        if self.committed or self.rolled_back:
            return
        if self._staged:
            log.debug(f"Rolling back {self.staged_event_count} staged events for {self.staged_aggregate_ids}")
        self._staged.clear()
        self._post_commit_hooks.clear()
        self.rolled_back = True

    @staticmethod
    async def _run_safely(awaitable: Awaitable[None], label: str) -> None:
        try:
            await awaitable
        except Exception as e:
            log.error(f"Post-commit callback failed for {label}: {e}", exc_info=True)

    async def __aenter__(self) -> "UnitOfWork":
        if _current_unit_of_work.get() is not None:
            raise RuntimeError("Nested units of work are not supported")
        self._token = _current_unit_of_work.set(self)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        # Post-commit callbacks must not see this unit of work as current
        if self._token is not None:
            _current_unit_of_work.reset(self._token)
            self._token = None
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False
