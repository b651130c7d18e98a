# =============================================================================
# File: eventcore/infra/cqrs/async_dispatcher.py
# Description: Priority queue + worker pool behind CommandBus.dispatch_async
# =============================================================================

from __future__ import annotations

import asyncio
import contextvars
import itertools
import logging
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from eventcore.common.exceptions.exceptions import (
    DeadLetteredError,
    ErrorKind,
    error_kind_of,
)
from eventcore.infra.metrics.cqrs_metrics import async_queue_depth

log = logging.getLogger("eventcore.cqrs.async_dispatcher")

DispatchFn = Callable[[Any], Awaitable[Any]]


class AsyncStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_STATUSES = frozenset({
    AsyncStatus.COMPLETED, AsyncStatus.FAILED, AsyncStatus.CANCELLED, AsyncStatus.TIMEOUT,
})


class CommandHandle:
    """
    Caller's view of a command running on the worker pool.

        handle = await bus.dispatch_async(cmd)
        handle.add_done_callback(lambda h: print(h.status))
        result = await handle.result(timeout=5)
    """

    def __init__(self, command: Any):
        self.command = command
        self.command_id: str = str(command.command_id)
        self.status = AsyncStatus.PENDING
        self.error: Optional[BaseException] = None
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(_consume_exception)
        self._task: Optional[asyncio.Task] = None

    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES

    async def result(self, timeout: Optional[float] = None) -> Any:
        """
        Wait for the command to finish. Raises the command's error on failure,
        CancelledError if it was cancelled, TimeoutError if `timeout` elapses
        first (the command keeps running).
        """
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def add_done_callback(self, callback: Callable[["CommandHandle"], Any]) -> None:
        self._future.add_done_callback(lambda _f: callback(self))

    def cancel(self) -> bool:
        """Cancel a pending command, or interrupt a running one (its unit of work rolls back)."""
        if self.done():
            return False
        if self._task is not None:
            self._task.cancel()
        else:
            self._finish_cancelled()
        return True

    # Called by the dispatcher

    def _start(self, task: asyncio.Task) -> None:
        self._task = task
        self.status = AsyncStatus.PROCESSING

    def _finish(self, result: Any) -> None:
        if self._future.done():
            return
        self.status = AsyncStatus.COMPLETED
        self._future.set_result(result)

    def _fail(self, error: BaseException) -> None:
        if self._future.done():
            return
        cause = error.last_error if isinstance(error, DeadLetteredError) else error
        self.status = AsyncStatus.TIMEOUT if error_kind_of(cause) == ErrorKind.TIMEOUT else AsyncStatus.FAILED
        self.error = error
        self._future.set_exception(error)

    def _finish_cancelled(self) -> None:
        if self._future.done():
            return
        self.status = AsyncStatus.CANCELLED
        self._future.cancel()

    def __repr__(self) -> str:
        return f"CommandHandle({type(self.command).__name__}, id={self.command_id}, status={self.status.value})"


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class AsyncCommandDispatcher:
    """
    Runs commands on `worker_count` worker tasks fed by a priority queue
    (lower `priority` first, FIFO within a priority).

    Each worker awaits the full dispatch pipeline, so a handle only turns
    COMPLETED once the command's events are committed.
    """

    def __init__(
            self,
            dispatch: DispatchFn,
            worker_count: int = 4,
            queue_max_size: int = 1000,
            handle_retention: int = 10000,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._dispatch = dispatch
        self.worker_count = worker_count
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._queue_max_size = queue_max_size
        self._handle_retention = handle_retention
        self._handles: "OrderedDict[str, CommandHandle]" = OrderedDict()
        self._workers: List[asyncio.Task] = []
        self._sequence = itertools.count()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.PriorityQueue(maxsize=self._queue_max_size)
        self._running = True
        # Workers may be started from inside a handler; an empty context keeps
        # that handler's unit of work out of every command they run
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"command-worker-{i}", context=contextvars.Context())
            for i in range(self.worker_count)
        ]
        log.info(f"Async command dispatcher started with {self.worker_count} workers")

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers. With `drain`, queued commands run first; otherwise they are cancelled."""
        if not self._running:
            return
        if drain and self._queue is not None:
            await self._queue.join()
        self._running = False

        if self._queue is not None:
            while not self._queue.empty():
                _, _, handle = self._queue.get_nowait()
                handle._finish_cancelled()
                self._queue.task_done()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        async_queue_depth.set(0)
        log.info("Async command dispatcher stopped")

    async def submit(self, command: Any) -> CommandHandle:
        if not self._running:
            await self.start()
        handle = CommandHandle(command)
        self._remember(handle)
        await self._queue.put((getattr(command, "priority", 0), next(self._sequence), handle))
        async_queue_depth.set(self._queue.qsize())
        return handle

    def get_handle(self, command_id: str) -> Optional[CommandHandle]:
        return self._handles.get(str(command_id))

    def get_status(self, command_id: str) -> Optional[AsyncStatus]:
        handle = self.get_handle(command_id)
        return handle.status if handle is not None else None

    def _remember(self, handle: CommandHandle) -> None:
        self._handles[handle.command_id] = handle
        if len(self._handles) <= self._handle_retention:
            return
        # Forget the oldest finished handles; in-flight ones are always kept
        for command_id in [cid for cid, h in self._handles.items() if h.done()]:
            if len(self._handles) <= self._handle_retention:
                break
            del self._handles[command_id]

    async def _worker(self, index: int) -> None:
        while True:
            _, _, handle = await self._queue.get()
            async_queue_depth.set(self._queue.qsize())
            try:
                if handle.done():
                    continue
                await self._run(handle)
            finally:
                self._queue.task_done()

    async def _run(self, handle: CommandHandle) -> None:
        task = asyncio.create_task(self._dispatch(handle.command))
        handle._start(task)
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                # The worker itself is being stopped
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                handle._finish_cancelled()
                raise
            handle._finish_cancelled()
        except Exception as e:
            handle._fail(e)
        else:
            handle._finish(result)
