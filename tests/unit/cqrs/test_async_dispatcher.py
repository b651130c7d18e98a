from __future__ import annotations

import asyncio

import pytest

from eventcore.common.exceptions.exceptions import DeadLetteredError
from eventcore.config.cqrs_config import CommandBusConfig
from eventcore.infra.cqrs.async_dispatcher import AsyncStatus
from eventcore.infra.cqrs.command_bus import (
    Command,
    CommandBus,
    CommandPriority,
    CommandStatus,
    ICommandHandler,
    RetryPolicy,
)
from eventcore.infra.persistence.unit_of_work import current_unit_of_work
from tests.fakes.sample_domain import ORDER, FlakyHandler, Ping, PlaceOrder, RecordingHandler, SlowHandler


@pytest.fixture
async def single_worker_bus(handler_registry, event_store, dlq, no_sleep):
    bus = CommandBus(
        handler_registry,
        event_store=event_store,
        dlq=dlq,
        config=CommandBusConfig(worker_count=1),
        sleep=no_sleep,
    )
    yield bus
    await bus.close(drain=False)


async def test_handle_completes_after_events_are_committed(command_bus, event_store):
    command = PlaceOrder(order_id="order-1", customer_id="customer-1")

    handle = await command_bus.dispatch_async(command)
    assert command_bus.get_async_status(command.command_id) == AsyncStatus.PENDING

    result = await handle.result(timeout=1)

    assert result.status == CommandStatus.COMPLETED
    assert handle.status == AsyncStatus.COMPLETED
    assert command_bus.get_async_handle(command.command_id) is handle
    assert await event_store.get_version("order-1") == 1


async def test_higher_priority_runs_first(single_worker_bus, handler_registry):
    recorder = RecordingHandler()
    handler_registry.register_command_handler(Ping, lambda: recorder)

    handles = [
        await single_worker_bus.dispatch_async(Ping(label="low-1", priority=CommandPriority.LOW)),
        await single_worker_bus.dispatch_async(Ping(label="normal", priority=CommandPriority.NORMAL)),
        await single_worker_bus.dispatch_async(Ping(label="high", priority=CommandPriority.HIGH)),
        await single_worker_bus.dispatch_async(Ping(label="low-2", priority=CommandPriority.LOW)),
    ]
    await asyncio.gather(*(h.result(timeout=1) for h in handles))

    assert recorder.seen == ["high", "normal", "low-1", "low-2"]


async def test_failed_command_surfaces_error_on_handle(command_bus, handler_registry):
    handler_registry.register_command_handler(Ping, lambda: FlakyHandler(100))

    handle = await command_bus.dispatch_async(Ping(retry_policy=RetryPolicy(max_retries=1)))

    with pytest.raises(DeadLetteredError):
        await handle.result(timeout=1)
    assert handle.status == AsyncStatus.FAILED
    assert isinstance(handle.error, DeadLetteredError)


async def test_timed_out_command_reports_timeout_status(command_bus, handler_registry):
    handler_registry.register_command_handler(Ping, lambda: SlowHandler([10]))

    handle = await command_bus.dispatch_async(Ping(timeout_seconds=0.02, retry_policy=RetryPolicy(max_retries=0)))

    with pytest.raises(DeadLetteredError):
        await handle.result(timeout=1)
    assert handle.status == AsyncStatus.TIMEOUT


async def test_cancel_interrupts_running_command(command_bus, handler_registry, event_store):
    handler = SlowHandler([10])
    handler_registry.register_command_handler(Ping, lambda: handler)
    handle = await command_bus.dispatch_async(Ping())
    await asyncio.wait_for(handler.started.wait(), 1)

    assert handle.cancel()

    with pytest.raises(asyncio.CancelledError):
        await handle.result(timeout=1)
    assert handle.status == AsyncStatus.CANCELLED
    assert handler.cancelled == 1
    assert not handle.cancel()


async def test_cancel_pending_command_never_runs(single_worker_bus, handler_registry):
    handler = SlowHandler([10])
    handler_registry.register_command_handler(Ping, lambda: handler)
    running = await single_worker_bus.dispatch_async(Ping(label="running"))
    queued = await single_worker_bus.dispatch_async(Ping(label="queued"))
    await asyncio.wait_for(handler.started.wait(), 1)

    assert queued.cancel()
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running.result(timeout=1)

    assert queued.status == AsyncStatus.CANCELLED
    assert handler.calls == 1


async def test_done_callbacks_receive_the_handle(command_bus, handler_registry):
    handler_registry.register_command_handler(Ping, lambda: RecordingHandler())
    seen = []

    handle = await command_bus.dispatch_async(Ping(label="cb"))
    handle.add_done_callback(lambda h: seen.append((h.command_id, h.status)))
    await handle.result(timeout=1)
    await asyncio.sleep(0)

    assert seen == [(handle.command_id, AsyncStatus.COMPLETED)]


async def test_close_with_drain_finishes_queued_work(handler_registry, event_store):
    recorder = RecordingHandler()
    handler_registry.register_command_handler(Ping, lambda: recorder)
    bus = CommandBus(handler_registry, event_store=event_store, config=CommandBusConfig(worker_count=1))

    handles = [await bus.dispatch_async(Ping(label=str(i))) for i in range(3)]
    await bus.close(drain=True)

    assert [h.status for h in handles] == [AsyncStatus.COMPLETED] * 3
    assert recorder.seen == ["0", "1", "2"]


class PlaceOrderWithFollowUp(Command):
    order_id: str
    follow_up_order_id: str


class QueueingHandler(ICommandHandler):
    """Places an order and queues a second one on the same bus."""

    def __init__(self, repository, bus):
        self.repository = repository
        self.bus = bus
        self.handles = []

    async def handle(self, command: PlaceOrderWithFollowUp) -> str:
        order = self.repository.create(ORDER, command.order_id)
        order.place("customer-1")
        await self.repository.save(order)
        self.handles.append(await self.bus.dispatch_async(
            PlaceOrder(order_id=command.follow_up_order_id, customer_id="customer-2")
        ))
        return "queued"


async def test_commands_queued_from_a_handler_run_in_their_own_unit_of_work(
        command_bus, handler_registry, repository, event_store):
    handler = QueueingHandler(repository, command_bus)
    handler_registry.register_command_handler(PlaceOrderWithFollowUp, lambda: handler)

    first = await command_bus.dispatch(PlaceOrderWithFollowUp(order_id="order-1", follow_up_order_id="order-2"))
    second = await command_bus.dispatch_async(PlaceOrder(order_id="order-3", customer_id="customer-3"))
    results = await asyncio.gather(handler.handles[0].result(timeout=1), second.result(timeout=1))

    assert first.succeeded
    assert [r.status for r in results] == [CommandStatus.COMPLETED] * 2
    assert current_unit_of_work() is None
    assert [await event_store.get_version(i) for i in ("order-1", "order-2", "order-3")] == [1, 1, 1]
