from __future__ import annotations

import asyncio

import pydantic
import pytest

from eventcore.common.exceptions.exceptions import (
    CommandTimeoutError,
    ConcurrencyConflictError,
    DeadLetteredError,
    ErrorKind,
    EventCoreError,
    HandlerNotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from eventcore.infra.cqrs.authorization import Actor
from eventcore.infra.cqrs.command_bus import Command, CommandStatus, RetryPolicy
from tests.fakes.sample_domain import (
    AddItem,
    CancelOrder,
    FlakyHandler,
    Ping,
    PlaceOrder,
    SlowHandler,
)


class Unhandled(Command):
    pass


async def test_successful_dispatch_walks_every_stage(command_bus, event_store):
    command = PlaceOrder(order_id="order-1", customer_id="customer-1", correlation_id="flow-7")

    result = await command_bus.dispatch(command)

    assert result.succeeded
    assert result.result == {"order_id": "order-1", "version": 1}
    assert result.attempts == 1
    assert result.events_appended == 1
    assert result.history == [
        CommandStatus.RECEIVED,
        CommandStatus.VALIDATING,
        CommandStatus.AUTHORIZING,
        CommandStatus.EXECUTING,
        CommandStatus.EVENTS_APPENDED,
        CommandStatus.COMPLETED,
    ]
    stored = (await event_store.load_all("order-1"))[0]
    assert stored.metadata["command_id"] == command.command_id
    assert stored.metadata["command_type"] == "PlaceOrder"
    assert stored.correlation_id == "flow-7"
    assert stored.causation_id == command.command_id


async def test_business_rule_violation_is_rejected_before_execution(command_bus, event_store):
    await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))
    command = AddItem(order_id="order-1", sku="  ", quantity=1, price=1.0)

    with pytest.raises(ValidationFailedError) as exc_info:
        await command_bus.dispatch(command)

    error = exc_info.value
    assert error.message_id == command.command_id
    assert error.errors == ["sku must not be blank"]
    assert error.details["status_history"] == ["received", "validating", "failed"]
    assert await event_store.get_version("order-1") == 1


def test_field_constraints_are_enforced_on_construction():
    with pytest.raises(pydantic.ValidationError):
        AddItem(order_id="order-1", sku="a", quantity=0, price=1.0)


async def test_missing_permission_is_unauthorized(command_bus):
    await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))
    anonymous = CancelOrder(order_id="order-1")
    clerk = CancelOrder(order_id="order-1", actor=Actor(actor_id="u-1", roles=frozenset({"clerk"})))

    with pytest.raises(UnauthorizedError) as exc_info:
        await command_bus.dispatch(anonymous)
    assert exc_info.value.message_id == anonymous.command_id

    with pytest.raises(UnauthorizedError) as exc_info:
        await command_bus.dispatch(clerk)
    assert exc_info.value.details["missing"] == ["order:cancel"]


@pytest.mark.parametrize("actor", [
    Actor(actor_id="u-2", roles=frozenset({"support"})),
    Actor(actor_id="u-3", roles=frozenset({"admin"})),
    Actor(actor_id="u-4", permissions=frozenset({"order:cancel"})),
])
async def test_granted_permission_allows_command(command_bus, actor):
    await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))

    result = await command_bus.dispatch(CancelOrder(order_id="order-1", actor=actor))

    assert result.result["version"] == 2


async def test_unregistered_command_fails_with_handler_not_found(command_bus):
    command = Unhandled()

    with pytest.raises(HandlerNotFoundError) as exc_info:
        await command_bus.dispatch(command)

    assert exc_info.value.message_id == command.command_id


async def test_transient_storage_failure_is_retried(command_bus, event_store, sleeps):
    event_store.fail_appends = 1

    result = await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))

    assert result.succeeded
    assert result.attempts == 2
    assert CommandStatus.RETRYING in result.history
    assert len(sleeps) == 1
    assert await event_store.get_version("order-1") == 1


async def test_timed_out_attempt_is_retried(command_bus, handler_registry):
    handler = SlowHandler([10, 0])
    handler_registry.register_command_handler(Ping, lambda: handler)

    result = await command_bus.dispatch(Ping(timeout_seconds=0.05, retry_policy=RetryPolicy(max_retries=1)))

    assert result.result == "done-2"
    assert result.attempts == 2
    assert handler.cancelled == 1


async def test_permanent_handler_error_is_not_retried(command_bus, handler_registry, dlq):
    handler = FlakyHandler(1, error_factory=lambda: ValueError("bad input"))
    handler_registry.register_command_handler(Ping, lambda: handler)
    command = Ping(retry_policy=RetryPolicy(max_retries=5))

    with pytest.raises(EventCoreError) as exc_info:
        await command_bus.dispatch(command)

    error = exc_info.value
    assert error.kind == ErrorKind.INTERNAL
    assert error.message_id == command.command_id
    assert isinstance(error.__cause__, ValueError)
    assert handler.calls == 1
    assert await dlq.list() == []


async def test_duplicate_create_conflicts_until_dead_lettered(command_bus, event_store, dlq):
    await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))

    with pytest.raises(DeadLetteredError) as exc_info:
        await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="someone-else"))

    assert isinstance(exc_info.value.last_error, ConcurrencyConflictError)
    assert exc_info.value.attempts == 3
    assert await event_store.get_version("order-1") == 1
    assert len(await dlq.list()) == 1


async def test_metrics_count_commands_and_errors(command_bus):
    await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1"))
    with pytest.raises(HandlerNotFoundError):
        await command_bus.dispatch(Unhandled())

    metrics = command_bus.get_metrics()

    assert metrics["command_counts"] == {"PlaceOrder": 1, "Unhandled": 1}
    assert metrics["total_errors"] == 1


async def test_hanging_append_is_cut_off_by_the_attempt_timeout(command_bus, event_store):
    event_store.hang_appends = 1

    result = await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1", timeout_seconds=0.05))

    assert result.succeeded
    assert result.attempts == 2
    assert event_store.append_calls == 2
    assert await event_store.get_version("order-1") == 1


async def test_slow_post_commit_work_does_not_fail_a_committed_command(command_bus, repository, event_store):
    finished = asyncio.Event()

    async def slow_listener(notice) -> None:
        await asyncio.sleep(0.2)
        finished.set()

    repository.add_commit_listener(slow_listener)

    result = await command_bus.dispatch(PlaceOrder(order_id="order-1", customer_id="customer-1", timeout_seconds=0.05))

    assert result.succeeded
    assert result.attempts == 1
    assert result.events_appended == 1
    assert not finished.is_set()
    await asyncio.wait_for(finished.wait(), 1)
    assert await event_store.get_version("order-1") == 1


async def test_deadline_stops_further_attempts(command_bus, handler_registry):
    handler = SlowHandler([10])
    handler_registry.register_command_handler(Ping, lambda: handler)
    deadline = asyncio.get_running_loop().time() + 0.05

    with pytest.raises(CommandTimeoutError) as exc_info:
        await command_bus.dispatch(Ping(retry_policy=RetryPolicy(max_retries=5)), dead_letter=False, deadline=deadline)

    assert not exc_info.value.retryable
    assert handler.calls == 1
    assert handler.cancelled == 1
