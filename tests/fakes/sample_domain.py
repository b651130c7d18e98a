# =============================================================================
# File: tests/fakes/sample_domain.py
# Description: Small Order domain (aggregate, events, commands, queries and
#              handlers) used to drive the infrastructure in tests
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable, ClassVar, Dict, FrozenSet, List, Literal, Optional, Type

from pydantic import BaseModel, Field

from eventcore.common.base.base_aggregate import AggregateRoot
from eventcore.common.base.base_model import BaseEvent
from eventcore.common.exceptions.exceptions import StorageUnavailableError
from eventcore.infra.cqrs.command_bus import Command, ICommandHandler
from eventcore.infra.cqrs.handler_registry import HandlerRegistry
from eventcore.infra.cqrs.query_bus import IQueryHandler, Query, aggregate_tag
from eventcore.infra.event_store.aggregate_repository import AggregateRepository
from eventcore.infra.event_store.domain_registry import DomainRegistry
from eventcore.infra.event_store.event_upcaster import EventUpcasterRegistry

ORDER = "Order"


# =============================================================================
# Events
# =============================================================================

class OrderPlaced(BaseEvent):
    event_type: Literal["OrderPlaced"] = "OrderPlaced"
    customer_id: str


class ItemAdded(BaseEvent):
    """v2 renamed `qty` to `quantity`"""
    event_type: Literal["ItemAdded"] = "ItemAdded"
    version: int = 2
    sku: str
    quantity: int
    price: float


class OrderCancelled(BaseEvent):
    event_type: Literal["OrderCancelled"] = "OrderCancelled"
    reason: str


def upcast_item_added_v1(payload: Dict[str, Any]) -> Dict[str, Any]:
    payload["quantity"] = payload.pop("qty")
    return payload


# =============================================================================
# Aggregate
# =============================================================================

class OrderState(BaseModel):
    customer_id: Optional[str] = None
    items: Dict[str, int] = Field(default_factory=dict)
    total: float = 0.0
    status: str = "new"


class OrderAggregate(AggregateRoot):
    aggregate_type = ORDER
    state_model = OrderState

    def place(self, customer_id: str) -> None:
        if self.state.status != "new":
            raise ValueError(f"Order {self.id} already placed")
        self._apply_and_record(OrderPlaced(customer_id=customer_id))

    def add_item(self, sku: str, quantity: int, price: float) -> None:
        if self.state.status != "placed":
            raise ValueError(f"Cannot add items to a {self.state.status} order")
        self._apply_and_record(ItemAdded(sku=sku, quantity=quantity, price=price))

    def cancel(self, reason: str) -> None:
        if self.state.status == "cancelled":
            return
        self._apply_and_record(OrderCancelled(reason=reason))

    def _event_handlers(self):
        return {
            OrderPlaced: self._on_placed,
            ItemAdded: self._on_item_added,
            OrderCancelled: self._on_cancelled,
        }

    def _on_placed(self, event: OrderPlaced) -> None:
        self.state.customer_id = event.customer_id
        self.state.status = "placed"

    def _on_item_added(self, event: ItemAdded) -> None:
        self.state.items[event.sku] = self.state.items.get(event.sku, 0) + event.quantity
        self.state.total = round(self.state.total + event.quantity * event.price, 2)

    def _on_cancelled(self, event: OrderCancelled) -> None:
        self.state.status = "cancelled"


def build_domain_registry() -> DomainRegistry:
    upcasters = EventUpcasterRegistry()
    upcasters.register("ItemAdded", 1, upcast_item_added_v1)
    return DomainRegistry(upcasters).register(OrderAggregate, [OrderPlaced, ItemAdded, OrderCancelled])


# =============================================================================
# Commands
# =============================================================================

class PlaceOrder(Command):
    order_id: str
    customer_id: str


class AddItem(Command):
    order_id: str
    sku: str
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)

    def validate_rules(self) -> List[str]:
        errors = []
        if not self.sku.strip():
            errors.append("sku must not be blank")
        return errors


class CancelOrder(Command):
    required_permissions: ClassVar[FrozenSet[str]] = frozenset({"order:cancel"})

    order_id: str
    reason: str = "customer request"


class PlaceOrderHandler(ICommandHandler):

    def __init__(self, repository: AggregateRepository):
        self.repository = repository

    async def handle(self, command: PlaceOrder) -> Dict[str, Any]:
        order = self.repository.create(ORDER, command.order_id)
        order.place(command.customer_id)
        version = await self.repository.save(order)
        return {"order_id": command.order_id, "version": version}


class AddItemHandler(ICommandHandler):

    def __init__(self, repository: AggregateRepository):
        self.repository = repository

    async def handle(self, command: AddItem) -> Dict[str, Any]:
        order, _ = await self.repository.load(command.order_id, ORDER)
        order.add_item(command.sku, command.quantity, command.price)
        version = await self.repository.save(order)
        return {"order_id": command.order_id, "version": version}


class CancelOrderHandler(ICommandHandler):

    def __init__(self, repository: AggregateRepository):
        self.repository = repository

    async def handle(self, command: CancelOrder) -> Dict[str, Any]:
        order, _ = await self.repository.load(command.order_id, ORDER)
        order.cancel(command.reason)
        version = await self.repository.save(order)
        return {"order_id": command.order_id, "version": version}


# =============================================================================
# Scripted handlers (failure injection)
# =============================================================================

class Ping(Command):
    """Command with no domain effect, handled by scripted handlers"""
    label: str = "ping"


class FlakyHandler(ICommandHandler):
    """Raises `error_factory()` for the first `failures` calls, then succeeds."""

    def __init__(self, failures: int, error_factory: Optional[Callable[[], Exception]] = None):
        self.failures = failures
        self.error_factory = error_factory or (lambda: StorageUnavailableError("database connection lost"))
        self.calls = 0

    async def handle(self, command: Command) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return "ok"


class SlowHandler(ICommandHandler):
    """Sleeps `delays[n]` seconds on call n (last value repeats)."""

    def __init__(self, delays: List[float]):
        self.delays = delays
        self.calls = 0
        self.started = asyncio.Event()
        self.cancelled = 0

    async def handle(self, command: Command) -> str:
        delay = self.delays[min(self.calls, len(self.delays) - 1)]
        self.calls += 1
        self.started.set()
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return f"done-{self.calls}"


class RecordingHandler(ICommandHandler):
    """Records the order in which commands were handled."""

    def __init__(self):
        self.seen: List[str] = []

    async def handle(self, command: Ping) -> str:
        self.seen.append(command.label)
        return command.label


# =============================================================================
# Queries
# =============================================================================

class OrderView(BaseModel):
    order_id: str
    customer_id: Optional[str]
    items: Dict[str, int]
    total: float
    status: str
    version: int


class GetOrder(Query):
    result_model: ClassVar[Optional[Type[BaseModel]]] = OrderView

    order_id: str

    def cache_tags(self) -> List[str]:
        return [aggregate_tag(self.order_id)]


class GetOrderHandler(IQueryHandler):

    def __init__(self, repository: AggregateRepository):
        self.repository = repository
        self.calls = 0

    async def handle(self, query: GetOrder) -> OrderView:
        self.calls += 1
        order, version = await self.repository.load(query.order_id, ORDER)
        return OrderView(
            order_id=order.id,
            customer_id=order.state.customer_id,
            items=dict(order.state.items),
            total=order.state.total,
            status=order.state.status,
            version=version,
        )


class CountOrders(Query):
    """Never cached"""
    cache_ttl_seconds: ClassVar[Optional[int]] = 0


class CountOrdersHandler(IQueryHandler):

    def __init__(self, repository: AggregateRepository):
        self.repository = repository

    async def handle(self, query: CountOrders) -> int:
        count = 0
        async for _ in self.repository.event_store.load_by_event_type("OrderPlaced"):
            count += 1
        return count


def register_order_handlers(registry: HandlerRegistry, repository: AggregateRepository) -> Dict[str, Any]:
    """Register the Order handlers; returns the query handler instances for call counting."""
    get_order = GetOrderHandler(repository)
    registry.register_command_handler(PlaceOrder, lambda: PlaceOrderHandler(repository))
    registry.register_command_handler(AddItem, lambda: AddItemHandler(repository))
    registry.register_command_handler(CancelOrder, lambda: CancelOrderHandler(repository))
    registry.register_query_handler(GetOrder, lambda: get_order)
    registry.register_query_handler(CountOrders, lambda: CountOrdersHandler(repository))
    return {"get_order": get_order}
