# =============================================================================
# File: eventcore/infra/event_store/domain_registry.py
# Description: Explicit registry of aggregate types, event models and upcasters
# =============================================================================

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Type

from eventcore.common.base.base_aggregate import AggregateRoot
from eventcore.common.base.base_model import BaseEvent
from eventcore.common.exceptions.exceptions import EventCoreError
from eventcore.infra.event_store.event_envelope import StoredEvent
from eventcore.infra.event_store.event_upcaster import EventUpcasterRegistry

log = logging.getLogger("eventcore.domain_registry")


class UnknownEventTypeError(EventCoreError):
    """Raised when a stored event has no registered model"""


class UnknownAggregateTypeError(EventCoreError):
    """Raised when an aggregate type was never registered"""


def event_type_of(event_cls: Type[BaseEvent]) -> str:
    """Read the Literal default of a concrete event's event_type field."""
    default = event_cls.model_fields["event_type"].default
    if not isinstance(default, str) or not default:
        raise ValueError(f"{event_cls.__name__} must declare a default event_type")
    return default


@dataclass
class DomainRegistration:
    """One aggregate type and the events its stream may contain"""
    aggregate_cls: Type[AggregateRoot]
    event_models: Dict[str, Type[BaseEvent]] = field(default_factory=dict)

    @property
    def aggregate_type(self) -> str:
        return self.aggregate_cls.aggregate_type


class DomainRegistry:
    """
    Aggregate and event model registry, built once at startup and passed to
    the repository. There is no module-level registry.
    """

    def __init__(self, upcasters: Optional[EventUpcasterRegistry] = None):
        self.upcasters = upcasters or EventUpcasterRegistry()
        self._domains: Dict[str, DomainRegistration] = {}
        self._event_models: Dict[str, Type[BaseEvent]] = {}

    def register(
            self,
            aggregate_cls: Type[AggregateRoot],
            event_models: Iterable[Type[BaseEvent]] = (),
    ) -> "DomainRegistry":
        aggregate_type = aggregate_cls.aggregate_type
        if not aggregate_type:
            raise ValueError(f"{aggregate_cls.__name__} must set aggregate_type")
        if aggregate_type in self._domains:
            raise ValueError(f"Aggregate type {aggregate_type} already registered")

        registration = DomainRegistration(aggregate_cls=aggregate_cls)
        for event_cls in event_models:
            event_type = event_type_of(event_cls)
            if event_type in self._event_models:
                raise ValueError(f"Event type {event_type} already registered")
            registration.event_models[event_type] = event_cls
            self._event_models[event_type] = event_cls

        self._domains[aggregate_type] = registration
        log.info(f"Registered aggregate {aggregate_type} with {len(registration.event_models)} event types")
        return self

    def aggregate_class(self, aggregate_type: str) -> Type[AggregateRoot]:
        registration = self._domains.get(aggregate_type)
        if registration is None:
            raise UnknownAggregateTypeError(f"Aggregate type {aggregate_type} is not registered")
        return registration.aggregate_cls

    def event_model(self, event_type: str) -> Type[BaseEvent]:
        model = self._event_models.get(event_type)
        if model is None:
            raise UnknownEventTypeError(f"Event type {event_type} is not registered")
        return model

    def aggregate_types(self) -> List[str]:
        return list(self._domains)

    def deserialize(self, stored: StoredEvent) -> BaseEvent:
        """Build the domain event for a stored envelope, upcasting the payload first."""
        model = self.event_model(stored.event_type)
        target_version = model.schema_version()
        payload, version = self.upcasters.upcast(
            stored.event_type,
            stored.event_version,
            stored.payload,
            target_version=target_version,
        )
        return model.model_validate({**payload, "event_type": stored.event_type, "version": version})
