# =============================================================================
# File: eventcore/infra/cqrs/handler_registry.py
# Description: Explicit command/query handler registry built at startup
# =============================================================================

import logging
from typing import Any, Callable, Dict, List, Type, Union

from eventcore.common.exceptions.exceptions import HandlerNotFoundError

log = logging.getLogger("eventcore.cqrs.registry")

HandlerFactory = Callable[[], Any]


class HandlerRegistry:
    """
    Maps message types to handler factories.

    Built once at startup and passed to the buses. Each command or query type
    has exactly one handler; a second registration is rejected. Messages are
    routed by class name so string-based callers (e.g. sagas replaying a DLQ
    entry) resolve the same handler.
    """

    def __init__(self):
        self._command_factories: Dict[str, HandlerFactory] = {}
        self._query_factories: Dict[str, HandlerFactory] = {}
        self._command_types: Dict[str, type] = {}
        self._query_types: Dict[str, type] = {}
        self._instances: Dict[str, Any] = {}

    @staticmethod
    def _name(message_type: Union[type, str]) -> str:
        return message_type if isinstance(message_type, str) else message_type.__name__

    def register_command_handler(self, command_type: Union[Type, str], handler_factory: HandlerFactory) -> None:
        self._register(self._command_factories, self._command_types, "command", command_type, handler_factory)

    def register_query_handler(self, query_type: Union[Type, str], handler_factory: HandlerFactory) -> None:
        self._register(self._query_factories, self._query_types, "query", query_type, handler_factory)

    def _register(
            self,
            factories: Dict[str, HandlerFactory],
            types: Dict[str, type],
            kind: str,
            message_type: Union[Type, str],
            handler_factory: HandlerFactory,
    ) -> None:
        name = self._name(message_type)
        if name in factories:
            raise ValueError(
                f"DUPLICATE {kind.upper()} HANDLER: {kind} '{name}' already has a registered handler. "
                f"Existing: {factories[name]}, Attempted: {handler_factory}"
            )
        factories[name] = handler_factory
        if not isinstance(message_type, str):
            types[name] = message_type
        log.debug(f"Registered {kind} handler for {name}")

    def command_handler(self, command_type: Union[Type, str]) -> Any:
        return self._resolve(self._command_factories, "command", self._name(command_type))

    def query_handler(self, query_type: Union[Type, str]) -> Any:
        return self._resolve(self._query_factories, "query", self._name(query_type))

    def _resolve(self, factories: Dict[str, HandlerFactory], kind: str, name: str) -> Any:
        key = f"{kind}:{name}"
        handler = self._instances.get(key)
        if handler is not None:
            return handler
        factory = factories.get(name)
        if factory is None:
            raise HandlerNotFoundError(
                f"No handler registered for {kind} {name}. Registered handlers: {sorted(factories)}"
            )
        handler = factory()
        self._instances[key] = handler
        return handler

    def command_type(self, name: str) -> type:
        """Command class registered under `name` (used to rebuild DLQ payloads)."""
        try:
            return self._command_types[name]
        except KeyError:
            raise HandlerNotFoundError(f"No command class registered under {name}") from None

    def has_command_handler(self, command_type: Union[Type, str]) -> bool:
        return self._name(command_type) in self._command_factories

    def has_query_handler(self, query_type: Union[Type, str]) -> bool:
        return self._name(query_type) in self._query_factories

    @property
    def command_names(self) -> List[str]:
        return sorted(self._command_factories)

    @property
    def query_names(self) -> List[str]:
        return sorted(self._query_factories)

    def get_handler_info(self) -> Dict[str, Any]:
        return {
            "command_handlers": self.command_names,
            "query_handlers": self.query_names,
            "total_handlers": len(self._command_factories) + len(self._query_factories),
        }
