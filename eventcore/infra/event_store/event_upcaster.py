# =============================================================================
# File: eventcore/infra/event_store/event_upcaster.py
# Description: Event schema upcasting (stored payload -> current model version)
# =============================================================================

import logging
from typing import Any, Callable, Dict, Optional, Tuple

log = logging.getLogger("eventcore.event_store.upcaster")

Upcaster = Callable[[Dict[str, Any]], Dict[str, Any]]


class EventUpcasterRegistry:
    """
    Upcasters keyed by (event_type, from_version).

    Each upcaster converts a payload from `from_version` to
    `from_version + 1`. Stored events are never rewritten; payloads are
    upcast on read, one step at a time.
    """

    def __init__(self):
        self._upcasters: Dict[Tuple[str, int], Upcaster] = {}

    def register(self, event_type: str, from_version: int, upcaster: Upcaster) -> "EventUpcasterRegistry":
        key = (event_type, from_version)
        if key in self._upcasters:
            raise ValueError(f"Upcaster for {event_type} v{from_version} already registered")
        self._upcasters[key] = upcaster
        log.debug(f"Registered upcaster {event_type} v{from_version} -> v{from_version + 1}")
        return self

    def upcaster(self, event_type: str, from_version: int) -> Callable[[Upcaster], Upcaster]:
        """Decorator form of register()."""
        def decorator(func: Upcaster) -> Upcaster:
            self.register(event_type, from_version, func)
            return func
        return decorator

    def upcast(
            self,
            event_type: str,
            from_version: int,
            payload: Dict[str, Any],
            target_version: Optional[int] = None,
    ) -> Tuple[Dict[str, Any], int]:
        """Apply the upcaster chain; returns the new payload and its version."""
        version = from_version
        result = dict(payload)
        while target_version is None or version < target_version:
            upcaster = self._upcasters.get((event_type, version))
            if upcaster is None:
                break
            result = upcaster(dict(result))
            version += 1
        if target_version is not None and version < target_version:
            raise ValueError(
                f"No upcaster path for {event_type} from v{version} to v{target_version}"
            )
        return result, version
