# =============================================================================
# eventcore Main Package - Dynamic Version Loading
# =============================================================================
"""
eventcore - event-sourced aggregate persistence and CQRS buses

Version is loaded from installed package metadata (pyproject.toml).
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version


def _get_version() -> str:
    """Get package version from installed metadata."""
    try:
        return version("eventcore")
    except PackageNotFoundError:
        return "0.0.0+local"


__version__: str = _get_version()
__description__: str = "Event-sourced aggregates with snapshots and a CQRS command/query bus"

__all__ = [
    "__version__",
    "__description__",
]
