from eventcore.common.exceptions.exceptions import (
    AggregateNotFoundError,
    CircuitBreakerOpenError,
    CommandTimeoutError,
    ConcurrencyConflictError,
    DeadLetteredError,
    ErrorKind,
    EventCoreError,
    HandlerNotFoundError,
    SnapshotCorruptedError,
    StorageUnavailableError,
    UnauthorizedError,
    ValidationFailedError,
    error_kind_of,
    is_retryable,
)

__all__ = [
    "AggregateNotFoundError",
    "CircuitBreakerOpenError",
    "CommandTimeoutError",
    "ConcurrencyConflictError",
    "DeadLetteredError",
    "ErrorKind",
    "EventCoreError",
    "HandlerNotFoundError",
    "SnapshotCorruptedError",
    "StorageUnavailableError",
    "UnauthorizedError",
    "ValidationFailedError",
    "error_kind_of",
    "is_retryable",
]
