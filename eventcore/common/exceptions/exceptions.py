# =============================================================================
# File: eventcore/common/exceptions/exceptions.py
# Description: Error taxonomy shared by the event store, buses and sagas
# =============================================================================

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Stable error kinds attached to every terminal failure"""
    VALIDATION_FAILED = "validation_failed"
    UNAUTHORIZED = "unauthorized"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    AGGREGATE_NOT_FOUND = "aggregate_not_found"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    SNAPSHOT_CORRUPTED = "snapshot_corrupted"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    HANDLER_NOT_FOUND = "handler_not_found"
    DEAD_LETTERED = "dead_lettered"
    INTERNAL = "internal"


class EventCoreError(Exception):
    """Base exception for eventcore"""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(
            self,
            message: str = "",
            *,
            message_id: Optional[str] = None,
            details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        # Id of the command or query being processed when the error surfaced
        self.message_id = message_id
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "message_id": self.message_id,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationFailedError(EventCoreError):
    """Raised when a command or query fails validation"""
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str = "Validation failed", *, errors: Optional[List[str]] = None, **kwargs):
        self.errors = list(errors or [])
        details = kwargs.pop("details", None) or {}
        details.setdefault("errors", self.errors)
        super().__init__(message, details=details, **kwargs)


class UnauthorizedError(EventCoreError):
    """Raised when the actor lacks a required permission"""
    kind = ErrorKind.UNAUTHORIZED


class ConcurrencyConflictError(EventCoreError):
    """Raised when an append's expected version does not match the stream"""
    kind = ErrorKind.CONCURRENCY_CONFLICT
    retryable = True

    def __init__(
            self,
            aggregate_id: str,
            expected_version: int,
            actual_version: int,
            **kwargs,
    ):
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrency conflict on {aggregate_id}: expected version "
            f"{expected_version}, actual {actual_version}",
            details={
                "aggregate_id": aggregate_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            **kwargs,
        )


class AggregateNotFoundError(EventCoreError):
    """Raised when an aggregate has neither events nor a snapshot"""
    kind = ErrorKind.AGGREGATE_NOT_FOUND

    def __init__(self, aggregate_type: str, aggregate_id: str, **kwargs):
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        super().__init__(
            f"{aggregate_type} {aggregate_id} not found",
            details={"aggregate_type": aggregate_type, "aggregate_id": aggregate_id},
            **kwargs,
        )


class StorageUnavailableError(EventCoreError):
    """Raised for transient infrastructure failures (connection loss, pool exhaustion)"""
    kind = ErrorKind.STORAGE_UNAVAILABLE
    retryable = True


class SnapshotCorruptedError(EventCoreError):
    """Raised when a snapshot fails hash verification or cannot be decoded"""
    kind = ErrorKind.SNAPSHOT_CORRUPTED

    def __init__(self, aggregate_id: str, version: int, reason: str, **kwargs):
        self.aggregate_id = aggregate_id
        self.version = version
        super().__init__(
            f"Snapshot {aggregate_id}@{version} is corrupted: {reason}",
            details={"aggregate_id": aggregate_id, "version": version, "reason": reason},
            **kwargs,
        )


class CommandTimeoutError(EventCoreError):
    """Raised when a command attempt exceeds its timeout"""
    kind = ErrorKind.TIMEOUT
    retryable = True


class CircuitBreakerOpenError(EventCoreError):
    """Raised when a call is rejected by an open circuit breaker"""
    kind = ErrorKind.CIRCUIT_OPEN
    retryable = True


class HandlerNotFoundError(EventCoreError):
    """Raised when no handler is registered for a command or query type"""
    kind = ErrorKind.HANDLER_NOT_FOUND


class DeadLetteredError(EventCoreError):
    """Raised when a command exhausted its retries and was moved to the DLQ"""
    kind = ErrorKind.DEAD_LETTERED

    def __init__(
            self,
            last_error: BaseException,
            attempts: int,
            dlq_entry_id: Optional[str] = None,
            **kwargs,
    ):
        self.last_error = last_error
        self.attempts = attempts
        self.dlq_entry_id = dlq_entry_id
        super().__init__(
            f"Dead-lettered after {attempts} attempts: {last_error}",
            details={
                "attempts": attempts,
                "dlq_entry_id": dlq_entry_id,
                "last_error_kind": error_kind_of(last_error).value,
            },
            **kwargs,
        )


def error_kind_of(error: BaseException) -> ErrorKind:
    """Map any exception to its stable error kind."""
    if isinstance(error, EventCoreError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.INTERNAL


def is_retryable(error: BaseException) -> bool:
    """Retryable kinds are conflicts, storage outages, timeouts and open circuits."""
    if isinstance(error, EventCoreError):
        return error.retryable
    return isinstance(error, (TimeoutError, ConnectionError))
