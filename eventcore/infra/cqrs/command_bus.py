# =============================================================================
# File: eventcore/infra/cqrs/command_bus.py
# Description: Command Bus with validation, authorization, transactional
#              execution, retry, timeouts, DLQ and async dispatch
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, ClassVar, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from eventcore.common.exceptions.exceptions import (
    CommandTimeoutError,
    DeadLetteredError,
    ErrorKind,
    EventCoreError,
    ValidationFailedError,
    error_kind_of,
    is_retryable,
)
from eventcore.config.cqrs_config import CommandBusConfig
from eventcore.config.reliability_config import RetryConfig
from eventcore.infra.cqrs.async_dispatcher import AsyncCommandDispatcher, AsyncStatus, CommandHandle
from eventcore.infra.cqrs.authorization import Actor, Authorizer
from eventcore.infra.cqrs.handler_registry import HandlerRegistry
from eventcore.infra.event_store.dlq_service import DLQService
from eventcore.infra.event_store.event_store import EventStore
from eventcore.infra.metrics.cqrs_metrics import (
    command_attempts_total,
    command_dispatch_total,
    command_duration_seconds,
)
from eventcore.infra.persistence.unit_of_work import UnitOfWork
from eventcore.infra.reliability.circuit_breaker import CircuitBreakerRegistry
from eventcore.infra.reliability.retry import SleepFn, retry_async

log = logging.getLogger("eventcore.cqrs.command")


# =============================================================================
# Base Classes
# =============================================================================

class CommandPriority(IntEnum):
    """Async dispatch order; lower runs first"""
    HIGH = 0
    NORMAL = 5
    LOW = 10


class RetryPolicy(BaseModel):
    """
    Per-command retry policy. `max_retries` counts retries after the first
    attempt, so a command runs at most `max_retries + 1` times.
    """
    max_retries: int = Field(default=2, ge=0)
    initial_delay_ms: int = 100
    max_delay_ms: int = 5000
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_type: str = "full"

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
            jitter_type=self.jitter_type,
            retry_condition=is_retryable,
        )

    @classmethod
    def from_config(cls, config: CommandBusConfig) -> "RetryPolicy":
        return cls(
            max_retries=max(config.default_max_attempts - 1, 0),
            initial_delay_ms=config.retry_initial_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
            backoff_factor=config.retry_backoff_factor,
            jitter_type=config.retry_jitter_type,
        )


class Command(BaseModel):
    """Base class for all commands using Pydantic v2"""

    # Permissions the issuing actor must hold
    required_permissions: ClassVar[FrozenSet[str]] = frozenset()

    command_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    priority: int = CommandPriority.NORMAL
    timeout_seconds: Optional[float] = None
    retry_policy: Optional[RetryPolicy] = None
    actor: Optional[Actor] = None
    saga_id: Optional[str] = None
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None

    def validate_rules(self) -> List[str]:
        """Business-rule checks beyond field types. Return error messages."""
        return []

    def event_metadata(self) -> Dict[str, Any]:
        """Metadata stamped on every event this command appends."""
        metadata = {
            "command_id": self.command_id,
            "command_type": type(self).__name__,
            "causation_id": self.causation_id or self.command_id,
            "correlation_id": self.correlation_id or self.command_id,
        }
        if self.saga_id:
            metadata["saga_id"] = self.saga_id
        if self.actor is not None:
            metadata["actor_id"] = self.actor.actor_id
        return metadata


class ICommandHandler(ABC):
    """Base class for all command handlers"""

    @abstractmethod
    async def handle(self, command: Command) -> Any:
        """Handle the command and return result"""
        pass


class CommandStatus(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    EXECUTING = "executing"
    EVENTS_APPENDED = "events_appended"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass
class CommandResult:
    command_id: str
    command_type: str
    status: CommandStatus = CommandStatus.RECEIVED
    result: Any = None
    attempts: int = 0
    events_appended: int = 0
    history: List[CommandStatus] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == CommandStatus.COMPLETED

    def transition(self, status: CommandStatus) -> None:
        self.status = status
        self.history.append(status)


@dataclass
class DispatchContext:
    """State carried through the middleware chain for one dispatch"""
    command: Command
    result: CommandResult
    dead_letter: bool = True
    # Absolute event loop time bounding every attempt of this dispatch
    deadline: Optional[float] = None


# =============================================================================
# Middleware Support
# =============================================================================

NextHandler = Callable[[DispatchContext], Awaitable[Any]]


class Middleware(ABC):
    """Base middleware class for commands"""

    @abstractmethod
    async def process(self, ctx: DispatchContext, next_handler: NextHandler) -> Any:
        """Process message and call next handler"""
        pass


class LoggingMiddleware(Middleware):
    """Logs all commands with saga context"""

    async def process(self, ctx: DispatchContext, next_handler: NextHandler) -> Any:
        command = ctx.command
        command_type = type(command).__name__
        extra = {"command_id": command.command_id}
        saga = f" [saga: {command.saga_id}]" if command.saga_id else ""
        if command.saga_id:
            extra["saga_id"] = command.saga_id

        log.info(f"Processing command {command_type}{saga}", extra=extra)
        try:
            result = await next_handler(ctx)
            log.info(f"Successfully processed command {command_type}{saga}", extra=extra)
            return result
        except Exception as e:
            extra["error_kind"] = error_kind_of(e).value
            log.error(f"Failed to process command {command_type}{saga}: {e}", extra=extra)
            raise


class ValidationMiddleware(Middleware):
    """Runs the command's business-rule validation (pydantic covers field types)"""

    async def process(self, ctx: DispatchContext, next_handler: NextHandler) -> Any:
        ctx.result.transition(CommandStatus.VALIDATING)
        errors = ctx.command.validate_rules()
        if errors:
            raise ValidationFailedError(
                f"{type(ctx.command).__name__} failed validation: {'; '.join(errors)}",
                errors=errors,
                message_id=ctx.command.command_id,
            )
        return await next_handler(ctx)


class AuthorizationMiddleware(Middleware):
    """Checks the actor against the command's required permissions"""

    def __init__(self, authorizer: Authorizer):
        self.authorizer = authorizer

    async def process(self, ctx: DispatchContext, next_handler: NextHandler) -> Any:
        ctx.result.transition(CommandStatus.AUTHORIZING)
        command = ctx.command
        self.authorizer.check(command.actor, type(command).required_permissions, message_id=command.command_id)
        return await next_handler(ctx)


class MetricsMiddleware(Middleware):
    """Tracks command execution metrics"""

    def __init__(self):
        self.command_counts: Dict[str, int] = {}
        self.command_errors: Dict[str, int] = {}

    async def process(self, ctx: DispatchContext, next_handler: NextHandler) -> Any:
        command_name = type(ctx.command).__name__
        self.command_counts[command_name] = self.command_counts.get(command_name, 0) + 1
        start = time.perf_counter()
        try:
            result = await next_handler(ctx)
            command_dispatch_total.labels(command_type=command_name, status="completed").inc()
            return result
        except Exception as e:
            self.command_errors[command_name] = self.command_errors.get(command_name, 0) + 1
            command_dispatch_total.labels(command_type=command_name, status=error_kind_of(e).value).inc()
            raise
        finally:
            command_duration_seconds.labels(command_type=command_name).observe(time.perf_counter() - start)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "command_counts": self.command_counts.copy(),
            "command_errors": self.command_errors.copy(),
            "total_commands": sum(self.command_counts.values()),
            "total_errors": sum(self.command_errors.values())
        }


# =============================================================================
# Command Bus
# =============================================================================

class CommandBus:
    """
    Dispatches each command through

        logging -> metrics -> validation -> authorization -> execution

    Execution runs the handler inside a fresh UnitOfWork per attempt, bounded
    by the command's timeout. Retryable failures (conflicts, storage outages,
    timeouts, open circuits) are retried per the command's RetryPolicy; once
    the policy is exhausted the command is recorded in the DLQ and
    DeadLetteredError is raised. Every error leaving `dispatch` is an
    EventCoreError carrying the command id.
    """

    def __init__(
            self,
            registry: HandlerRegistry,
            event_store: Optional[EventStore] = None,
            dlq: Optional[DLQService] = None,
            authorizer: Optional[Authorizer] = None,
            config: Optional[CommandBusConfig] = None,
            circuit_breakers: Optional[CircuitBreakerRegistry] = None,
            sleep: SleepFn = asyncio.sleep,
    ):
        self.registry = registry
        self.event_store = event_store
        self.dlq = dlq
        self.config = config or CommandBusConfig()
        self.circuit_breakers = circuit_breakers or CircuitBreakerRegistry()
        self._sleep = sleep

        self._middleware: List[Middleware] = []
        self._metrics_middleware = MetricsMiddleware()
        self.use(LoggingMiddleware())
        self.use(self._metrics_middleware)
        self.use(ValidationMiddleware())
        self.use(AuthorizationMiddleware(authorizer or Authorizer()))

        self._dispatcher = AsyncCommandDispatcher(
            self._dispatch_for_worker,
            worker_count=self.config.worker_count,
            queue_max_size=self.config.queue_max_size,
            handle_retention=self.config.completed_handle_retention,
        )

    def use(self, middleware: Middleware) -> "CommandBus":
        """Add middleware to the pipeline (runs after the built-in ones)"""
        self._middleware.append(middleware)
        return self

    # -------------------------------------------------------------------------
    # Synchronous dispatch
    # -------------------------------------------------------------------------

    async def dispatch(
            self,
            command: Command,
            dead_letter: bool = True,
            deadline: Optional[float] = None,
    ) -> CommandResult:
        """
        Run the full pipeline and return once the command's events are
        committed. `dead_letter=False` skips DLQ recording (used when
        retrying an existing DLQ entry). `deadline` is an event loop time
        after which no further attempt starts and the running one is cut
        short unless its events are already appended.
        """
        result = CommandResult(command_id=command.command_id, command_type=type(command).__name__)
        result.transition(CommandStatus.RECEIVED)
        ctx = DispatchContext(command=command, result=result, dead_letter=dead_letter, deadline=deadline)
        start = time.perf_counter()

        try:
            result.result = await self._build_chain()(ctx)
        except asyncio.CancelledError:
            result.transition(CommandStatus.FAILED)
            raise
        except EventCoreError as e:
            result.transition(CommandStatus.FAILED)
            result.error_kind = e.kind
            if e.message_id is None:
                e.message_id = command.command_id
            e.details.setdefault("status_history", [s.value for s in result.history])
            raise
        except Exception as e:
            result.transition(CommandStatus.FAILED)
            result.error_kind = ErrorKind.INTERNAL
            raise EventCoreError(
                f"{type(command).__name__} failed: {e}",
                message_id=command.command_id,
                details={"status_history": [s.value for s in result.history]},
            ) from e
        finally:
            result.duration_ms = (time.perf_counter() - start) * 1000

        result.transition(CommandStatus.COMPLETED)
        return result

    def _build_chain(self) -> NextHandler:
        """Build the middleware chain ending with the retrying executor"""
        chain: NextHandler = self._execute_with_retry

        for middleware in reversed(self._middleware):
            current_chain = chain

            async def wrapped(ctx, mw=middleware, next_h=current_chain):
                return await mw.process(ctx, next_h)

            chain = wrapped

        return chain

    def retry_policy_for(self, command: Command) -> RetryPolicy:
        return command.retry_policy or RetryPolicy.from_config(self.config)

    def timeout_for(self, command: Command) -> Optional[float]:
        timeout = command.timeout_seconds if command.timeout_seconds is not None else self.config.default_timeout_seconds
        return timeout if timeout and timeout > 0 else None

    async def _execute_with_retry(self, ctx: DispatchContext) -> Any:
        command = ctx.command
        command_type = type(command).__name__
        handler = self.registry.command_handler(command_type)
        policy = self.retry_policy_for(command)

        async def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            ctx.result.transition(CommandStatus.RETRYING)
            log.warning(
                f"Command {command_type} attempt {attempt}/{policy.max_attempts} failed "
                f"({error_kind_of(error).value}), retrying in {delay:.2f}s",
                extra={"command_id": command.command_id, "error_kind": error_kind_of(error).value},
            )

        try:
            return await retry_async(
                self._attempt,
                ctx,
                handler,
                retry_config=policy.to_retry_config(),
                context=f"command:{command_type}",
                sleep=self._sleep,
                on_retry=on_retry,
            )
        except Exception as e:
            if not is_retryable(e):
                raise
            await self._exhausted(ctx, e)
            raise

    async def _attempt(self, ctx: DispatchContext, handler: ICommandHandler) -> Any:
        command = ctx.command
        command_type = type(command).__name__
        timeout = self._attempt_timeout(ctx)
        ctx.result.attempts += 1
        ctx.result.transition(CommandStatus.EXECUTING)
        command_attempts_total.labels(command_type=command_type).inc()

        if self.event_store is None:
            try:
                async with asyncio.timeout(timeout):
                    return await handler.handle(command)
            except TimeoutError as e:
                raise self._timeout_error(ctx, timeout) from e

        # The deadline covers the handler, the append and the post-commit
        # callbacks; the callbacks are shielded and finish in the background
        uow = UnitOfWork(self.event_store, metadata=command.event_metadata())
        value = None
        try:
            async with asyncio.timeout(timeout):
                async with uow:
                    value = await handler.handle(command)
        except TimeoutError as e:
            if not uow.committed:
                raise self._timeout_error(ctx, timeout) from e
            log.warning(
                f"Command {command_type} committed; post-commit work outlived its {timeout}s deadline",
                extra={"command_id": command.command_id},
            )

        staged = uow.staged_event_count
        if staged:
            ctx.result.events_appended += staged
            ctx.result.transition(CommandStatus.EVENTS_APPENDED)
        return value

    def _attempt_timeout(self, ctx: DispatchContext) -> Optional[float]:
        timeout = self.timeout_for(ctx.command)
        if ctx.deadline is None:
            return timeout
        remaining = ctx.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            error = CommandTimeoutError(
                f"{type(ctx.command).__name__} deadline passed after {ctx.result.attempts} attempt(s)",
                message_id=ctx.command.command_id,
            )
            # Later attempts would fail the same way
            error.retryable = False
            raise error
        return min(timeout, remaining) if timeout else remaining

    def _timeout_error(self, ctx: DispatchContext, timeout: Optional[float]) -> CommandTimeoutError:
        return CommandTimeoutError(
            f"{type(ctx.command).__name__} attempt {ctx.result.attempts} timed out after {timeout}s",
            message_id=ctx.command.command_id,
        )

    async def _exhausted(self, ctx: DispatchContext, error: Exception) -> None:
        """Retries used up: record in the DLQ and surface DeadLetteredError."""
        command = ctx.command
        if not (ctx.dead_letter and self.config.enable_dead_letter and self.dlq is not None):
            return
        entry = await self.dlq.add(
            command_id=command.command_id,
            command_type=type(command).__name__,
            payload=command.model_dump(mode="json"),
            error=error,
            attempts=ctx.result.attempts,
        )
        raise DeadLetteredError(
            error,
            ctx.result.attempts,
            dlq_entry_id=entry.entry_id,
            message_id=command.command_id,
        ) from error

    async def retry_dead_letter(self, entry_id: str) -> CommandResult:
        if self.dlq is None:
            raise RuntimeError("Command bus has no dead letter queue")
        return await self.dlq.retry(entry_id, self)

    # -------------------------------------------------------------------------
    # Async dispatch
    # -------------------------------------------------------------------------

    async def dispatch_async(self, command: Command) -> CommandHandle:
        """
        Queue the command for the worker pool and return immediately.
        Validation, authorization and execution all happen on the worker.
        """
        return await self._dispatcher.submit(command)

    async def _dispatch_for_worker(self, command: Command) -> CommandResult:
        return await self.dispatch(command)

    def get_async_status(self, command_id: str) -> Optional[AsyncStatus]:
        return self._dispatcher.get_status(command_id)

    def get_async_handle(self, command_id: str) -> Optional[CommandHandle]:
        return self._dispatcher.get_handle(command_id)

    async def start(self) -> None:
        await self._dispatcher.start()

    async def close(self, drain: bool = True) -> None:
        await self._dispatcher.stop(drain=drain)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self._metrics_middleware.get_metrics()
        metrics["async_queue_depth"] = self._dispatcher.queue_depth
        metrics["circuit_breakers"] = self.circuit_breakers.get_all_metrics()
        return metrics

    def get_handler_info(self) -> Dict[str, Any]:
        info = self.registry.get_handler_info()
        info["middleware_count"] = len(self._middleware)
        return info
