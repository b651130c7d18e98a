# =============================================================================
# File: eventcore/infra/saga/saga_manager.py
# Description: Saga coordinator - runs multi-step workflows over the command
#              bus and compensates completed steps on failure or timeout
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type, Union

from eventcore.common.exceptions.exceptions import CommandTimeoutError, ErrorKind, error_kind_of
from eventcore.config.saga_config import SagaConfig
from eventcore.infra.cqrs.command_bus import Command, CommandBus, CommandResult
from eventcore.infra.saga.saga_state import SagaState, SagaStatus, StepRecord, StepStatus
from eventcore.infra.saga.saga_state_store import InMemorySagaStateStore, SagaStateStore
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock
from eventcore.utils.serialization import canonical_json

log = logging.getLogger("eventcore.saga")

CommandBuilder = Callable[[SagaState], Command]
CompensationBuilder = Callable[[SagaState], Optional[Command]]


@dataclass
class SagaStep:
    """
    One step of a saga.

    `command` builds the step's command from the saga state (its `data` and
    the results of earlier steps). `compensation` builds the command that
    undoes the step; None means the step has nothing to undo. A builder may
    also return None to skip compensation for a particular run.
    """
    name: str
    command: CommandBuilder
    compensation: Optional[CompensationBuilder] = None
    timeout_seconds: Optional[float] = None


class BaseSaga(ABC):
    """Base class for saga definitions"""

    # Defaults to the class name
    saga_type: ClassVar[Optional[str]] = None
    # None uses SagaConfig.default_timeout_seconds
    timeout_seconds: ClassVar[Optional[float]] = None

    @abstractmethod
    def define_steps(self) -> List[SagaStep]:
        """Define saga steps in execution order"""
        pass

    @classmethod
    def get_saga_type(cls) -> str:
        return cls.saga_type or cls.__name__


class SagaStepTimeoutError(TimeoutError):
    """A step or the saga deadline ran out"""


class SagaRegistry:
    """Saga definitions by type name"""

    def __init__(self):
        self._sagas: Dict[str, Type[BaseSaga]] = {}

    def register(self, saga_class: Type[BaseSaga]) -> Type[BaseSaga]:
        saga_type = saga_class.get_saga_type()
        if saga_type in self._sagas:
            raise ValueError(f"DUPLICATE SAGA: {saga_type} is already registered")
        self._sagas[saga_type] = saga_class
        log.info(f"Registered saga: {saga_type}")
        return saga_class

    def get(self, saga_type: Union[str, Type[BaseSaga]]) -> Type[BaseSaga]:
        name = saga_type if isinstance(saga_type, str) else saga_type.get_saga_type()
        try:
            return self._sagas[name]
        except KeyError:
            raise KeyError(f"No saga registered for {name}") from None

    def __contains__(self, saga_type: str) -> bool:
        return saga_type in self._sagas

    def saga_types(self) -> List[str]:
        return sorted(self._sagas)


class SagaManager:
    """
    Runs sagas step by step through the command bus.

        started -> in_progress (step 0..n) -> completed

    A step failure, step timeout or saga deadline moves the saga to
    `compensating`: completed steps are compensated in reverse order. If
    every compensation succeeds the saga ends `compensated`; otherwise it
    ends `failed` with the failing compensations recorded for manual
    intervention (see `retry_compensation`).

    State is saved after every transition so `resume()` can pick up a saga
    left mid-flight by a crashed process.
    """

    def __init__(
            self,
            command_bus: CommandBus,
            registry: SagaRegistry,
            state_store: Optional[SagaStateStore] = None,
            config: Optional[SagaConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        self.command_bus = command_bus
        self.registry = registry
        self.state_store = state_store or InMemorySagaStateStore()
        self.config = config or SagaConfig()
        self._clock = clock
        self._metrics: Dict[str, int] = {
            "started": 0,
            "completed": 0,
            "compensated": 0,
            "failed": 0,
            "resumed": 0,
        }

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(
            self,
            saga_type: Union[str, Type[BaseSaga]],
            data: Optional[Dict[str, Any]] = None,
            saga_id: Optional[str] = None,
            correlation_id: Optional[str] = None,
    ) -> SagaState:
        """Run a saga to a terminal status and return its final state."""
        saga_class = self.registry.get(saga_type)
        saga = saga_class()
        steps = saga.define_steps()
        now = self._clock.now()
        timeout = saga_class.timeout_seconds or self.config.default_timeout_seconds
        saga_id = saga_id or str(uuid.uuid4())

        state = SagaState(
            saga_id=saga_id,
            saga_type=saga_class.get_saga_type(),
            data=dict(data or {}),
            steps=[StepRecord(name=step.name) for step in steps],
            correlation_id=correlation_id or saga_id,
            started_at=now,
            updated_at=now,
            timeout_at=now + timedelta(seconds=timeout) if timeout and timeout > 0 else None,
        )
        await self._save(state)
        self._metrics["started"] += 1
        log.info(f"Saga {state.saga_type} started with {len(steps)} steps", extra={"saga_id": saga_id})

        return await self._execute(state, steps)

    async def resume(self, saga_id: str) -> SagaState:
        """
        Reload a saga and finish it. A saga interrupted while running steps
        is compensated (its in-flight step is treated as failed); one
        interrupted while compensating continues compensating. Terminal
        sagas are returned unchanged.
        """
        state = await self._load(saga_id)
        if state.is_terminal:
            return state

        steps = self.registry.get(state.saga_type)().define_steps()
        self._metrics["resumed"] += 1
        log.warning(f"Resuming saga {state.saga_type} from status {state.status.value}", extra={"saga_id": saga_id})

        if state.status != SagaStatus.COMPENSATING:
            for record in state.steps:
                if record.status == StepStatus.RUNNING:
                    record.status = StepStatus.FAILED
                    record.error = "Interrupted before completion"
                    record.finished_at = self._clock.now()
            self._record_error(state, None, "Saga interrupted", ErrorKind.INTERNAL)

        return await self._compensate(state, steps)

    async def recover_incomplete(self) -> List[SagaState]:
        """Resume every saga the store holds in a non-terminal status."""
        recovered = []
        for state in await self.state_store.list_incomplete():
            try:
                recovered.append(await self.resume(state.saga_id))
            except KeyError as e:
                log.error(f"Cannot resume saga {state.saga_id}: {e}", extra={"saga_id": state.saga_id})
        return recovered

    async def retry_compensation(self, saga_id: str) -> SagaState:
        """Re-run the failed compensations of a saga that ended `failed`."""
        state = await self._load(saga_id)
        if state.status != SagaStatus.FAILED:
            raise ValueError(f"Saga {saga_id} is {state.status.value}, only failed sagas can be retried")
        steps = self.registry.get(state.saga_type)().define_steps()
        for record in state.steps:
            if record.status == StepStatus.COMPENSATION_FAILED:
                record.status = StepStatus.COMPLETED
        return await self._compensate(state, steps)

    async def get_saga_status(self, saga_id: str) -> Optional[SagaState]:
        return await self.state_store.load(saga_id)

    def get_metrics(self) -> Dict[str, int]:
        return self._metrics.copy()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(self, state: SagaState, steps: List[SagaStep]) -> SagaState:
        state.status = SagaStatus.IN_PROGRESS
        await self._save(state)

        for index, step in enumerate(steps):
            record = state.steps[index]
            if record.status == StepStatus.COMPLETED:
                continue

            state.current_step = index
            record.status = StepStatus.RUNNING
            record.started_at = self._clock.now()
            await self._save(state)

            try:
                command = self._prepare(step.command(state), state)
                record.command_type = type(command).__name__
                record.command_id = command.command_id
                result = await self._dispatch(command, self._step_timeout(step, state))
            except Exception as e:
                record.status = StepStatus.FAILED
                record.error = str(e)
                record.error_kind = error_kind_of(e).value
                record.finished_at = self._clock.now()
                self._record_error(state, step.name, f"Step failed: {e}", error_kind_of(e))
                log.error(
                    f"Saga {state.saga_type} step '{step.name}' failed: {e}",
                    extra={"saga_id": state.saga_id, "error_kind": error_kind_of(e).value},
                )
                return await self._compensate(state, steps)

            record.status = StepStatus.COMPLETED
            record.result = _storable(result.result)
            record.finished_at = self._clock.now()
            await self._save(state)
            log.debug(f"Saga {state.saga_type} step '{step.name}' completed", extra={"saga_id": state.saga_id})

        state.status = SagaStatus.COMPLETED
        state.completed_at = self._clock.now()
        await self._save(state)
        self._metrics["completed"] += 1
        log.info(f"Saga {state.saga_type} completed", extra={"saga_id": state.saga_id})
        return state

    async def _compensate(self, state: SagaState, steps: List[SagaStep]) -> SagaState:
        """Compensate completed steps in reverse order"""
        state.status = SagaStatus.COMPENSATING
        await self._save(state)
        by_name = {step.name: step for step in steps}
        failures = 0

        for record in reversed(state.steps):
            if record.status != StepStatus.COMPLETED:
                continue
            step = by_name.get(record.name)
            if step is None or step.compensation is None:
                record.status = StepStatus.COMPENSATED
                continue

            try:
                command = step.compensation(state)
                if command is not None:
                    command = self._prepare(command, state)
                    record.compensation_command_id = command.command_id
                    await self._dispatch(command, self.config.compensation_timeout_seconds)
                record.status = StepStatus.COMPENSATED
                log.info(f"Compensated step '{record.name}'", extra={"saga_id": state.saga_id})
            except Exception as e:
                failures += 1
                record.status = StepStatus.COMPENSATION_FAILED
                record.error = str(e)
                record.error_kind = error_kind_of(e).value
                self._record_error(state, record.name, f"Compensation failed: {e}", error_kind_of(e))
                log.error(
                    f"Compensation of step '{record.name}' failed: {e}",
                    extra={"saga_id": state.saga_id, "error_kind": error_kind_of(e).value},
                )
            await self._save(state)

        state.completed_at = self._clock.now()
        if failures:
            state.status = SagaStatus.FAILED
            self._metrics["failed"] += 1
            log.critical(
                f"Saga {state.saga_type} needs manual intervention: {failures} compensation(s) failed",
                extra={"saga_id": state.saga_id},
            )
        else:
            state.status = SagaStatus.COMPENSATED
            self._metrics["compensated"] += 1
            log.info(f"Saga {state.saga_type} compensated", extra={"saga_id": state.saga_id})
        await self._save(state)
        return state

    async def _dispatch(self, command: Command, timeout: Optional[float]) -> CommandResult:
        # Compensation owns recovery for saga commands, so they skip the DLQ.
        # The bus enforces the deadline and reports a command whose events
        # were appended as completed even if the deadline passed afterwards.
        deadline = asyncio.get_running_loop().time() + timeout if timeout else None
        try:
            return await self.command_bus.dispatch(command, dead_letter=False, deadline=deadline)
        except CommandTimeoutError as e:
            raise SagaStepTimeoutError(f"{type(command).__name__} did not finish within {timeout}s") from e

    def _step_timeout(self, step: SagaStep, state: SagaState) -> Optional[float]:
        timeout = step.timeout_seconds or self.config.default_step_timeout_seconds
        if state.timeout_at is not None:
            remaining = (state.timeout_at - self._clock.now()).total_seconds()
            if remaining <= 0:
                raise SagaStepTimeoutError(f"Saga {state.saga_type} deadline passed before step '{step.name}'")
            timeout = min(timeout, remaining) if timeout else remaining
        return timeout if timeout and timeout > 0 else None

    @staticmethod
    def _prepare(command: Command, state: SagaState) -> Command:
        return command.model_copy(update={"saga_id": state.saga_id, "correlation_id": state.correlation_id})

    def _record_error(self, state: SagaState, step: Optional[str], message: str, kind: ErrorKind) -> None:
        state.errors.append({
            "step": step,
            "message": message,
            "error_kind": kind.value,
            "at": self._clock.now().isoformat(),
        })

    async def _save(self, state: SagaState) -> None:
        state.updated_at = self._clock.now()
        await self.state_store.save(state)

    async def _load(self, saga_id: str) -> SagaState:
        state = await self.state_store.load(saga_id)
        if state is None:
            raise KeyError(f"Saga {saga_id} not found")
        return state


def _storable(value: Any) -> Any:
    """JSON form of a step result, or its repr when it has none."""
    try:
        return json.loads(canonical_json(value))
    except (TypeError, ValueError):
        return repr(value)
