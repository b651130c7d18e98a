# eventcore/infra/saga/saga_state.py
"""
Durable saga state.

A saga's progress is an explicit pydantic model. It is persisted with
`model_dump_json()` and restored with `model_validate_json()`; nothing
about a running saga is rebuilt from live objects. `schema_version`
lets stored states from older releases be migrated on load.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class SagaStatus(str, Enum):
    """Saga execution status"""
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPENSATING = "compensating"
    COMPLETED = "completed"
    COMPENSATED = "compensated"
    FAILED = "failed"


TERMINAL_SAGA_STATUSES = frozenset({SagaStatus.COMPLETED, SagaStatus.COMPENSATED, SagaStatus.FAILED})

StateMigration = Callable[[Dict[str, Any]], Dict[str, Any]]

# from_version -> upgrade of a stored state dict to from_version + 1
_MIGRATIONS: Dict[int, StateMigration] = {}


def saga_state_migration(from_version: int) -> Callable[[StateMigration], StateMigration]:
    """
    Register how a stored state moves from `from_version` to the next one.

    Migrations run on load, one version at a time, before validation; the
    migrated state is written back the next time the saga is saved.
    """
    def decorator(func: StateMigration) -> StateMigration:
        if from_version in _MIGRATIONS:
            raise ValueError(f"Saga state migration from v{from_version} already registered")
        _MIGRATIONS[from_version] = func
        return func
    return decorator


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class StepRecord(BaseModel):
    """Outcome of one step"""
    name: str
    status: StepStatus = StepStatus.PENDING
    command_type: Optional[str] = None
    command_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    compensation_command_id: Optional[str] = None


class SagaState(BaseModel):
    """State of one saga instance"""

    SCHEMA_VERSION: ClassVar[int] = 1

    schema_version: int = Field(default_factory=lambda: SagaState.SCHEMA_VERSION)
    saga_id: str
    saga_type: str
    status: SagaStatus = SagaStatus.STARTED
    current_step: int = -1
    data: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepRecord] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    timeout_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _migrate_schema(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        version = data.get("schema_version", cls.SCHEMA_VERSION)
        if version > cls.SCHEMA_VERSION:
            raise ValueError(
                f"Saga state schema v{version} is newer than supported v{cls.SCHEMA_VERSION}"
            )
        while version < cls.SCHEMA_VERSION:
            migration = _MIGRATIONS.get(version)
            if migration is None:
                raise ValueError(f"No saga state migration from schema v{version}")
            data = migration(dict(data))
            version += 1
            data["schema_version"] = version
        return data

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SAGA_STATUSES

    def step(self, name: str) -> Optional[StepRecord]:
        for record in self.steps:
            if record.name == name:
                return record
        return None

    def step_result(self, name: str) -> Any:
        record = self.step(name)
        return record.result if record is not None else None

    def completed_steps(self) -> List[StepRecord]:
        return [s for s in self.steps if s.status == StepStatus.COMPLETED]
