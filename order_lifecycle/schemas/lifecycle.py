"""Lifecycle states and the tagged results each orchestrator stage returns.

A stage never raises to report a business outcome. It returns one of the
variants below and the orchestrator branches on the variant, so every failure
path is an ordinary return value that can be inspected and tested.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from order_lifecycle.schemas.order import ValidatedOrder


class LifecycleState(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    VALIDATED = "VALIDATED"
    STORING = "STORING"
    STORED = "STORED"
    PROCESSING = "PROCESSING"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    STORAGE_FAILED = "STORAGE_FAILED"


LIFECYCLE_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.PENDING: {LifecycleState.VALIDATING},
    LifecycleState.VALIDATING: {LifecycleState.VALIDATED, LifecycleState.VALIDATION_FAILED},
    LifecycleState.VALIDATED: {LifecycleState.STORING},
    LifecycleState.STORING: {LifecycleState.STORED, LifecycleState.STORAGE_FAILED},
    LifecycleState.STORED: {LifecycleState.PROCESSING},
    LifecycleState.PROCESSING: {LifecycleState.FULFILLED, LifecycleState.FAILED},
    LifecycleState.FULFILLED: set(),
    LifecycleState.FAILED: set(),
    LifecycleState.VALIDATION_FAILED: set(),
    LifecycleState.STORAGE_FAILED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in LIFECYCLE_TRANSITIONS.items() if not targets)


def is_valid_transition(current: LifecycleState, target: LifecycleState) -> bool:
    return target in LIFECYCLE_TRANSITIONS[current]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Validated(BaseModel):
    kind: Literal["validated"] = "validated"
    order: ValidatedOrder


class ValidationFailed(BaseModel):
    kind: Literal["validation_failed"] = "validation_failed"
    error: str = "VALIDATION_FAILED"
    message: str = "Validation failed"
    errors: List[str]
    original_payload: Dict[str, Any]
    timestamp: datetime = Field(default_factory=_now)


class StorageFailureReason(str, Enum):
    ALREADY_EXISTS = "ALREADY_EXISTS"
    STORE_ERROR = "STORE_ERROR"
    QUEUE_ERROR = "QUEUE_ERROR"


class Stored(BaseModel):
    kind: Literal["stored"] = "stored"
    order_id: str
    status: str = "STORED"
    message_id: str
    timestamp: datetime = Field(default_factory=_now)


class StorageFailed(BaseModel):
    kind: Literal["storage_failed"] = "storage_failed"
    error: str = "STORAGE_FAILED"
    reason: StorageFailureReason
    message: str
    original_payload: Dict[str, Any]
    timestamp: datetime = Field(default_factory=_now)


ValidationOutcome = Union[Validated, ValidationFailed]
StorageOutcome = Union[Stored, StorageFailed]
StageOutcome = Union[Validated, ValidationFailed, Stored, StorageFailed]


class RunResult(BaseModel):
    order_id: Optional[str]
    state: LifecycleState
    history: List[LifecycleState]
    outcome: StageOutcome = Field(discriminator="kind")

    @property
    def succeeded(self) -> bool:
        return self.state == LifecycleState.STORED


class RunStatusResponse(BaseModel):
    run_handle: str
    order_id: str
    state: LifecycleState
    done: bool
    result: Optional[RunResult] = None
    error: Optional[str] = None
