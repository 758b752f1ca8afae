"""
Orchestration Data Models — The Language of Delegation.

These Pydantic models define the contract between the orchestrator and its
workers. Every batch submission, every task outcome, every consolidated report
flows through these structures.

TaskDescriptor describes *what* to do. TaskResult describes *what happened*.
Batch groups tasks that complete as a unit. BatchReport aggregates their
outcomes.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def new_batch_id() -> str:
    return f"batch-{uuid.uuid4().hex[:12]}"


class TaskState(str, Enum):
    """Per-task lifecycle: queued -> eligible -> running -> terminal."""

    QUEUED = "queued"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED})


class ErrorKind(str, Enum):
    """Why a task did not succeed."""

    CAPABILITY_DENIED = "capability_denied"
    WORKER_FAULT = "worker_fault"
    TASK_ERROR = "task_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    DEPENDENCY_FAILED = "dependency_failed"


class BatchStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_CANCELLED = "partially_cancelled"


class ViolationCode(str, Enum):
    """Reasons a whole batch is rejected before anything is scheduled."""

    EMPTY_TASK_ID = "empty_task_id"
    DUPLICATE_TASK_ID = "duplicate_task_id"
    UNKNOWN_CAPABILITY = "unknown_capability"
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    SELF_DEPENDENCY = "self_dependency"
    DEPENDENCY_CYCLE = "dependency_cycle"
    QUEUE_FULL = "queue_full"
    DEPTH_EXCEEDED = "depth_exceeded"
    DUPLICATE_BATCH = "duplicate_batch"
    ORCHESTRATOR_CLOSED = "orchestrator_closed"


# Cancellation reasons recorded on Cancelled results.
REASON_CANCELLED = "cancelled"
REASON_TIMEOUT = "timeout"
REASON_DEPENDENCY_FAILED = "dependency failed"


class TaskDescriptor(BaseModel):
    """Definition of a single unit of work."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    agent: str = ""  # persona / worker name, used by routing runners
    capabilities: frozenset[str] = Field(default_factory=frozenset)
    payload: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    priority: int = 0  # higher runs first
    timeout_seconds: Optional[float] = Field(None, gt=0)


class Batch(BaseModel):
    """Immutable set of tasks submitted and aggregated together."""

    model_config = ConfigDict(frozen=True)

    batch_id: str = Field(default_factory=new_batch_id)
    tasks: tuple[TaskDescriptor, ...] = ()
    description: str = ""
    created_at: float = Field(default_factory=time.time)

    @property
    def task_ids(self) -> list[str]:
        return [task.task_id for task in self.tasks]


class BatchHandle(BaseModel):
    """Caller-side reference to a submitted batch."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    task_ids: tuple[str, ...]
    depth: int = 0
    parent_batch_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    submitted_at: float = Field(default_factory=time.time)


class TaskResult(BaseModel):
    """Terminal outcome of one admitted task."""

    task_id: str
    batch_id: str
    state: TaskState
    output: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: float = Field(default_factory=time.time)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.SUCCEEDED


class BatchReport(BaseModel):
    """Consolidated (or in-flight) view of a batch."""

    batch_id: str
    status: BatchStatus
    results: list[TaskResult] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    cancelled: bool = False
    created_at: float = 0.0
    completed_at: Optional[float] = None
    elapsed_seconds: float = 0.0

    @property
    def complete(self) -> bool:
        return self.status != BatchStatus.RUNNING

    def result_for(self, task_id: str) -> Optional[TaskResult]:
        for result in self.results:
            if result.task_id == task_id:
                return result
        return None


class Violation(BaseModel):
    """One reason a batch was rejected."""

    code: ViolationCode
    message: str
    task_ids: tuple[str, ...] = ()


class OrchestratorStatus(BaseModel):
    """Lightweight snapshot of scheduler occupancy."""

    running: int = 0
    parked: int = 0
    eligible: int = 0
    queued: int = 0
    admitted: int = 0
    max_concurrent: int = 0
    max_queued: int = 0
    active_batches: int = 0
    retained_batches: int = 0
