"""Exception taxonomy for the orchestration engine."""

from __future__ import annotations

from typing import Iterable, Optional

from hive.orchestration.models import Violation, ViolationCode


class BatchRejection(Exception):
    """A whole batch was refused before any of its tasks were admitted."""

    def __init__(self, batch_id: str, violations: Iterable[Violation]):
        self.batch_id = batch_id
        self.violations: list[Violation] = list(violations)
        summary = "; ".join(v.message for v in self.violations) or "no details"
        super().__init__(f"Batch {batch_id} rejected: {summary}")

    @property
    def codes(self) -> set[ViolationCode]:
        return {v.code for v in self.violations}

    def task_ids_for(self, code: ViolationCode) -> set[str]:
        return {tid for v in self.violations if v.code == code for tid in v.task_ids}


class TaskFailure(Exception):
    """Expected, business-level failure raised by a task body."""


class OperationNotFound(TaskFailure):
    """An authorized operation has no registered handler."""


class CapabilityDenied(Exception):
    """A worker attempted an operation or capability it was not granted."""

    def __init__(
        self,
        task_id: str,
        reason: str,
        *,
        operation: Optional[str] = None,
        capability: Optional[str] = None,
    ):
        self.task_id = task_id
        self.operation = operation
        self.capability = capability
        self.reason = reason
        super().__init__(reason)


class TaskCancelled(Exception):
    """Raised by ``WorkerContext.check_cancelled`` once cancellation is signalled."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)
