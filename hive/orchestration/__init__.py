"""
Orchestration — Delegating Work to Isolated Workers.

A batch of task descriptors is validated as a whole, ordered by its declared
dependencies, admitted into a bounded pool of worker slots, executed in
private worker contexts and reported back as one consolidated BatchReport.
Workers only reach side-effecting operations through the capability policy,
and may submit nested child batches up to a fixed depth.
"""

from __future__ import annotations

from hive.orchestration.errors import (
    BatchRejection,
    CapabilityDenied,
    OperationNotFound,
    TaskCancelled,
    TaskFailure,
)
from hive.orchestration.models import (
    Batch,
    BatchHandle,
    BatchReport,
    BatchStatus,
    ErrorKind,
    TaskDescriptor,
    TaskResult,
    TaskState,
    Violation,
    ViolationCode,
)
from hive.orchestration.orchestrator import Orchestrator
from hive.orchestration.policy import CapabilityPolicy, CapabilityRegistry
from hive.orchestration.runners import (
    CallableRunner,
    PayloadRunnerBase,
    RoutingRunner,
    ScriptedRunner,
)

__all__ = [
    "Batch",
    "BatchHandle",
    "BatchRejection",
    "BatchReport",
    "BatchStatus",
    "CallableRunner",
    "CapabilityDenied",
    "CapabilityPolicy",
    "CapabilityRegistry",
    "ErrorKind",
    "OperationNotFound",
    "Orchestrator",
    "PayloadRunnerBase",
    "RoutingRunner",
    "ScriptedRunner",
    "TaskCancelled",
    "TaskDescriptor",
    "TaskFailure",
    "TaskResult",
    "TaskState",
    "Violation",
    "ViolationCode",
]
