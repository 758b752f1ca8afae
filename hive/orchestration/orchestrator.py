"""
Orchestrator — The Public Entry Point.

Accepts batches of task descriptors and drives them through the pipeline:

  submit  -> validate -> build dependency graph -> admit into the scheduler
  workers -> TaskResults -> aggregator -> batch completion

Key responsibilities:
  - Reject malformed or oversized batches synchronously (BatchRejection)
  - Bound concurrency through one shared scheduler and slot pool
  - Handle nested submissions from running workers as child batches
  - Cancel batches and, recursively, the child batches they spawned
  - Emit lifecycle events and clean up on shutdown

Individual task failures never raise here; they are outcomes in the report.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, AsyncIterator, Mapping, Optional

import structlog

from hive.events import (
    BatchCancelledEvent,
    BatchCompletedEvent,
    BatchRejectedEvent,
    BatchSubmittedEvent,
    EventBus,
    HiveEvent,
    TaskFinishedEvent,
    TaskStartedEvent,
)
from hive.orchestration.aggregator import ResultAggregator
from hive.orchestration.errors import BatchRejection
from hive.orchestration.executor import OperationHandler, WorkerExecutor
from hive.orchestration.graph import DependencyGraph
from hive.orchestration.models import (
    REASON_CANCELLED,
    Batch,
    BatchHandle,
    BatchReport,
    OrchestratorStatus,
    TaskDescriptor,
    TaskResult,
    Violation,
    ViolationCode,
)
from hive.orchestration.policy import CapabilityPolicy, CapabilityRegistry
from hive.orchestration.runners import PayloadRunnerBase
from hive.orchestration.scheduler import Scheduler
from hive.orchestration.validator import validate_batch

if TYPE_CHECKING:
    from hive.config import OrchestrationConfig
    from hive.orchestration.executor import WorkerContext

logger = structlog.get_logger(__name__)


class Orchestrator:
    """Submit, collect and cancel batches of isolated tasks."""

    def __init__(
        self,
        config: "OrchestrationConfig",
        runner: PayloadRunnerBase,
        registry: Optional[CapabilityRegistry] = None,
        operations: Optional[Mapping[str, OperationHandler]] = None,
        event_bus: Optional[EventBus] = None,
        policy: Optional[CapabilityPolicy] = None,
    ):
        self._config = config
        self._registry = registry if registry is not None else _load_registry(config)
        self._policy = policy or CapabilityPolicy(self._registry)
        self._event_bus = event_bus
        self._default_capabilities = frozenset(config.default_capabilities)

        self._executor = WorkerExecutor(
            runner,
            self._policy,
            operations=operations,
            default_timeout=config.default_timeout,
        )
        self._executor.bind_spawner(self)
        self._aggregator = ResultAggregator(
            max_retained_batches=config.max_retained_batches,
            on_complete=self._on_batch_complete,
        )
        self._scheduler = Scheduler(
            self._executor,
            result_sink=self._on_task_result,
            max_concurrent=config.max_concurrent_tasks,
            max_queued=config.max_queued_tasks,
            on_dispatch=self._on_dispatch,
        )

        self._handles: dict[str, BatchHandle] = {}
        # parent batch_id -> child batch_ids
        self._children: dict[str, list[str]] = {}
        self._closed = False

        logger.info(
            "orchestrator.initialized",
            max_concurrent=self._scheduler.max_concurrent,
            max_queued=self._scheduler.max_queued,
            max_depth=config.max_nesting_depth,
            capabilities=len(self._registry),
        )

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def policy(self) -> CapabilityPolicy:
        return self._policy

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(
        self,
        batch: Batch,
        *,
        parent: Optional["WorkerContext"] = None,
    ) -> BatchHandle:
        """Validate and admit a batch. Raises BatchRejection; nothing is
        scheduled unless every check passes."""
        depth = parent.depth + 1 if parent is not None else 0
        try:
            batch = self._apply_defaults(batch)
            self._check_admissible(batch, depth)
            descriptors = validate_batch(batch, self._registry)
            graph = DependencyGraph.build(descriptors, batch_id=batch.batch_id)
            self._scheduler.check_capacity(batch.batch_id, len(descriptors))
        except BatchRejection as exc:
            logger.warning(
                "orchestration.rejected",
                batch_id=batch.batch_id,
                codes=sorted(c.value for c in exc.codes),
                depth=depth,
            )
            self._emit_rejected(exc)
            raise

        handle = BatchHandle(
            batch_id=batch.batch_id,
            task_ids=tuple(batch.task_ids),
            depth=depth,
            parent_batch_id=parent.batch_id if parent is not None else None,
            parent_task_id=parent.task_id if parent is not None else None,
        )
        self._handles[batch.batch_id] = handle
        if parent is not None:
            self._children.setdefault(parent.batch_id, []).append(batch.batch_id)
        self._emit_submitted(handle)
        self._aggregator.open_batch(batch.batch_id, batch.task_ids, created_at=batch.created_at)

        logger.info(
            "orchestration.submit",
            batch_id=batch.batch_id,
            tasks=len(descriptors),
            depth=depth,
            parent_task_id=handle.parent_task_id,
        )
        if descriptors:
            self._scheduler.admit(batch.batch_id, descriptors, graph, depth=depth)
        return handle

    def _apply_defaults(self, batch: Batch) -> Batch:
        if not self._default_capabilities:
            return batch
        if all(task.capabilities for task in batch.tasks):
            return batch
        tasks = tuple(
            task if task.capabilities
            else task.model_copy(update={"capabilities": self._default_capabilities})
            for task in batch.tasks
        )
        return batch.model_copy(update={"tasks": tasks})

    def _check_admissible(self, batch: Batch, depth: int) -> None:
        violations: list[Violation] = []
        if self._closed:
            violations.append(Violation(
                code=ViolationCode.ORCHESTRATOR_CLOSED,
                message="Orchestrator is shut down",
            ))
        if depth >= self._config.max_nesting_depth:
            violations.append(Violation(
                code=ViolationCode.DEPTH_EXCEEDED,
                message=(
                    f"Maximum nesting depth ({self._config.max_nesting_depth}) "
                    f"exceeded at depth {depth}"
                ),
            ))
        if batch.batch_id in self._handles or batch.batch_id in self._aggregator:
            violations.append(Violation(
                code=ViolationCode.DUPLICATE_BATCH,
                message=f"Batch '{batch.batch_id}' was already submitted",
            ))
        if violations:
            raise BatchRejection(batch.batch_id, violations)

    # ------------------------------------------------------------------
    # Collect / observe
    # ------------------------------------------------------------------

    async def collect(
        self,
        handle: BatchHandle | str,
        timeout: Optional[float] = None,
    ) -> BatchReport:
        """Wait for every task of the batch to be terminal.

        Raises TimeoutError if ``timeout`` elapses first (the batch keeps
        running) and KeyError for unknown or evicted batches.
        """
        return await self._aggregator.wait(_batch_id(handle), timeout=timeout)

    async def collect_child(
        self,
        handle: BatchHandle,
        *,
        parent: "WorkerContext",
    ) -> BatchReport:
        """Collect a child batch from inside a running worker.

        The parent's slot is parked for the duration so the child's tasks can
        use it, then reacquired before the parent continues. A parent
        cancelled while parked never takes a slot back.
        """
        parked = self._scheduler.park(parent.key)
        report = await self.collect(handle)
        if parked:
            await self._scheduler.resume(parent.key)
        return report

    def snapshot(self, handle: BatchHandle | str) -> BatchReport:
        return self._aggregator.snapshot(_batch_id(handle))

    async def stream(self, handle: BatchHandle | str) -> AsyncIterator[TaskResult]:
        """Yield TaskResults in arrival order until the batch completes."""
        queue = self._aggregator.subscribe(_batch_id(handle))
        while True:
            result = await queue.get()
            if result is None:
                return
            yield result

    def status(self) -> OrchestratorStatus:
        counters = self._scheduler.counters()
        return OrchestratorStatus(
            running=counters["running"],
            parked=counters["parked"],
            eligible=counters["eligible"],
            queued=counters["queued"],
            admitted=counters["admitted"],
            max_concurrent=self._scheduler.max_concurrent,
            max_queued=self._scheduler.max_queued,
            active_batches=self._aggregator.active_count,
            retained_batches=self._aggregator.retained_count,
        )

    def handle_for(self, batch_id: str) -> Optional[BatchHandle]:
        return self._handles.get(batch_id)

    # ------------------------------------------------------------------
    # Cancel / shutdown
    # ------------------------------------------------------------------

    async def cancel(self, handle: BatchHandle | str, reason: str = REASON_CANCELLED) -> bool:
        """Cancel a batch and every child batch spawned from it.

        Returns False if the batch had already completed.
        """
        batch_id = _batch_id(handle)
        if batch_id not in self._aggregator:
            raise KeyError(f"Unknown batch '{batch_id}'")
        return self._cancel_tree(batch_id, reason)

    def release_children(self, parent: "WorkerContext") -> int:
        """Cancel the child batches a finished worker left open.

        Called when the parent's run ends, however it ends. A parent that was
        cancelled or timed out passes its own reason down.
        """
        reason = parent.cancel_reason if parent.cancelled else REASON_CANCELLED
        released = 0
        for handle in parent.children:
            if handle.batch_id in self._aggregator and self._cancel_tree(handle.batch_id, reason):
                released += 1
        if released:
            logger.info(
                "orchestration.release_children",
                batch_id=parent.batch_id,
                task_id=parent.task_id,
                released=released,
                reason=reason,
            )
        return released

    def _cancel_tree(self, batch_id: str, reason: str) -> bool:
        if self._aggregator.is_complete(batch_id):
            return False

        # Children first, so their parents are not woken by a child report.
        for child_id in list(self._children.get(batch_id, [])):
            if child_id in self._aggregator:
                self._cancel_tree(child_id, reason)

        self._aggregator.mark_cancelled(batch_id)
        affected = self._scheduler.cancel_batch(batch_id, reason)
        logger.info("orchestration.cancel", batch_id=batch_id, affected=affected)
        self._emit(BatchCancelledEvent(batch_id=batch_id, affected=affected))
        return True

    async def shutdown(self) -> None:
        """Refuse new work, cancel everything, wait briefly for workers."""
        if self._closed:
            return
        self._closed = True
        active = self._scheduler.batch_ids()
        logger.info("orchestrator.shutting_down", active_batches=len(active))

        for batch_id in active:
            if batch_id in self._aggregator and not self._aggregator.is_complete(batch_id):
                await self.cancel(batch_id)

        pending = [
            self._aggregator.wait(batch_id)
            for batch_id in active
            if batch_id in self._aggregator
        ]
        if pending:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout=self._config.shutdown_grace_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "orchestrator.shutdown_timeout",
                    remaining=self._executor.active_count,
                )
        logger.info("orchestrator.shutdown_complete")

    # ------------------------------------------------------------------
    # Internal callbacks (run synchronously on the event loop)
    # ------------------------------------------------------------------

    def _on_dispatch(self, batch_id: str, descriptor: TaskDescriptor) -> None:
        self._emit(TaskStartedEvent(
            batch_id=batch_id,
            task_id=descriptor.task_id,
            agent=descriptor.agent,
        ))

    def _on_task_result(self, result: TaskResult) -> None:
        # The scheduler finalizes each task once; emit before recording so
        # the task event precedes the batch completion it may trigger.
        self._emit(TaskFinishedEvent(
            batch_id=result.batch_id,
            task_id=result.task_id,
            state=result.state.value,
            error_kind=result.error_kind.value if result.error_kind else None,
            elapsed_seconds=result.elapsed_seconds,
        ))
        self._aggregator.record(result)

    def _on_batch_complete(self, report: BatchReport) -> None:
        handle = self._handles.pop(report.batch_id, None)
        self._children.pop(report.batch_id, None)
        if handle is not None and handle.parent_batch_id in self._children:
            siblings = self._children[handle.parent_batch_id]
            if report.batch_id in siblings:
                siblings.remove(report.batch_id)
        self._emit(BatchCompletedEvent(
            batch_id=report.batch_id,
            status=report.status.value,
            counts=report.counts,
            elapsed_seconds=report.elapsed_seconds,
        ))

    def _emit_submitted(self, handle: BatchHandle) -> None:
        self._emit(BatchSubmittedEvent(
            batch_id=handle.batch_id,
            task_count=len(handle.task_ids),
            depth=handle.depth,
            parent_batch_id=handle.parent_batch_id,
            parent_task_id=handle.parent_task_id,
        ))

    def _emit_rejected(self, exc: BatchRejection) -> None:
        self._emit(BatchRejectedEvent(
            batch_id=exc.batch_id,
            codes=sorted(c.value for c in exc.codes),
            message=str(exc),
        ))

    def _emit(self, event: HiveEvent) -> None:
        """Emit an event on the bus if one is attached."""
        if self._event_bus is None:
            return
        try:
            self._event_bus.emit(event)
        except Exception:
            logger.debug("orchestrator.emit_event_failed", exc_info=True)


def _batch_id(handle: BatchHandle | str) -> str:
    return handle if isinstance(handle, str) else handle.batch_id


def _load_registry(config: "OrchestrationConfig") -> CapabilityRegistry:
    if config.capabilities_file is not None:
        return CapabilityRegistry.from_file(config.capabilities_file)
    return CapabilityRegistry()
