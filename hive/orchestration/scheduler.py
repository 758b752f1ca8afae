"""
Scheduler — Admission, Ordering and Worker Slots.

Per-task state machine::

    queued -> eligible -> running -> {succeeded, failed}
       \\          \\          \\
        +----------+----------+-> cancelled

A task stays *queued* until every predecessor has succeeded, sits in the
ready heap as *eligible* until a worker slot frees up, and is *running* while
it holds a slot. Two bounds apply: the concurrency ceiling (slots) and the
queue-depth ceiling (admitted-but-not-terminal tasks across all batches,
checked once at admission).

Eligible tasks leave the ready heap by priority, then submission order: the
earlier-admitted batch first, then position within the batch.

Every mutation happens in a plain synchronous method called on the event
loop, so the loop itself is the single coordination point: no ``await`` ever
happens while slot accounting or the ready heap is half-updated. Any slot
release ends in ``_pump()``, which refills free slots before returning.

Nested submission: a running parent that waits on a child batch *parks* its
slot (returns it to the pool) and asks for one back when the child is done.
Parked waiters are served before eligible tasks, so recursive fan-out cannot
deadlock the pool.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import structlog

from hive.orchestration.errors import BatchRejection
from hive.orchestration.executor import TaskKey, WorkerExecutor
from hive.orchestration.graph import DependencyGraph
from hive.orchestration.models import (
    REASON_CANCELLED,
    REASON_DEPENDENCY_FAILED,
    ErrorKind,
    TaskDescriptor,
    TaskResult,
    TaskState,
    Violation,
    ViolationCode,
)

logger = structlog.get_logger(__name__)

ResultSink = Callable[[TaskResult], None]
DispatchHook = Callable[[str, TaskDescriptor], None]


@dataclass
class _Entry:
    descriptor: TaskDescriptor
    batch_id: str
    depth: int
    state: TaskState = TaskState.QUEUED
    waiting_on: set[str] = field(default_factory=set)
    holds_slot: bool = False
    parked: bool = False
    # (admission sequence of the batch, index within the batch)
    submitted: tuple[int, int] = (0, 0)

    @property
    def key(self) -> TaskKey:
        return (self.batch_id, self.descriptor.task_id)


@dataclass
class _BatchState:
    batch_id: str
    graph: DependencyGraph
    task_ids: list[str]
    depth: int
    open: set[str] = field(default_factory=set)
    cancelled: bool = False


class Scheduler:
    """Bounded, dependency-aware dispatcher shared by every batch."""

    def __init__(
        self,
        executor: WorkerExecutor,
        result_sink: ResultSink,
        max_concurrent: int = 10,
        max_queued: int = 100,
        on_dispatch: Optional[DispatchHook] = None,
    ):
        self._executor = executor
        self._sink = result_sink
        self._on_dispatch = on_dispatch
        self.max_concurrent = max(1, max_concurrent)
        self.max_queued = max(self.max_concurrent, max_queued)

        self._entries: dict[TaskKey, _Entry] = {}
        self._batches: dict[str, _BatchState] = {}
        # Ready heap of (-priority, batch sequence, index in batch, key).
        self._ready: list[tuple[int, int, int, TaskKey]] = []
        self._batch_sequence = itertools.count()
        self._resume_waiters: deque[tuple[TaskKey, asyncio.Future]] = deque()

        self._running = 0
        self.peak_running = 0
        self.dispatched_total = 0

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    @property
    def running(self) -> int:
        return self._running

    @property
    def outstanding(self) -> int:
        """Admitted tasks that have not reached a terminal state."""
        return len(self._entries)

    def counters(self) -> dict[str, int]:
        states = [e.state for e in self._entries.values()]
        return {
            "running": self._running,
            "parked": sum(1 for e in self._entries.values() if e.parked),
            "eligible": states.count(TaskState.ELIGIBLE),
            "queued": states.count(TaskState.QUEUED),
            "admitted": len(self._entries),
            "active_batches": len(self._batches),
        }

    def has_batch(self, batch_id: str) -> bool:
        return batch_id in self._batches

    def batch_ids(self) -> list[str]:
        return list(self._batches)

    def state_of(self, batch_id: str, task_id: str) -> Optional[TaskState]:
        entry = self._entries.get((batch_id, task_id))
        return entry.state if entry is not None else None

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_capacity(self, batch_id: str, task_count: int) -> None:
        """Raise ``BatchRejection`` if admitting ``task_count`` tasks would
        exceed the queue-depth ceiling. No state is touched."""
        if self.outstanding + task_count > self.max_queued:
            raise BatchRejection(batch_id, [Violation(
                code=ViolationCode.QUEUE_FULL,
                message=(
                    f"Queue depth exceeded: {self.outstanding} outstanding + "
                    f"{task_count} submitted > limit {self.max_queued}"
                ),
            )])

    def admit(
        self,
        batch_id: str,
        descriptors: Sequence[TaskDescriptor],
        graph: DependencyGraph,
        depth: int = 0,
    ) -> None:
        """Admit a validated batch; all-or-nothing."""
        if batch_id in self._batches:
            raise BatchRejection(batch_id, [Violation(
                code=ViolationCode.DUPLICATE_BATCH,
                message=f"Batch '{batch_id}' is already active",
            )])
        self.check_capacity(batch_id, len(descriptors))

        batch = _BatchState(
            batch_id=batch_id,
            graph=graph,
            task_ids=[d.task_id for d in descriptors],
            depth=depth,
        )
        self._batches[batch_id] = batch
        sequence = next(self._batch_sequence)
        for index, descriptor in enumerate(descriptors):
            entry = _Entry(
                descriptor=descriptor,
                batch_id=batch_id,
                depth=depth,
                waiting_on=set(graph.predecessors(descriptor.task_id)),
                submitted=(sequence, index),
            )
            self._entries[entry.key] = entry
            batch.open.add(descriptor.task_id)
            if not entry.waiting_on:
                self._make_eligible(entry)

        logger.info(
            "scheduler.admit",
            batch_id=batch_id,
            tasks=len(descriptors),
            depth=depth,
            outstanding=self.outstanding,
        )
        if not batch.open:
            del self._batches[batch_id]
        self._pump()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _make_eligible(self, entry: _Entry) -> None:
        entry.state = TaskState.ELIGIBLE
        heapq.heappush(
            self._ready,
            (-entry.descriptor.priority, *entry.submitted, entry.key),
        )

    def _pump(self) -> None:
        """Fill free slots: parked waiters first, then the ready heap."""
        while self._running < self.max_concurrent:
            if self._resume_waiters:
                key, waiter = self._resume_waiters.popleft()
                entry = self._entries.get(key)
                if waiter.done() or entry is None:
                    continue
                self._grant(entry)
                waiter.set_result(None)
                continue

            if not self._ready:
                return
            key = heapq.heappop(self._ready)[-1]
            entry = self._entries.get(key)
            if entry is None or entry.state != TaskState.ELIGIBLE:
                continue  # stale heap item
            self._dispatch(entry)

    def _grant(self, entry: _Entry) -> None:
        entry.holds_slot = True
        entry.parked = False
        self._running += 1
        self.peak_running = max(self.peak_running, self._running)

    def _dispatch(self, entry: _Entry) -> None:
        entry.state = TaskState.RUNNING
        self._grant(entry)
        self.dispatched_total += 1
        logger.debug(
            "scheduler.dispatch",
            batch_id=entry.batch_id,
            task_id=entry.descriptor.task_id,
            priority=entry.descriptor.priority,
            running=self._running,
        )
        if self._on_dispatch is not None:
            self._on_dispatch(entry.batch_id, entry.descriptor)
        self._executor.start(
            entry.descriptor,
            entry.batch_id,
            on_result=self._on_result,
            depth=entry.depth,
        )

    def _on_result(self, result: TaskResult) -> None:
        entry = self._entries.get((result.batch_id, result.task_id))
        if entry is None:
            logger.warning(
                "scheduler.orphan_result",
                batch_id=result.batch_id,
                task_id=result.task_id,
            )
            return
        if entry.holds_slot:
            entry.holds_slot = False
            self._running -= 1
        entry.parked = False
        self._finalize(entry, result)
        self._pump()

    # ------------------------------------------------------------------
    # Parking (nested child batches)
    # ------------------------------------------------------------------

    def park(self, key: TaskKey) -> bool:
        """Release the slot held by a running task that is about to wait."""
        entry = self._entries.get(key)
        if entry is None or not entry.holds_slot:
            return False
        entry.holds_slot = False
        entry.parked = True
        self._running -= 1
        logger.debug("scheduler.park", batch_id=key[0], task_id=key[1])
        self._pump()
        return True

    async def resume(self, key: TaskKey) -> None:
        """Reacquire a slot for a parked task, ahead of eligible tasks."""
        entry = self._entries.get(key)
        if entry is None or not entry.parked:
            return
        if self._running < self.max_concurrent and not self._resume_waiters:
            self._grant(entry)
            return
        # A cancelled waiter is skipped by _pump; a slot granted in the same
        # tick stays on holds_slot and is released with the task's result.
        waiter = asyncio.get_running_loop().create_future()
        self._resume_waiters.append((key, waiter))
        await waiter

    # ------------------------------------------------------------------
    # Completion and cancellation
    # ------------------------------------------------------------------

    def _finalize(self, entry: _Entry, result: TaskResult, cascade: bool = True) -> None:
        batch = self._batches.get(entry.batch_id)
        task_id = entry.descriptor.task_id
        entry.state = result.state
        del self._entries[entry.key]
        self._sink(result)

        if batch is None:
            return
        batch.open.discard(task_id)

        if result.state == TaskState.SUCCEEDED:
            for succ in batch.graph.successors(task_id):
                waiting = self._entries.get((batch.batch_id, succ))
                if waiting is None or waiting.state != TaskState.QUEUED:
                    continue
                waiting.waiting_on.discard(task_id)
                if not waiting.waiting_on:
                    self._make_eligible(waiting)
        elif cascade:
            self._cascade(batch, task_id)

        if not batch.open:
            self._batches.pop(batch.batch_id, None)

    def _cascade(self, batch: _BatchState, failed_id: str) -> None:
        """Cancel every transitive dependent of a task that did not succeed."""
        for task_id in batch.graph.descendants(failed_id):
            entry = self._entries.get((batch.batch_id, task_id))
            if entry is None or entry.state not in (TaskState.QUEUED, TaskState.ELIGIBLE):
                continue
            logger.info(
                "scheduler.dependency_failed",
                batch_id=batch.batch_id,
                task_id=task_id,
                failed=failed_id,
            )
            self._finalize(
                entry,
                _never_ran(entry, REASON_DEPENDENCY_FAILED, ErrorKind.DEPENDENCY_FAILED),
                cascade=False,
            )

    def cancel_batch(self, batch_id: str, reason: str = REASON_CANCELLED) -> int:
        """Cancel every non-terminal task in a batch.

        Queued and eligible tasks become Cancelled before this returns, so no
        task of the batch starts afterwards. Running tasks are signalled and
        report Cancelled once they yield.
        """
        batch = self._batches.get(batch_id)
        if batch is None:
            return 0
        batch.cancelled = True

        affected = 0
        running: list[TaskKey] = []
        for task_id in batch.task_ids:
            entry = self._entries.get((batch_id, task_id))
            if entry is None:
                continue
            affected += 1
            if entry.state == TaskState.RUNNING:
                running.append(entry.key)
            else:
                self._finalize(
                    entry,
                    _never_ran(entry, reason, ErrorKind.CANCELLED),
                    cascade=False,
                )

        for key in running:
            self._executor.cancel(key, reason)

        logger.info(
            "scheduler.cancel_batch",
            batch_id=batch_id,
            affected=affected,
            running=len(running),
        )
        return affected


def _never_ran(entry: _Entry, reason: str, kind: ErrorKind) -> TaskResult:
    return TaskResult(
        task_id=entry.descriptor.task_id,
        batch_id=entry.batch_id,
        state=TaskState.CANCELLED,
        error=f"Task {reason}",
        error_kind=kind,
        reason=reason,
        finished_at=time.time(),
    )
