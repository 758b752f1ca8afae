"""
Result Aggregator — Collecting What Happened.

Terminal TaskResults arrive in any order. The aggregator files them per batch,
ignores duplicates and strangers, and fires each batch's completion signal
exactly once, when every admitted task (cascaded cancellations included) has
a result. Completed ledgers are kept for later queries up to a retention
limit, oldest evicted first.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import structlog

from hive.orchestration.models import BatchReport, BatchStatus, TaskResult, TaskState

logger = structlog.get_logger(__name__)

CompletionHook = Callable[[BatchReport], None]


def batch_status(results: Iterable[TaskResult], complete: bool) -> BatchStatus:
    """Succeeded only if everything succeeded; any failure wins over cancellation."""
    if not complete:
        return BatchStatus.RUNNING
    states = {r.state for r in results}
    if TaskState.FAILED in states:
        return BatchStatus.FAILED
    if TaskState.CANCELLED in states:
        return BatchStatus.PARTIALLY_CANCELLED
    return BatchStatus.SUCCEEDED


@dataclass
class _Ledger:
    batch_id: str
    task_ids: list[str]
    created_at: float
    results: dict[str, TaskResult] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    completed_at: Optional[float] = None
    cancelled: bool = False
    final: Optional[BatchReport] = None
    subscribers: list[asyncio.Queue] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.completed_at is not None


class ResultAggregator:
    """Per-batch result ledgers with completion signalling and streaming."""

    def __init__(
        self,
        max_retained_batches: int = 50,
        on_complete: Optional[CompletionHook] = None,
    ):
        self._ledgers: dict[str, _Ledger] = {}
        self._completed_order: list[str] = []
        self._max_retained = max(1, max_retained_batches)
        self._on_complete = on_complete
        self.duplicates_ignored = 0

    def __contains__(self, batch_id: object) -> bool:
        return batch_id in self._ledgers

    @property
    def retained_count(self) -> int:
        return len(self._completed_order)

    @property
    def active_count(self) -> int:
        return len(self._ledgers) - len(self._completed_order)

    def open_batch(
        self,
        batch_id: str,
        task_ids: Iterable[str],
        created_at: Optional[float] = None,
    ) -> None:
        if batch_id in self._ledgers:
            raise ValueError(f"Batch '{batch_id}' already has a ledger")
        ledger = _Ledger(
            batch_id=batch_id,
            task_ids=list(task_ids),
            created_at=created_at if created_at is not None else time.time(),
        )
        self._ledgers[batch_id] = ledger
        if not ledger.task_ids:
            self._complete(ledger)

    def record(self, result: TaskResult) -> bool:
        """File a terminal result. Returns False if it was ignored."""
        ledger = self._ledgers.get(result.batch_id)
        if ledger is None or result.task_id not in ledger.task_ids:
            logger.warning(
                "aggregator.unknown_result",
                batch_id=result.batch_id,
                task_id=result.task_id,
            )
            return False
        if result.task_id in ledger.results:
            self.duplicates_ignored += 1
            logger.warning(
                "aggregator.duplicate_result",
                batch_id=result.batch_id,
                task_id=result.task_id,
            )
            return False
        if not result.state.is_terminal:
            logger.warning(
                "aggregator.non_terminal_result",
                batch_id=result.batch_id,
                task_id=result.task_id,
                state=result.state.value,
            )
            return False

        ledger.results[result.task_id] = result
        for queue in ledger.subscribers:
            queue.put_nowait(result)
        if len(ledger.results) == len(ledger.task_ids):
            self._complete(ledger)
        return True

    def mark_cancelled(self, batch_id: str) -> None:
        ledger = self._ledger(batch_id)
        if not ledger.complete:
            ledger.cancelled = True

    def is_complete(self, batch_id: str) -> bool:
        return self._ledger(batch_id).complete

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self, batch_id: str) -> BatchReport:
        """Partial (or final) view; results in submission order."""
        return self._build_report(self._ledger(batch_id))

    def report(self, batch_id: str) -> BatchReport:
        ledger = self._ledger(batch_id)
        if not ledger.complete:
            raise RuntimeError(f"Batch '{batch_id}' is still running")
        return ledger.final or self._build_report(ledger)

    async def wait(self, batch_id: str, timeout: Optional[float] = None) -> BatchReport:
        """Wait for completion.

        Raises the builtin TimeoutError after ``timeout`` seconds; the batch
        keeps running.
        """
        ledger = self._ledger(batch_id)
        if timeout is None:
            await ledger.done.wait()
        else:
            try:
                await asyncio.wait_for(ledger.done.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                raise TimeoutError(
                    f"Batch '{batch_id}' still running after {timeout}s"
                ) from None
        # The ledger may be evicted by now; the frozen report stays on it.
        return ledger.final

    def subscribe(self, batch_id: str) -> asyncio.Queue:
        """Queue of results in arrival order, ended by a ``None`` sentinel."""
        ledger = self._ledger(batch_id)
        queue: asyncio.Queue = asyncio.Queue()
        for result in ledger.results.values():
            queue.put_nowait(result)
        if ledger.complete:
            queue.put_nowait(None)
        else:
            ledger.subscribers.append(queue)
        return queue

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ledger(self, batch_id: str) -> _Ledger:
        try:
            return self._ledgers[batch_id]
        except KeyError:
            raise KeyError(f"Unknown batch '{batch_id}'") from None

    def _build_report(self, ledger: _Ledger) -> BatchReport:
        ordered = [ledger.results[t] for t in ledger.task_ids if t in ledger.results]
        counts = Counter(r.state.value for r in ordered)
        end = ledger.completed_at if ledger.complete else time.time()
        return BatchReport(
            batch_id=ledger.batch_id,
            status=batch_status(ordered, ledger.complete),
            results=ordered,
            pending=[t for t in ledger.task_ids if t not in ledger.results],
            counts=dict(counts),
            cancelled=ledger.cancelled,
            created_at=ledger.created_at,
            completed_at=ledger.completed_at,
            elapsed_seconds=round(max(0.0, end - ledger.created_at), 4),
        )

    def _complete(self, ledger: _Ledger) -> None:
        ledger.completed_at = time.time()
        ledger.final = self._build_report(ledger)
        ledger.done.set()
        for queue in ledger.subscribers:
            queue.put_nowait(None)
        ledger.subscribers.clear()

        self._completed_order.append(ledger.batch_id)
        logger.info(
            "aggregator.batch_complete",
            batch_id=ledger.batch_id,
            status=ledger.final.status.value,
            counts=ledger.final.counts,
        )
        if self._on_complete is not None:
            self._on_complete(ledger.final)
        self._evict()

    def _evict(self) -> None:
        while len(self._completed_order) > self._max_retained:
            oldest = self._completed_order.pop(0)
            self._ledgers.pop(oldest, None)
            logger.debug("aggregator.evicted", batch_id=oldest)
