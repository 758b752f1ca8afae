"""Tests for hive.orchestration.aggregator — ledgers, completion and streaming."""

from __future__ import annotations

import asyncio

import pytest

from hive.orchestration.aggregator import ResultAggregator, batch_status
from hive.orchestration.models import BatchStatus, ErrorKind, TaskResult, TaskState


def _result(task_id: str, state: TaskState = TaskState.SUCCEEDED, batch_id: str = "b1") -> TaskResult:
    kind = None
    if state == TaskState.FAILED:
        kind = ErrorKind.TASK_ERROR
    elif state == TaskState.CANCELLED:
        kind = ErrorKind.CANCELLED
    return TaskResult(task_id=task_id, batch_id=batch_id, state=state, error_kind=kind)


class TestBatchStatus:
    def test_all_succeeded(self) -> None:
        assert batch_status([_result("a"), _result("b")], True) == BatchStatus.SUCCEEDED

    def test_failure_wins(self) -> None:
        results = [_result("a", TaskState.CANCELLED), _result("b", TaskState.FAILED)]
        assert batch_status(results, True) == BatchStatus.FAILED

    def test_cancellation_without_failure(self) -> None:
        results = [_result("a"), _result("b", TaskState.CANCELLED)]
        assert batch_status(results, True) == BatchStatus.PARTIALLY_CANCELLED

    def test_incomplete_is_running(self) -> None:
        assert batch_status([_result("a")], False) == BatchStatus.RUNNING


class TestResultAggregator:
    @pytest.mark.asyncio
    async def test_completion_fires_once_with_submission_order(self) -> None:
        completed = []
        agg = ResultAggregator(on_complete=completed.append)
        agg.open_batch("b1", ["a", "b", "c"])

        assert agg.record(_result("c"))
        assert agg.record(_result("a"))
        snap = agg.snapshot("b1")
        assert snap.status == BatchStatus.RUNNING
        assert [r.task_id for r in snap.results] == ["a", "c"]
        assert snap.pending == ["b"]
        with pytest.raises(RuntimeError):
            agg.report("b1")

        assert agg.record(_result("b", TaskState.FAILED))
        report = await agg.wait("b1", timeout=1)
        assert report.status == BatchStatus.FAILED
        assert [r.task_id for r in report.results] == ["a", "b", "c"]
        assert report.counts == {"succeeded": 2, "failed": 1}
        assert report.complete
        assert len(completed) == 1

    def test_duplicates_and_strangers_ignored(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b1", ["a", "b"])
        assert agg.record(_result("a"))
        assert not agg.record(_result("a", TaskState.FAILED))
        assert not agg.record(_result("zzz"))
        assert not agg.record(_result("a", batch_id="other"))
        assert agg.duplicates_ignored == 1
        assert agg.snapshot("b1").results[0].state == TaskState.SUCCEEDED

    def test_non_terminal_result_ignored(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b1", ["a"])
        assert not agg.record(_result("a", TaskState.RUNNING))
        assert not agg.is_complete("b1")

    @pytest.mark.asyncio
    async def test_empty_batch_completes_immediately(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("empty", [])
        report = await agg.wait("empty", timeout=1)
        assert report.status == BatchStatus.SUCCEEDED
        assert report.results == []

    @pytest.mark.asyncio
    async def test_wait_timeout(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b1", ["a"])
        with pytest.raises(TimeoutError, match="still running"):
            await agg.wait("b1", timeout=0.01)

    @pytest.mark.asyncio
    async def test_subscribe_streams_then_sentinel(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b1", ["a", "b"])
        agg.record(_result("b"))
        queue = agg.subscribe("b1")
        agg.record(_result("a"))

        seen = []
        while (item := await queue.get()) is not None:
            seen.append(item.task_id)
        assert seen == ["b", "a"]

        late = agg.subscribe("b1")
        assert late.qsize() == 3  # both results plus the sentinel

    def test_mark_cancelled_only_while_running(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b1", ["a"])
        agg.mark_cancelled("b1")
        agg.record(_result("a", TaskState.CANCELLED))
        report = agg.report("b1")
        assert report.cancelled
        assert report.status == BatchStatus.PARTIALLY_CANCELLED

    @pytest.mark.asyncio
    async def test_eviction_keeps_waiters_served(self) -> None:
        agg = ResultAggregator(max_retained_batches=2)
        for name in ("b1", "b2", "b3"):
            agg.open_batch(name, ["a"])
        waiter = asyncio.create_task(agg.wait("b1"))
        await asyncio.sleep(0)

        for name in ("b1", "b2", "b3"):
            agg.record(_result("a", batch_id=name))

        assert "b1" not in agg
        assert "b3" in agg
        assert agg.retained_count == 2
        report = await waiter
        assert report.batch_id == "b1"
        with pytest.raises(KeyError):
            agg.snapshot("b1")

    def test_unknown_batch_raises_key_error(self) -> None:
        with pytest.raises(KeyError):
            ResultAggregator().snapshot("nope")

    def test_open_twice_rejected(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b1", ["a"])
        with pytest.raises(ValueError):
            agg.open_batch("b1", ["a"])
