"""Tests for hive.orchestration.orchestrator — end-to-end batch behavior."""

from __future__ import annotations

import asyncio
import random

import pytest

from conftest import MockConfig, RecordingRunner, batch, task
from hive.events import EventBus
from hive.orchestration.errors import BatchRejection, TaskFailure
from hive.orchestration.models import (
    Batch,
    BatchStatus,
    ErrorKind,
    TaskDescriptor,
    TaskState,
    ViolationCode,
)
from hive.orchestration.orchestrator import Orchestrator
from hive.orchestration.runners import ScriptedRunner


def _orchestrator(registry, runner=None, operations=None, event_bus=None, **overrides) -> Orchestrator:
    return Orchestrator(
        MockConfig(**overrides),
        runner or RecordingRunner(),
        registry=registry,
        operations=operations,
        event_bus=event_bus,
    )


# ---------------------------------------------------------------------------
# Submit / collect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_every_task_reaches_one_terminal_state(registry) -> None:
    orch = _orchestrator(registry)
    handle = await orch.submit(batch(
        task("a"),
        task("b", "a"),
        task("c", "a"),
        task("d", "b", "c"),
        task("e"),
    ))
    assert handle.task_ids == ("a", "b", "c", "d", "e")
    assert handle.depth == 0

    report = await orch.collect(handle, timeout=5)
    assert report.status == BatchStatus.SUCCEEDED
    assert [r.task_id for r in report.results] == ["a", "b", "c", "d", "e"]
    assert report.counts == {"succeeded": 5}
    assert report.pending == []
    assert not report.cancelled
    assert orch.status().admitted == 0


@pytest.mark.asyncio
async def test_cycle_rejected_without_results(registry) -> None:
    orch = _orchestrator(registry)
    b = batch(task("A", "B"), task("B", "A"), batch_id="cyclic")

    with pytest.raises(BatchRejection) as info:
        await orch.submit(b)

    assert info.value.task_ids_for(ViolationCode.DEPENDENCY_CYCLE) == {"A", "B"}
    with pytest.raises(KeyError):
        orch.snapshot("cyclic")
    assert orch.status().admitted == 0


@pytest.mark.asyncio
async def test_empty_batch_succeeds_immediately(registry) -> None:
    orch = _orchestrator(registry)
    report = await orch.collect(await orch.submit(Batch()), timeout=1)
    assert report.status == BatchStatus.SUCCEEDED
    assert report.results == []


@pytest.mark.asyncio
async def test_duplicate_batch_id_rejected(registry) -> None:
    orch = _orchestrator(registry)
    handle = await orch.submit(batch(task("a"), batch_id="same"))
    await orch.collect(handle)
    with pytest.raises(BatchRejection) as info:
        await orch.submit(batch(task("a"), batch_id="same"))
    assert info.value.codes == {ViolationCode.DUPLICATE_BATCH}


@pytest.mark.asyncio
async def test_collect_timeout_leaves_batch_running(registry) -> None:
    orch = _orchestrator(registry)
    handle = await orch.submit(batch(task("slow", payload={"sleep": 0.2})))
    with pytest.raises(TimeoutError):
        await orch.collect(handle, timeout=0.01)
    report = await orch.collect(handle, timeout=5)
    assert report.status == BatchStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_report_carries_batch_creation_time(registry) -> None:
    orch = _orchestrator(registry)
    submitted = Batch(
        batch_id="stamped",
        created_at=1_700_000_000.0,
        tasks=(TaskDescriptor(task_id="a"),),
    )
    report = await orch.collect(await orch.submit(submitted), timeout=5)
    assert report.created_at == 1_700_000_000.0


@pytest.mark.asyncio
async def test_unknown_handle(registry) -> None:
    orch = _orchestrator(registry)
    with pytest.raises(KeyError):
        await orch.collect("batch-missing")
    with pytest.raises(KeyError):
        await orch.cancel("batch-missing")


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_running_count_never_exceeds_ceiling(registry) -> None:
    rng = random.Random(7)
    runner = RecordingRunner()
    orch = _orchestrator(registry, runner, max_concurrent_tasks=3, max_queued_tasks=200)

    handles = []
    for n in range(4):
        tasks = [task(f"t{i}", payload={"sleep": rng.uniform(0, 0.02)}) for i in range(15)]
        tasks += [task(f"d{i}", f"t{i}", payload={"sleep": rng.uniform(0, 0.02)}) for i in range(5)]
        handles.append(await orch.submit(batch(*tasks, batch_id=f"load-{n}")))

    reports = [await orch.collect(h, timeout=10) for h in handles]
    assert all(r.status == BatchStatus.SUCCEEDED for r in reports)
    assert runner.peak <= 3
    assert orch.scheduler.peak_running == 3
    assert len(runner.started) == 80


@pytest.mark.asyncio
async def test_queue_depth_rejection_has_zero_side_effects(registry) -> None:
    runner = RecordingRunner()
    orch = _orchestrator(registry, runner, max_concurrent_tasks=2, max_queued_tasks=5)
    first = await orch.submit(batch(*(task(f"t{i}", payload={"sleep": 0.05}) for i in range(4))))

    before = orch.status()
    with pytest.raises(BatchRejection) as info:
        await orch.submit(batch(task("x"), task("y"), batch_id="overflow"))
    assert info.value.codes == {ViolationCode.QUEUE_FULL}
    assert orch.status() == before
    with pytest.raises(KeyError):
        orch.snapshot("overflow")

    await orch.collect(first, timeout=5)
    assert "x" not in runner.started and "y" not in runner.started


@pytest.mark.asyncio
async def test_oversized_batch_rejected_outright(registry) -> None:
    orch = _orchestrator(registry, max_concurrent_tasks=2, max_queued_tasks=4)
    with pytest.raises(BatchRejection) as info:
        await orch.submit(batch(*(task(f"t{i}") for i in range(5))))
    assert info.value.codes == {ViolationCode.QUEUE_FULL}


@pytest.mark.asyncio
async def test_scenario_a_b_c_with_ceiling_one(registry) -> None:
    runner = RecordingRunner()
    orch = _orchestrator(registry, runner, max_concurrent_tasks=1)
    handle = await orch.submit(batch(task("A"), task("B", "A"), task("C")))
    report = await orch.collect(handle, timeout=5)

    assert report.status == BatchStatus.SUCCEEDED
    assert runner.started == ["A", "B", "C"]
    a = report.result_for("A")
    b = report.result_for("B")
    assert b.started_at >= a.finished_at


@pytest.mark.asyncio
async def test_same_tier_runs_in_submission_order(registry) -> None:
    runner = RecordingRunner()
    orch = _orchestrator(registry, runner, max_concurrent_tasks=1)
    handle = await orch.submit(batch(task("A"), task("B", "A"), task("C"), task("D")))
    await orch.collect(handle, timeout=5)
    assert runner.started == ["A", "B", "C", "D"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dependency_failure_cancels_dependents(registry) -> None:
    def body(ctx):
        if ctx.task_id == "Y":
            raise TaskFailure("bad data")
        return "ok"

    runner = RecordingRunner(body)
    orch = _orchestrator(registry, runner)
    handle = await orch.submit(batch(task("Y"), task("X", "Y"), task("Z")))
    report = await orch.collect(handle, timeout=5)

    assert report.status == BatchStatus.FAILED
    assert report.result_for("Y").error_kind == ErrorKind.TASK_ERROR
    x = report.result_for("X")
    assert x.state == TaskState.CANCELLED
    assert x.reason == "dependency failed"
    assert "X" not in runner.started
    assert report.result_for("Z").state == TaskState.SUCCEEDED


@pytest.mark.asyncio
async def test_worker_fault_does_not_abort_siblings(registry) -> None:
    orch = _orchestrator(registry, ScriptedRunner())
    handle = await orch.submit(batch(
        task("crashy", payload={"crash": "segfault-ish"}),
        task("steady", payload={"sleep": 0.02, "output": "fine"}),
    ))
    report = await orch.collect(handle, timeout=5)

    assert report.result_for("crashy").error_kind == ErrorKind.WORKER_FAULT
    assert report.result_for("steady").output == "fine"
    assert report.status == BatchStatus.FAILED


@pytest.mark.asyncio
async def test_capability_denied_recorded_distinctly(registry) -> None:
    orch = _orchestrator(
        registry,
        ScriptedRunner(),
        operations={"shell.exec": lambda cmd: cmd},
    )
    handle = await orch.submit(batch(
        task("reader", capabilities=frozenset({"read_repo"}), payload={"invoke": ["shell.exec"]}),
    ))
    report = await orch.collect(handle, timeout=5)
    result = report.result_for("reader")
    assert result.state == TaskState.FAILED
    assert result.error_kind == ErrorKind.CAPABILITY_DENIED
    assert orch.policy.denial_counts() == {"reader": 1}


@pytest.mark.asyncio
async def test_timeout_yields_partially_cancelled(registry) -> None:
    orch = _orchestrator(registry, ScriptedRunner())
    handle = await orch.submit(batch(
        task("quick"),
        task("slow", payload={"sleep": 5}, timeout_seconds=0.05),
    ))
    report = await orch.collect(handle, timeout=5)
    assert report.status == BatchStatus.PARTIALLY_CANCELLED
    assert report.result_for("slow").reason == "timeout"
    assert not report.cancelled


@pytest.mark.asyncio
async def test_default_capabilities_applied(registry) -> None:
    orch = _orchestrator(
        registry,
        ScriptedRunner(),
        operations={"fs.read": lambda path: path},
        default_capabilities=["read_repo"],
    )
    handle = await orch.submit(batch(
        task("a", payload={"invoke": [{"operation": "fs.read", "args": {"path": "x"}}]}),
    ))
    report = await orch.collect(handle, timeout=5)
    assert report.status == BatchStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_mid_flight(registry) -> None:
    runner = RecordingRunner()
    orch = _orchestrator(registry, runner, max_concurrent_tasks=2)
    handle = await orch.submit(batch(*(task(f"t{i}", payload={"sleep": 5}) for i in range(6))))
    await asyncio.sleep(0.02)
    started_before = list(runner.started)
    assert len(started_before) == 2

    assert await orch.cancel(handle)
    report = await orch.collect(handle, timeout=5)

    assert report.cancelled
    assert report.status == BatchStatus.PARTIALLY_CANCELLED
    assert all(r.state == TaskState.CANCELLED for r in report.results)
    assert runner.started == started_before
    assert not await orch.cancel(handle)


@pytest.mark.asyncio
async def test_stream_yields_in_arrival_order(registry) -> None:
    orch = _orchestrator(registry, max_concurrent_tasks=3)
    handle = await orch.submit(batch(
        task("slowest", payload={"sleep": 0.06}),
        task("middle", payload={"sleep": 0.03}),
        task("fastest"),
    ))
    seen = [result.task_id async for result in orch.stream(handle)]
    assert seen == ["fastest", "middle", "slowest"]


# ---------------------------------------------------------------------------
# Nested submission
# ---------------------------------------------------------------------------


def _child(task_id: str, **payload) -> dict:
    return {"task_id": task_id, "payload": payload}


@pytest.mark.asyncio
async def test_nested_child_batch_with_single_slot(registry) -> None:
    orch = _orchestrator(registry, ScriptedRunner(), max_concurrent_tasks=1)
    handle = await orch.submit(batch(
        task("parent", payload={"children": [_child("c1"), _child("c2")], "output": "done"}),
        task("sibling"),
    ))
    report = await orch.collect(handle, timeout=5)
    assert report.status == BatchStatus.SUCCEEDED
    assert report.result_for("parent").output == "done"
    assert orch.status().parked == 0
    assert orch.status().running == 0


@pytest.mark.asyncio
async def test_nesting_depth_limit(registry) -> None:
    depths = []

    async def body(ctx):
        depths.append(ctx.depth)
        child = Batch(tasks=(TaskDescriptor(task_id=f"level-{ctx.depth + 1}"),))
        report = await ctx.run_child(child)
        if report.status != BatchStatus.SUCCEEDED:
            raise TaskFailure(f"child batch {report.status.value}")
        return report.status.value

    orch = _orchestrator(registry, RecordingRunner(body), max_nesting_depth=3)
    report = await orch.collect(await orch.submit(batch(task("level-0"))), timeout=5)

    # depth 0, 1 and 2 run; the submission from depth 2 is rejected.
    assert depths == [0, 1, 2]
    assert report.status == BatchStatus.FAILED
    assert report.result_for("level-0").error == "child batch failed"
    assert orch.status().parked == 0


@pytest.mark.asyncio
async def test_child_rejection_is_task_error(registry) -> None:
    async def body(ctx):
        await ctx.run_child(Batch(tasks=(
            TaskDescriptor(task_id="x", depends_on=("y",)),
            TaskDescriptor(task_id="y", depends_on=("x",)),
        )))

    orch = _orchestrator(registry, RecordingRunner(body))
    report = await orch.collect(await orch.submit(batch(task("p"))), timeout=5)
    result = report.result_for("p")
    assert result.error_kind == ErrorKind.TASK_ERROR
    assert "cycle" in result.error.lower()


@pytest.mark.asyncio
async def test_cancel_propagates_to_child_batches(registry) -> None:
    child_handles = []

    async def body(ctx):
        if ctx.task_id != "parent":
            return ctx.task_id
        handle = await ctx.submit_child(Batch(tasks=(
            TaskDescriptor(task_id="grandchild", payload={"sleep": 5}),
        )))
        child_handles.append(handle)
        return await ctx.collect_child(handle)

    orch = _orchestrator(registry, RecordingRunner(body), max_concurrent_tasks=2)
    handle = await orch.submit(batch(task("parent")))
    await asyncio.sleep(0.05)
    assert child_handles and child_handles[0].parent_task_id == "parent"

    await orch.cancel(handle)
    report = await orch.collect(handle, timeout=5)
    child_report = await orch.collect(child_handles[0], timeout=5)

    assert report.result_for("parent").state == TaskState.CANCELLED
    assert child_report.cancelled
    assert child_report.result_for("grandchild").state == TaskState.CANCELLED


@pytest.mark.asyncio
async def test_timed_out_parent_cancels_its_child_batch(registry) -> None:
    child_handles = []

    async def body(ctx):
        if ctx.task_id != "parent":
            return ctx.task_id
        handle = await ctx.submit_child(Batch(tasks=(
            TaskDescriptor(task_id="slow-child", payload={"sleep": 0.4}),
        )))
        child_handles.append(handle)
        return await ctx.collect_child(handle)

    orch = _orchestrator(registry, RecordingRunner(body), max_concurrent_tasks=2)
    handle = await orch.submit(batch(task("parent", timeout_seconds=0.05)))
    report = await orch.collect(handle, timeout=5)
    parent = report.result_for("parent")
    assert parent.state == TaskState.CANCELLED
    assert parent.error_kind == ErrorKind.TIMEOUT

    child_report = await orch.collect(child_handles[0], timeout=1)
    assert child_report.cancelled
    assert child_report.result_for("slow-child").state == TaskState.CANCELLED
    assert orch.status().running == 0


@pytest.mark.asyncio
async def test_failed_parent_cancels_uncollected_child(registry) -> None:
    child_handles = []

    async def body(ctx):
        if ctx.task_id != "parent":
            return ctx.task_id
        child_handles.append(await ctx.submit_child(Batch(tasks=(
            TaskDescriptor(task_id="orphan", payload={"sleep": 5}),
        ))))
        raise TaskFailure("gave up before collecting")

    orch = _orchestrator(registry, RecordingRunner(body), max_concurrent_tasks=2)
    report = await orch.collect(await orch.submit(batch(task("parent"))), timeout=5)
    assert report.result_for("parent").error_kind == ErrorKind.TASK_ERROR

    child_report = await orch.collect(child_handles[0], timeout=1)
    assert child_report.cancelled
    assert child_report.result_for("orphan").state == TaskState.CANCELLED


# ---------------------------------------------------------------------------
# Shutdown and events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_shutdown_cancels_and_refuses(registry) -> None:
    orch = _orchestrator(registry)
    handle = await orch.submit(batch(task("forever", payload={"sleep": 30})))
    await asyncio.sleep(0.01)

    await orch.shutdown()
    report = await orch.collect(handle, timeout=1)
    assert report.result_for("forever").state == TaskState.CANCELLED

    with pytest.raises(BatchRejection) as info:
        await orch.submit(batch(task("late")))
    assert info.value.codes == {ViolationCode.ORCHESTRATOR_CLOSED}


@pytest.mark.asyncio
async def test_lifecycle_events_emitted(registry) -> None:
    bus = EventBus()
    await bus.start()
    seen: list[str] = []
    bus.subscribe("batch.*", lambda e: seen.append(e.event_type))
    bus.subscribe("task.*", lambda e: seen.append(f"{e.event_type}:{e.task_id}"))

    orch = _orchestrator(registry, event_bus=bus)
    await orch.collect(await orch.submit(batch(task("a"))), timeout=5)
    with pytest.raises(BatchRejection):
        await orch.submit(batch(task("A", "A")))
    await bus.flush()
    await bus.stop()

    assert seen == [
        "batch.submitted",
        "task.started:a",
        "task.finished:a",
        "batch.completed",
        "batch.rejected",
    ]
