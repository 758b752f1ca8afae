"""
Worker Executor — Running One Task in Isolation.

Each admitted task runs as its own asyncio.Task with a private WorkerContext:
a deep copy of the payload, a scratch dict nobody else can see, and a
capability-gated ``invoke`` that is the only route to side-effecting
operations. Workers talk back to the rest of the system exclusively through
the TaskResult the executor produces.

Outcome mapping:

  return value            -> succeeded
  TaskFailure / rejection -> failed (task_error)
  CapabilityDenied        -> failed (capability_denied)
  any other exception     -> failed (worker_fault, logged with traceback)
  timeout                 -> cancelled ("timeout")
  cancellation            -> cancelled ("cancelled" or the canceller's reason)

Cancellation is cooperative. The context's signal is set first, then the
asyncio task is cancelled so it stops at its next await. Code running in a
thread sees ``context.cancelled`` and is expected to return promptly; the
outcome is only recorded once it has.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

import structlog

from hive.orchestration.errors import (
    BatchRejection,
    CapabilityDenied,
    OperationNotFound,
    TaskCancelled,
    TaskFailure,
)
from hive.orchestration.models import (
    REASON_CANCELLED,
    REASON_TIMEOUT,
    Batch,
    BatchHandle,
    BatchReport,
    ErrorKind,
    TaskDescriptor,
    TaskResult,
    TaskState,
)
from hive.orchestration.policy import CapabilityPolicy, WorkerIdentity

if TYPE_CHECKING:
    from hive.orchestration.runners import PayloadRunnerBase

logger = structlog.get_logger(__name__)

TaskKey = tuple[str, str]  # (batch_id, task_id)
OperationHandler = Callable[..., Any]


class WorkerContext:
    """Everything a single task may see or touch while it runs."""

    def __init__(
        self,
        descriptor: TaskDescriptor,
        batch_id: str,
        policy: CapabilityPolicy,
        operations: Optional[Mapping[str, OperationHandler]] = None,
        depth: int = 0,
        spawner: Any = None,  # Orchestrator, for nested child batches
    ):
        self.descriptor = descriptor
        self.batch_id = batch_id
        self.depth = depth
        self.payload: dict[str, Any] = copy.deepcopy(dict(descriptor.payload))
        self.scratch: dict[str, Any] = {}
        self.identity = WorkerIdentity(
            task_id=descriptor.task_id,
            batch_id=batch_id,
            capabilities=frozenset(descriptor.capabilities),
            agent=descriptor.agent,
        )
        self._policy = policy
        self._operations = dict(operations or {})
        self._spawner = spawner
        # Child batches submitted from this worker, released when it finishes.
        self.children: list[BatchHandle] = []
        # threading.Event so payloads running in the thread pool can poll it.
        self._cancel_event = threading.Event()
        self._cancel_reason = REASON_CANCELLED
        self.started_at: Optional[float] = None

    @property
    def task_id(self) -> str:
        return self.descriptor.task_id

    @property
    def key(self) -> TaskKey:
        return (self.batch_id, self.descriptor.task_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def cancel_reason(self) -> str:
        return self._cancel_reason

    def signal_cancel(self, reason: str = REASON_CANCELLED) -> bool:
        """Set the cancellation signal. The first reason wins."""
        if self._cancel_event.is_set():
            return False
        self._cancel_reason = reason
        self._cancel_event.set()
        return True

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise TaskCancelled(self._cancel_reason)

    def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """Block the calling thread until cancelled or ``timeout`` elapses."""
        return self._cancel_event.wait(timeout)

    # ------------------------------------------------------------------
    # Capability-gated operations
    # ------------------------------------------------------------------

    def require(self, capability: str) -> None:
        decision = self._policy.require(self.identity, capability)
        if not decision.allowed:
            raise CapabilityDenied(self.task_id, decision.reason, capability=capability)

    async def invoke(self, operation: str, **kwargs: Any) -> Any:
        """Run a side-effecting operation after the policy allows it."""
        self.check_cancelled()
        decision = self._policy.authorize(self.identity, operation)
        if not decision.allowed:
            raise CapabilityDenied(self.task_id, decision.reason, operation=operation)

        handler = self._operations.get(operation)
        if handler is None:
            raise OperationNotFound(f"No handler registered for operation '{operation}'")

        logger.debug(
            "executor.invoke",
            task_id=self.task_id,
            operation=operation,
            capability=decision.capability,
        )
        if inspect.iscoroutinefunction(handler):
            return await handler(**kwargs)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: handler(**kwargs))

    # ------------------------------------------------------------------
    # Nested submission
    # ------------------------------------------------------------------

    async def submit_child(self, batch: Batch) -> BatchHandle:
        if self._spawner is None:
            raise TaskFailure("Nested submission is not available for this worker")
        handle = await self._spawner.submit(batch, parent=self)
        self.children.append(handle)
        return handle

    async def collect_child(self, handle: BatchHandle) -> BatchReport:
        """Wait for a child batch, parking this slot meanwhile."""
        if self._spawner is None:
            raise TaskFailure("Nested submission is not available for this worker")
        return await self._spawner.collect_child(handle, parent=self)

    async def run_child(self, batch: Batch) -> BatchReport:
        """Submit a child batch and wait for its report."""
        return await self.collect_child(await self.submit_child(batch))


@dataclass
class _ActiveRun:
    context: WorkerContext
    task: asyncio.Task
    timer: Optional[asyncio.TimerHandle] = None


class WorkerExecutor:
    """Starts, times out and cancels task bodies; turns outcomes into results."""

    def __init__(
        self,
        runner: "PayloadRunnerBase",
        policy: CapabilityPolicy,
        operations: Optional[Mapping[str, OperationHandler]] = None,
        default_timeout: float = 0.0,
    ):
        self._runner = runner
        self._policy = policy
        self._operations = dict(operations or {})
        self._default_timeout = default_timeout
        self._spawner: Any = None
        self._active: dict[TaskKey, _ActiveRun] = {}

    def bind_spawner(self, spawner: Any) -> None:
        self._spawner = spawner

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_active(self, key: TaskKey) -> bool:
        return key in self._active

    def start(
        self,
        descriptor: TaskDescriptor,
        batch_id: str,
        on_result: Callable[[TaskResult], None],
        depth: int = 0,
    ) -> asyncio.Task:
        """Launch the task body; ``on_result`` receives exactly one TaskResult."""
        context = WorkerContext(
            descriptor,
            batch_id,
            self._policy,
            operations=self._operations,
            depth=depth,
            spawner=self._spawner,
        )
        key = context.key
        task = asyncio.create_task(
            self._execute(context),
            name=f"hive:{batch_id}:{descriptor.task_id}",
        )
        run = _ActiveRun(context=context, task=task)
        timeout = descriptor.timeout_seconds or self._default_timeout
        if timeout and timeout > 0:
            loop = asyncio.get_running_loop()
            run.timer = loop.call_later(timeout, self.cancel, key, REASON_TIMEOUT)
        self._active[key] = run
        task.add_done_callback(lambda t: self._on_task_done(key, t, on_result))
        return task

    def cancel(self, key: TaskKey, reason: str = REASON_CANCELLED) -> bool:
        """Signal a running task to stop. Returns False if it is not running."""
        run = self._active.get(key)
        if run is None:
            return False
        if run.context.signal_cancel(reason):
            logger.info(
                "executor.cancel",
                batch_id=key[0],
                task_id=key[1],
                reason=reason,
            )
        run.task.cancel()
        return True

    async def _execute(self, context: WorkerContext) -> TaskResult:
        context.started_at = time.time()
        start = time.monotonic()
        task_id = context.task_id
        logger.info(
            "executor.start",
            batch_id=context.batch_id,
            task_id=task_id,
            agent=context.descriptor.agent or None,
            depth=context.depth,
        )

        try:
            output = await self._runner.run(context)
            if context.cancelled:
                # The body swallowed the cancellation and returned anyway.
                return self._cancelled(context, start)
            return self._result(context, start, TaskState.SUCCEEDED, output=output)

        except (asyncio.CancelledError, TaskCancelled):
            return self._cancelled(context, start)
        except CapabilityDenied as exc:
            return self._result(
                context, start, TaskState.FAILED,
                error=exc.reason, error_kind=ErrorKind.CAPABILITY_DENIED,
            )
        except (TaskFailure, BatchRejection) as exc:
            logger.info("executor.task_error", task_id=task_id, error=str(exc))
            return self._result(
                context, start, TaskState.FAILED,
                error=str(exc), error_kind=ErrorKind.TASK_ERROR,
            )
        except Exception as exc:
            logger.error(
                "executor.fault",
                batch_id=context.batch_id,
                task_id=task_id,
                error=str(exc),
                exc_info=True,
            )
            return self._result(
                context, start, TaskState.FAILED,
                error=f"{type(exc).__name__}: {exc}",
                error_kind=ErrorKind.WORKER_FAULT,
            )

    def _cancelled(self, context: WorkerContext, start: float) -> TaskResult:
        reason = context.cancel_reason if context.cancelled else REASON_CANCELLED
        kind = ErrorKind.TIMEOUT if reason == REASON_TIMEOUT else ErrorKind.CANCELLED
        if reason == REASON_TIMEOUT:
            logger.warning(
                "executor.timeout",
                task_id=context.task_id,
                timeout=context.descriptor.timeout_seconds or self._default_timeout,
            )
        return self._result(
            context, start, TaskState.CANCELLED,
            error=f"Task {reason}", error_kind=kind, reason=reason,
        )

    @staticmethod
    def _result(
        context: WorkerContext,
        start: float,
        state: TaskState,
        **fields: Any,
    ) -> TaskResult:
        return TaskResult(
            task_id=context.task_id,
            batch_id=context.batch_id,
            state=state,
            started_at=context.started_at,
            elapsed_seconds=round(time.monotonic() - start, 4),
            **fields,
        )

    def _on_task_done(
        self,
        key: TaskKey,
        task: asyncio.Task,
        on_result: Callable[[TaskResult], None],
    ) -> None:
        run = self._active.pop(key, None)
        if run is not None and run.timer is not None:
            run.timer.cancel()

        try:
            result = task.result()
        except asyncio.CancelledError:
            # Cancelled before the body got to run.
            reason = run.context.cancel_reason if run is not None else REASON_CANCELLED
            result = TaskResult(
                task_id=key[1],
                batch_id=key[0],
                state=TaskState.CANCELLED,
                error=f"Task {reason}",
                error_kind=ErrorKind.TIMEOUT if reason == REASON_TIMEOUT else ErrorKind.CANCELLED,
                reason=reason,
            )
        except BaseException as exc:
            logger.error("executor.task_crashed", task_id=key[1], error=str(exc))
            result = TaskResult(
                task_id=key[1],
                batch_id=key[0],
                state=TaskState.FAILED,
                error=f"{type(exc).__name__}: {exc}",
                error_kind=ErrorKind.WORKER_FAULT,
            )

        logger.info(
            "executor.complete",
            batch_id=key[0],
            task_id=key[1],
            state=result.state.value,
            error_kind=result.error_kind.value if result.error_kind else None,
            elapsed=result.elapsed_seconds,
        )
        if run is not None and run.context.children and self._spawner is not None:
            self._spawner.release_children(run.context)
        on_result(result)
