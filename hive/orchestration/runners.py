"""
Payload Runners — The Execution Backends.

A runner knows how to take a WorkerContext and turn its payload into an
output. What the "work" actually is lives entirely outside the engine; the
runners here only adapt the different shapes it can come in:

  CallableRunner:  wraps a plain sync or async function
  RoutingRunner:   picks a runner by the descriptor's agent name
  ScriptedRunner:  deterministic runner driven by payload keys
                    (used by the CLI and for demos/tests)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

import structlog

from hive.orchestration.errors import TaskFailure
from hive.orchestration.executor import WorkerContext
from hive.orchestration.models import Batch, TaskDescriptor

logger = structlog.get_logger(__name__)


class PayloadRunnerBase(ABC):
    """Abstract base for payload execution backends."""

    @abstractmethod
    async def run(self, context: WorkerContext) -> Any:
        """Execute the task body and return its output."""


class CallableRunner(PayloadRunnerBase):
    """Run a function ``fn(context)``.

    Coroutine functions are awaited directly. Plain functions run in the
    default thread pool; on cancellation the context signal is set and the
    runner waits for the thread to return before propagating, so nothing is
    still running once the task is reported Cancelled.
    """

    def __init__(self, fn: Callable[[WorkerContext], Any]):
        self._fn = fn

    async def run(self, context: WorkerContext) -> Any:
        if inspect.iscoroutinefunction(self._fn):
            return await self._fn(context)

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(self._fn, context))
        try:
            result = await asyncio.shield(future)
        except asyncio.CancelledError:
            context.signal_cancel()
            await asyncio.wait([future])
            raise
        if inspect.isawaitable(result):
            return await result
        return result


class RoutingRunner(PayloadRunnerBase):
    """Route each task to a per-agent runner by ``descriptor.agent``."""

    def __init__(
        self,
        routes: Optional[Mapping[str, PayloadRunnerBase]] = None,
        default: Optional[PayloadRunnerBase] = None,
    ):
        self._routes: dict[str, PayloadRunnerBase] = dict(routes or {})
        self._default = default

    def register(self, agent: str, runner: PayloadRunnerBase) -> None:
        if agent in self._routes:
            raise ValueError(f"Agent '{agent}' already has a runner")
        self._routes[agent] = runner

    @property
    def agents(self) -> list[str]:
        return sorted(self._routes)

    async def run(self, context: WorkerContext) -> Any:
        agent = context.descriptor.agent
        runner = self._routes.get(agent, self._default)
        if runner is None:
            raise TaskFailure(f"No runner registered for agent '{agent}'")
        logger.debug(
            "runner.route",
            task_id=context.task_id,
            agent=agent,
            runner=type(runner).__name__,
        )
        return await runner.run(context)


class ScriptedRunner(PayloadRunnerBase):
    """Deterministic runner driven entirely by the payload.

    Recognised payload keys, applied in this order:

      sleep   : seconds to wait (cancellable)
      invoke  : list of ``{"operation": str, "args": {...}}`` gated calls,
                 or a single operation name
      require : list of capability names to assert
      children : list of task objects run as a nested child batch
      fail    : message; raises TaskFailure (task_error)
      crash   : message; raises RuntimeError (worker_fault)
      output  : value returned; defaults to a summary of the run
    """

    async def run(self, context: WorkerContext) -> Any:
        payload = context.payload
        summary: dict[str, Any] = {"task_id": context.task_id}

        delay = float(payload.get("sleep", 0) or 0)
        if delay > 0:
            await asyncio.sleep(delay)

        calls = payload.get("invoke") or []
        if isinstance(calls, str):
            calls = [calls]
        invoked: list[Any] = []
        for call in calls:
            if isinstance(call, str):
                call = {"operation": call}
            invoked.append(
                await context.invoke(call["operation"], **(call.get("args") or {}))
            )
        if invoked:
            summary["invoked"] = invoked

        for capability in payload.get("require") or []:
            context.require(capability)

        children = payload.get("children") or []
        if children:
            report = await context.run_child(Batch(
                tasks=tuple(TaskDescriptor.model_validate(c) for c in children),
                description=f"children of {context.task_id}",
            ))
            summary["children"] = report.status.value

        if payload.get("fail"):
            raise TaskFailure(str(payload["fail"]))
        if payload.get("crash"):
            raise RuntimeError(str(payload["crash"]))

        context.check_cancelled()
        if "output" in payload:
            return payload["output"]
        return summary
