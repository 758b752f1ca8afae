"""
Shared fixtures for the Hive test suite.

Provides a minimal orchestration config, a small capability registry and
runner doubles so individual test modules can focus on behavior rather than
setup.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import pytest

from hive.config import LoggingConfig
from hive.main import configure_logging
from hive.orchestration.executor import WorkerContext
from hive.orchestration.models import Batch, TaskDescriptor
from hive.orchestration.policy import CapabilityRegistry
from hive.orchestration.runners import PayloadRunnerBase


class MockConfig:
    """Minimal OrchestrationConfig stand-in for tests."""

    def __init__(self, **overrides: Any):
        self.max_concurrent_tasks = 3
        self.max_queued_tasks = 20
        self.default_timeout = 0.0
        self.max_nesting_depth = 3
        self.max_retained_batches = 50
        self.shutdown_grace_seconds = 2.0
        self.capabilities_file = None
        self.default_capabilities: list[str] = []
        self.event_queue_size = 1000
        for key, value in overrides.items():
            setattr(self, key, value)


class RecordingRunner(PayloadRunnerBase):
    """Runs ``payload["sleep"]`` then returns ``payload.get("output", task_id)``.

    Records start order and samples how many bodies run at once.
    """

    def __init__(self, body: Optional[Callable[[WorkerContext], Any]] = None):
        self._body = body
        self.started: list[str] = []
        self.finished: list[str] = []
        self.current = 0
        self.peak = 0

    async def run(self, context: WorkerContext) -> Any:
        self.started.append(context.task_id)
        self.current += 1
        self.peak = max(self.peak, self.current)
        try:
            delay = float(context.payload.get("sleep", 0) or 0)
            if delay:
                await asyncio.sleep(delay)
            if self._body is not None:
                result = self._body(context)
                if asyncio.iscoroutine(result):
                    result = await result
                return result
            return context.payload.get("output", context.task_id)
        finally:
            self.current -= 1
            self.finished.append(context.task_id)


def task(task_id: str, *deps: str, **fields: Any) -> TaskDescriptor:
    """Shorthand descriptor builder: ``task("b", "a", priority=2)``."""
    return TaskDescriptor(task_id=task_id, depends_on=tuple(deps), **fields)


def batch(*tasks: TaskDescriptor, batch_id: Optional[str] = None) -> Batch:
    if batch_id is None:
        return Batch(tasks=tuple(tasks))
    return Batch(batch_id=batch_id, tasks=tuple(tasks))


@pytest.fixture(autouse=True, scope="session")
def _structured_logging() -> None:
    """Route structlog through stdlib logging so CLI output stays clean."""
    configure_logging(LoggingConfig(level="WARNING"), force=True)


@pytest.fixture()
def config() -> MockConfig:
    return MockConfig()


@pytest.fixture()
def registry() -> CapabilityRegistry:
    return CapabilityRegistry({
        "read_repo": ["fs.read", "fs.list"],
        "run_shell": ["shell.exec"],
        "web": ["http.get"],
    })
