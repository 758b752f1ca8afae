"""
Event Bus — lifecycle notifications for batches and tasks.

Typed Pydantic events are emitted onto an asyncio.Queue and fanned out by a
single dispatcher task to subscribers matched with fnmatch-style patterns
("batch.*", "task.finished", "*").

  - emit() never blocks and is safe to call from synchronous scheduler code
  - handlers may be sync or async; their exceptions are logged, never raised
  - events are delivered in emission order
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
import time
import uuid
from typing import Any, Callable, Coroutine, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventHandler = Callable[["HiveEvent"], Any] | Callable[["HiveEvent"], Coroutine[Any, Any, Any]]

# "BatchSubmitted" -> ["Batch", "Submitted"]; keeps acronyms together.
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")

_SENTINEL = object()


class HiveEvent(BaseModel):
    """Base class for every event on the bus.

    ``event_type`` defaults to the dotted, lower-cased class name without its
    ``Event`` suffix, e.g. ``TaskFinishedEvent`` -> ``task.finished``.
    """

    event_type: str = ""
    timestamp: float = Field(default_factory=time.time)

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = _CAMEL_SPLIT_RE.findall(name)
            self.event_type = ".".join(p.lower() for p in parts) if parts else name.lower()


class _Subscription:
    __slots__ = ("sub_id", "pattern", "handler", "_regex")

    def __init__(self, sub_id: str, pattern: str, handler: EventHandler) -> None:
        self.sub_id = sub_id
        self.pattern = pattern
        self.handler = handler
        self._regex = re.compile(fnmatch.translate(pattern))

    def matches(self, event_type: str) -> bool:
        return self._regex.match(event_type) is not None


class EventBus:
    """Async fan-out bus with wildcard subscriptions."""

    def __init__(self, max_queue_size: int = 10000) -> None:
        self._queue: asyncio.Queue[HiveEvent | object] = asyncio.Queue(maxsize=max_queue_size)
        self._subscriptions: dict[str, _Subscription] = {}
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._running = False
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="hive-event-bus")
        logger.debug("event_bus.started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        if not self._running:
            return
        self._running = False
        try:
            self._queue.put_nowait(_SENTINEL)
        except asyncio.QueueFull:
            logger.warning("event_bus.stop_queue_full")
            if self._dispatcher is not None:
                self._dispatcher.cancel()
        if self._dispatcher is not None:
            try:
                await asyncio.wait_for(self._dispatcher, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("event_bus.stop_timeout", timeout=timeout)
                self._dispatcher.cancel()
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        logger.debug("event_bus.stopped")

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Register ``handler`` for event types matching ``pattern``."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(sub_id, pattern, handler)
        logger.debug("event_bus.subscribed", pattern=pattern, sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        return self._subscriptions.pop(sub_id, None) is not None

    def emit(self, event: HiveEvent) -> None:
        """Enqueue without blocking; drops (and logs) when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("event_bus.queue_full", event_type=event.event_type)

    async def flush(self) -> None:
        """Wait until every event emitted so far has been dispatched."""
        if self._running:
            await self._queue.join()

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _SENTINEL:
                    break
                await self._dispatch(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

        # Anything emitted after the sentinel still gets delivered.
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _SENTINEL:
                await self._dispatch(item)  # type: ignore[arg-type]
            self._queue.task_done()

    async def _dispatch(self, event: HiveEvent) -> None:
        handlers = [
            self._invoke(sub, event)
            for sub in list(self._subscriptions.values())
            if sub.matches(event.event_type)
        ]
        if handlers:
            await asyncio.gather(*handlers)

    @staticmethod
    async def _invoke(sub: _Subscription, event: HiveEvent) -> None:
        try:
            result = sub.handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "event_bus.handler_error",
                pattern=sub.pattern,
                event_type=event.event_type,
                exc_info=True,
            )


def create_event_bus(max_queue_size: int = 10000) -> EventBus:
    """Factory function to create an EventBus instance."""
    return EventBus(max_queue_size=max_queue_size)


# ---------------------------------------------------------------------------
# Event definitions
# ---------------------------------------------------------------------------

class BatchSubmittedEvent(HiveEvent):
    """A batch passed validation and was admitted."""

    batch_id: str
    task_count: int
    depth: int = 0
    parent_batch_id: Optional[str] = None
    parent_task_id: Optional[str] = None


class BatchRejectedEvent(HiveEvent):
    batch_id: str
    codes: list[str] = Field(default_factory=list)
    message: str = ""


class TaskStartedEvent(HiveEvent):
    """A task acquired a worker slot."""

    batch_id: str
    task_id: str
    agent: str = ""


class TaskFinishedEvent(HiveEvent):
    """A task reached a terminal state (including cascaded cancellations)."""

    batch_id: str
    task_id: str
    state: str
    error_kind: Optional[str] = None
    elapsed_seconds: float = 0.0


class BatchCompletedEvent(HiveEvent):
    batch_id: str
    status: str
    counts: dict[str, int] = Field(default_factory=dict)
    elapsed_seconds: float = 0.0


class BatchCancelledEvent(HiveEvent):
    batch_id: str
    affected: int = 0
