"""
Event Bus - publish/subscribe interface between the execution engine and
whatever renders the canvas.

The engine publishes node and edge events; renderers subscribe with a
handler or an asyncio.Queue (used for server-sent events). Publishing never
waits on subscribers: sync handlers run inline, async handlers are scheduled
as tasks on the running loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    # Graph changes
    NODE_ADDED = "node.added"
    EDGE_ADDED = "edge.added"
    NODE_UPDATED = "node.updated"

    # Execution lifecycle
    NODE_STATUS = "node.status"

    # Edge activity
    EDGES_ACTIVATED = "edges.activated"
    EDGES_DEACTIVATED = "edges.deactivated"


class WorkflowEvent(BaseModel):
    type: EventType
    node_id: str | None = None
    edge_ids: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[WorkflowEvent], Any]


class EventBus:
    """In-process pub/sub for workflow events, with a bounded history."""

    def __init__(self, max_history: int = 500):
        self._subscriptions: dict[str, tuple[set[EventType], EventHandler]] = {}
        self._queues: list[asyncio.Queue] = []
        self._history: list[WorkflowEvent] = []
        self._max_history = max_history
        self._subscription_counter = 0
        self._pending_tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: EventHandler,
        event_types: list[EventType] | None = None,
    ) -> str:
        """
        Register a handler for the given event types (all types if None).

        Returns a subscription id for unsubscribe().
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        types = set(event_types) if event_types else set(EventType)
        self._subscriptions[sub_id] = (types, handler)
        logger.debug("Subscription %s registered for %s", sub_id, sorted(t.value for t in types))
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def open_queue(self) -> asyncio.Queue:
        """Open a queue that receives every published event."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: WorkflowEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        for queue in self._queues:
            queue.put_nowait(event)

        for sub_id, (types, handler) in list(self._subscriptions.items()):
            if event.type not in types:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending_tasks.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.error("Handler %s failed for %s: %s", sub_id, event.type.value, e)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Async event handler failed: %s", error)

    def emit(
        self,
        event_type: EventType,
        node_id: str | None = None,
        edge_ids: list[str] | None = None,
        **data: Any,
    ) -> WorkflowEvent:
        """Helper to create and publish an event."""
        event = WorkflowEvent(
            type=event_type,
            node_id=node_id,
            edge_ids=list(edge_ids or []),
            data=data,
        )
        self.publish(event)
        return event

    def get_history(
        self,
        event_type: EventType | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        events = self._history
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if node_id is not None:
            events = [e for e in events if e.node_id == node_id]
        return events[-limit:]

    def clear_history(self) -> None:
        self._history.clear()
