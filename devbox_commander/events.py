"""
Devbox Commander — Event Bus
════════════════════════════
In-process pub/sub decoupling workflows from observers:
- Channels: task:<id>, container:<id>, creation:<taskId>, metrics:<id>
- Subscribers get an asyncio.Queue filtered by a glob pattern ("task:*")
- Synchronous listeners for in-process hooks
- publish() never raises; a full queue drops its oldest message
"""

import asyncio
import fnmatch
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from . import config
from .models import ContainerStatusEvent, CreationProgress, TaskEvent

logger = logging.getLogger(__name__)

Listener = Callable[[str, str, Dict[str, Any]], None]


class Subscription:
    """A queue receiving {"channel", "event", "data"} messages for matching channels."""

    def __init__(self, pattern: str, maxsize: int = config.EVENT_QUEUE_SIZE):
        self.pattern = pattern
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, channel: str) -> bool:
        return fnmatch.fnmatchcase(channel, self.pattern)

    def offer(self, message: Dict[str, Any]):
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(message)

    async def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class EventBus:
    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Listener] = []

    # ── Subscription Management ───────────────────────────

    def subscribe(self, pattern: str = "*") -> Subscription:
        sub = Subscription(pattern)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # ── Publishing ────────────────────────────────────────

    def publish(self, channel: str, event: str, data: Any):
        """Fan out to matching subscribers and all listeners. Never raises."""
        try:
            if isinstance(data, BaseModel):
                data = data.model_dump(mode="json")
            message = {"channel": channel, "event": event, "data": data}
        except Exception as e:
            logger.error(f"[Events] Could not serialize {event} on {channel}: {e}")
            return

        for sub in list(self._subscriptions):
            if not sub.matches(channel):
                continue
            try:
                sub.offer(message)
            except Exception as e:
                logger.error(f"[Events] Delivery to '{sub.pattern}' failed: {e}")

        for listener in list(self._listeners):
            try:
                listener(channel, event, message["data"])
            except Exception as e:
                logger.error(f"[Events] Listener error for {event}: {e}")

    # ── Typed Helpers ─────────────────────────────────────

    def emit_task_event(self, payload: TaskEvent):
        self.publish(f"task:{payload.task.id}", "task:event", payload)

    def emit_container_status(self, container_id: str, status: str):
        self.publish(
            f"container:{container_id}", "container:status",
            ContainerStatusEvent(containerId=container_id, status=status),
        )

    def emit_creation_progress(self, progress: CreationProgress):
        self.publish(f"creation:{progress.taskId}", "container:creation:progress", progress)

    def emit_metrics(self, container_id: str, metrics: Dict[str, Any]):
        self.publish(f"metrics:{container_id}", "container:metrics",
                     {"containerId": container_id, **metrics})
