"""
Devbox Commander — Task Tracker
═══════════════════════════════
In-memory registry of long-running lifecycle operations:
- create → pending, start → running, complete/fail → terminal
- progress + message updates published on the Event Bus (task:<id>)
- background sweep reaps tasks older than the retention window
"""

import uuid
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from . import config
from .events import EventBus
from .models import Task, TaskEvent, TaskStatus, TaskType

logger = logging.getLogger(__name__)


class TaskTracker:
    def __init__(self, bus: EventBus,
                 retention_seconds: int = config.TASK_RETENTION_SECONDS,
                 sweep_interval: int = config.TASK_SWEEP_INTERVAL):
        self.bus = bus
        self.retention = timedelta(seconds=retention_seconds)
        self.sweep_interval = sweep_interval
        self._tasks: Dict[str, Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def _publish(self, event: str, task: Task, previous: Optional[TaskStatus] = None):
        meta = {"previousStatus": previous.value} if previous else {}
        self.bus.emit_task_event(TaskEvent(event=event, task=task.model_copy(), meta=meta))

    # ── Mutations ─────────────────────────────────────────

    def create(self, task_type: TaskType, task_id: Optional[str] = None) -> Task:
        task = Task(id=task_id or str(uuid.uuid4()), type=task_type)
        self._tasks[task.id] = task
        logger.info(f"[Tasks] Created {task.type.value} task {task.id}")
        self._publish("created", task)
        return task

    def update(self, task_id: str, **changes: Any) -> Optional[Task]:
        """
        Apply a partial update. Stamps started_at when moving to running and
        completed_at when reaching a terminal status. Unknown ids return None.
        """
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning(f"[Tasks] Update for unknown task {task_id}")
            return None

        previous = task.status
        new_status = changes.get("status")
        if new_status is not None:
            new_status = TaskStatus(new_status)
            changes["status"] = new_status
            if new_status == TaskStatus.RUNNING and task.started_at is None:
                changes.setdefault("started_at", datetime.utcnow())
            if new_status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                changes.setdefault("completed_at", datetime.utcnow())

        updated = task.model_copy(update=changes)
        self._tasks[task_id] = updated

        if new_status == TaskStatus.COMPLETED:
            event = "completed"
        elif new_status == TaskStatus.FAILED:
            event = "failed"
        elif "progress" in changes and new_status is None:
            event = "progress"
        else:
            event = "updated"
        self._publish(event, updated, previous if previous != updated.status else None)
        return updated

    def start(self, task_id: str, message: str = "Started") -> Optional[Task]:
        return self.update(task_id, status=TaskStatus.RUNNING, progress=0, message=message)

    def set_progress(self, task_id: str, progress: int, message: Optional[str] = None) -> Optional[Task]:
        changes: Dict[str, Any] = {"progress": max(0, min(100, int(progress)))}
        if message is not None:
            changes["message"] = message
        return self.update(task_id, **changes)

    def complete(self, task_id: str, result: Optional[Dict[str, Any]] = None) -> Optional[Task]:
        logger.info(f"[Tasks] Completed {task_id}")
        return self.update(task_id, status=TaskStatus.COMPLETED, progress=100,
                           message="Completed", result=result)

    def fail(self, task_id: str, error: str) -> Optional[Task]:
        logger.error(f"[Tasks] Failed {task_id}: {error}")
        return self.update(task_id, status=TaskStatus.FAILED, message="Failed", error=error)

    def delete(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        self._publish("deleted", task)
        return True

    # ── Queries ───────────────────────────────────────────

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_all(self) -> List[Task]:
        return sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)

    # ── Sweep ─────────────────────────────────────────────

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop every task created before now - retention, whatever its status."""
        cutoff = (now or datetime.utcnow()) - self.retention
        stale = [t.id for t in self._tasks.values() if t.created_at < cutoff]
        for task_id in stale:
            del self._tasks[task_id]
        if stale:
            logger.info(f"[Tasks] Swept {len(stale)} old task(s)")
        return len(stale)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"[Tasks] Sweep error: {e}")

    def start_sweeper(self):
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
