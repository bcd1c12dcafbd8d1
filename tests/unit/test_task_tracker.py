"""
Unit Tests: Task Tracker
========================
Tests:
  1. create → pending, start → running with started_at
  2. complete / fail stamp completed_at and set result / error
  3. every mutation publishes on task:<id>
  4. unknown ids are ignored (None / False)
  5. sweep drops tasks older than the retention window regardless of status
"""

from datetime import datetime, timedelta

import pytest

from devbox_commander.models import TaskStatus, TaskType


def _drain(sub):
    out = []
    while not sub.queue.empty():
        out.append(sub.queue.get_nowait())
    return out


def test_create_is_pending(tasks):
    task = tasks.create(TaskType.CREATE)
    assert task.status == TaskStatus.PENDING
    assert task.progress == 0
    assert tasks.get(task.id) == task


def test_lifecycle_timestamps(tasks):
    task = tasks.create(TaskType.START)
    started = tasks.start(task.id)
    assert started.status == TaskStatus.RUNNING
    assert started.started_at is not None
    assert started.completed_at is None

    tasks.set_progress(task.id, 40, "halfway")
    assert tasks.get(task.id).progress == 40
    assert tasks.get(task.id).message == "halfway"

    done = tasks.complete(task.id, {"containerId": "c1"})
    assert done.status == TaskStatus.COMPLETED
    assert done.progress == 100
    assert done.result == {"containerId": "c1"}
    assert done.completed_at is not None


def test_fail_records_error(tasks):
    task = tasks.create(TaskType.DELETE)
    tasks.start(task.id)
    failed = tasks.fail(task.id, "boom")
    assert failed.status == TaskStatus.FAILED
    assert failed.error == "boom"
    assert failed.completed_at is not None


def test_progress_is_clamped(tasks):
    task = tasks.create(TaskType.CREATE)
    assert tasks.set_progress(task.id, 150).progress == 100
    assert tasks.set_progress(task.id, -5).progress == 0


def test_mutations_publish_events(tasks, bus):
    sub = bus.subscribe("task:*")
    task = tasks.create(TaskType.CREATE)
    tasks.start(task.id)
    tasks.set_progress(task.id, 50)
    tasks.complete(task.id)
    tasks.delete(task.id)

    messages = _drain(sub)
    assert [m["data"]["event"] for m in messages] == [
        "created", "updated", "progress", "completed", "deleted",
    ]
    assert {m["channel"] for m in messages} == {f"task:{task.id}"}
    assert {m["event"] for m in messages} == {"task:event"}


def test_status_change_carries_previous_status(tasks, bus):
    task = tasks.create(TaskType.CREATE)
    sub = bus.subscribe(f"task:{task.id}")
    tasks.start(task.id)
    message = sub.queue.get_nowait()
    assert message["data"]["meta"] == {"previousStatus": "pending"}


def test_unknown_task_ids(tasks):
    assert tasks.update("missing", progress=10) is None
    assert tasks.complete("missing") is None
    assert tasks.delete("missing") is False


def test_sweep_removes_old_tasks_of_any_status(tasks):
    old_running = tasks.create(TaskType.CREATE)
    tasks.start(old_running.id)
    old_done = tasks.create(TaskType.STOP)
    tasks.complete(old_done.id)
    fresh = tasks.create(TaskType.START)

    later = datetime.utcnow() + timedelta(hours=1, seconds=1)
    tasks.update(fresh.id, created_at=later - timedelta(minutes=5))

    assert tasks.sweep(now=later) == 2
    assert tasks.get(old_running.id) is None
    assert tasks.get(old_done.id) is None
    assert tasks.get(fresh.id) is not None


@pytest.mark.asyncio
async def test_sweeper_start_stop(tasks):
    tasks.start_sweeper()
    assert tasks._sweeper is not None
    await tasks.stop_sweeper()
    assert tasks._sweeper is None
