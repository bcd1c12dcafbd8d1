"""
Unit Tests: Event Bus
=====================
Tests:
  1. Glob channel patterns route messages to matching subscribers only
  2. Pydantic payloads are serialized to plain dicts
  3. A full queue drops its oldest message instead of blocking
  4. Listener exceptions never reach the publisher
"""

import pytest

from devbox_commander.events import EventBus, Subscription
from devbox_commander.models import CreationProgress, CreationStage


def test_pattern_routing():
    bus = EventBus()
    tasks_sub = bus.subscribe("task:*")
    one_container = bus.subscribe("container:c1")
    everything = bus.subscribe()

    bus.publish("task:t1", "task:event", {"x": 1})
    bus.publish("container:c1", "container:status", {"status": "running"})
    bus.publish("container:c2", "container:status", {"status": "stopped"})

    assert tasks_sub.queue.qsize() == 1
    assert one_container.queue.qsize() == 1
    assert everything.queue.qsize() == 3
    assert one_container.queue.get_nowait()["data"] == {"status": "running"}


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    sub = bus.subscribe("task:*")
    bus.unsubscribe(sub)
    bus.publish("task:t1", "task:event", {})
    assert sub.queue.empty()
    assert bus.subscriber_count == 0


def test_creation_progress_is_serialized():
    bus = EventBus()
    sub = bus.subscribe("creation:*")
    bus.emit_creation_progress(CreationProgress(
        taskId="t1", containerId="c1", stage=CreationStage.CLONING,
        percentage=55, message="Cloning",
    ))
    message = sub.queue.get_nowait()
    assert message["channel"] == "creation:t1"
    assert message["event"] == "container:creation:progress"
    assert message["data"]["stage"] == "cloning"
    assert message["data"]["percentage"] == 55
    assert isinstance(message["data"]["timestamp"], str)


def test_full_queue_drops_oldest():
    sub = Subscription("*", maxsize=2)
    for i in range(3):
        sub.offer({"n": i})
    assert sub.dropped == 1
    assert [sub.queue.get_nowait()["n"] for _ in range(2)] == [1, 2]


def test_listener_errors_are_contained():
    bus = EventBus()
    seen = []

    def broken(channel, event, data):
        raise RuntimeError("listener blew up")

    bus.add_listener(broken)
    bus.add_listener(lambda channel, event, data: seen.append((channel, event)))
    bus.emit_container_status("c1", "running")

    assert seen == [("container:c1", "container:status")]


@pytest.mark.asyncio
async def test_subscription_get_with_timeout():
    bus = EventBus()
    sub = bus.subscribe("metrics:*")
    bus.emit_metrics("c1", {"cpu_percent": 3.5})
    message = await sub.get(timeout=1)
    assert message["data"] == {"containerId": "c1", "cpu_percent": 3.5}
