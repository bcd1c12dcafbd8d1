"""
Unit Tests: State Reconciliation
================================
Tests:
  1. labeled runtime containers without a record are recovered with default limits
  2. drifted statuses are corrected; unlabeled containers are ignored
  3. records whose runtime object vanished are removed
  4. in-flight creates are neither updated nor removed
  5. recovery is skipped when the name is already taken
  6. a runtime failure is logged and the pass returns cleanly
  7. repeated passes converge (idempotent)
  8. records changed or deleted while the runtime is listed are handled safely
"""

import asyncio

import pytest

from devbox_commander import config
from devbox_commander.errors import ContainerRuntimeError
from devbox_commander.models import ContainerRecord, ContainerStatus, CreateContainerRequest
from devbox_commander.reconcile import StateReconciler, map_runtime_state


def _labels(cid, name, template="vscode", mode="autonomous"):
    return {
        config.LABEL_ID: cid,
        config.LABEL_NAME: name,
        config.LABEL_TEMPLATE: template,
        config.LABEL_MODE: mode,
    }


@pytest.fixture
def reconciler(orchestrator):
    return StateReconciler(orchestrator, interval=3600)


@pytest.mark.parametrize("state,expected", [
    ("created", ContainerStatus.CREATING),
    ("running", ContainerStatus.RUNNING),
    ("paused", ContainerStatus.PAUSED),
    ("restarting", ContainerStatus.RESTARTING),
    ("removing", ContainerStatus.REMOVING),
    ("exited", ContainerStatus.EXITED),
    ("dead", ContainerStatus.DEAD),
    ("weird", ContainerStatus.STOPPED),
    ("", ContainerStatus.STOPPED),
])
def test_state_map(state, expected):
    assert map_runtime_state(state) == expected


@pytest.mark.asyncio
async def test_recovers_unknown_labeled_container(reconciler, runtime, store):
    runtime.add_container("rt-recovered-1", "running", _labels("c-rec", "lost"))
    runtime.add_container("rt-foreign-1", "running", {"other": "x"})

    report = await reconciler.reconcile()

    assert report == {"recovered": 1, "updated": 0, "removed": 0}
    record = store.get("c-rec")
    assert record.runtime_id == "rt-recovered-1"
    assert record.status == ContainerStatus.RUNNING
    assert record.template.value == "vscode"
    assert record.mode.value == "autonomous"
    assert record.cpu_limit == 2.0
    assert record.memory_limit == 2048
    assert record.disk_limit == 10240
    assert len(store.list_all()) == 1


@pytest.mark.asyncio
async def test_never_started_container_recovers_as_stopped(reconciler, runtime, store):
    runtime.add_container("rt-new-1", "created", _labels("c-new", "fresh"))
    await reconciler.reconcile()
    assert store.get("c-new").status == ContainerStatus.STOPPED


@pytest.mark.asyncio
async def test_corrects_drift_and_removes_orphans(reconciler, orchestrator, runtime, store, bus):
    kept = await orchestrator.create(CreateContainerRequest(name="kept"))
    gone = await orchestrator.create(CreateContainerRequest(name="gone"))
    runtime.containers[kept.runtime_id].state = "exited"
    runtime.containers.pop(gone.runtime_id)
    sub = bus.subscribe("container:*")

    report = await reconciler.reconcile()

    assert report == {"recovered": 0, "updated": 1, "removed": 1}
    assert store.get(kept.id).status == ContainerStatus.EXITED
    assert store.get(gone.id) is None
    assert gone.id not in orchestrator._cache
    events = set()
    while not sub.queue.empty():
        data = sub.queue.get_nowait()["data"]
        events.add((data["containerId"], data["status"]))
    assert events == {(kept.id, "exited"), (gone.id, "removed")}


@pytest.mark.asyncio
async def test_in_flight_create_is_left_alone(reconciler, orchestrator, store):
    await orchestrator.submit_create(CreateContainerRequest(name="busy"))
    record = store.get_by_name("busy")

    report = await reconciler.reconcile()

    assert report["removed"] == 0
    assert store.get(record.id).status == ContainerStatus.CREATING
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_stale_placeholder_from_crash_is_removed(reconciler, store):
    store.create(ContainerRecord(id="c-crash", runtime_id="pending-c-crash", name="crashed"))
    report = await reconciler.reconcile()
    assert report["removed"] == 1
    assert store.get("c-crash") is None


@pytest.mark.asyncio
async def test_recovery_skipped_on_name_collision(reconciler, orchestrator, runtime, store):
    existing = await orchestrator.create(CreateContainerRequest(name="dup"))
    runtime.add_container("rt-dup-2", "running", _labels("c-other", "dup"))

    report = await reconciler.reconcile()

    assert report["recovered"] == 0
    assert store.get("c-other") is None
    assert store.get(existing.id) is not None


@pytest.mark.asyncio
async def test_runtime_failure_is_logged(reconciler, orchestrator, runtime, store):
    record = await orchestrator.create(CreateContainerRequest(name="safe"))
    runtime.fail_on["list"] = ContainerRuntimeError("daemon unreachable")

    report = await reconciler.reconcile()

    assert report == {"recovered": 0, "updated": 0, "removed": 0}
    assert store.get(record.id) is not None


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(reconciler, runtime, store):
    runtime.add_container("rt-a-0001", "running", _labels("c-a", "alpha"))
    runtime.add_container("rt-b-0001", "exited", _labels("c-b", "beta"))

    await reconciler.reconcile()
    snapshot = {r.id: (r.status, r.runtime_id) for r in store.list_all()}
    second = await reconciler.reconcile()

    assert second == {"recovered": 0, "updated": 0, "removed": 0}
    assert {r.id: (r.status, r.runtime_id) for r in store.list_all()} == snapshot


@pytest.mark.asyncio
async def test_loop_start_stop(reconciler):
    reconciler.start_loop()
    assert reconciler._loop_task is not None
    await reconciler.stop_loop()
    assert reconciler._loop_task is None


@pytest.mark.asyncio
async def test_create_finishing_during_listing_keeps_record(reconciler, orchestrator, runtime, store):
    listed = runtime.list

    async def slow_list(all=True):
        snapshot = await listed(all=all)
        for _ in range(10000):
            if not orchestrator.creating_ids:
                break
            await asyncio.sleep(0)
        return snapshot

    runtime.list = slow_list
    await orchestrator.submit_create(CreateContainerRequest(name="demo"))

    report = await reconciler.reconcile()

    assert report["removed"] == 0
    record = store.get_by_name("demo")
    assert record is not None
    assert record.has_runtime_object
    assert record.status == ContainerStatus.STOPPED
    assert record.runtime_id in runtime.containers


@pytest.mark.asyncio
async def test_runtime_id_assigned_during_listing_keeps_record(reconciler, runtime, store):
    store.create(ContainerRecord(id="c-late", runtime_id="pending-c-late", name="late"))

    async def list_while_assigning(all=True):
        store.update("c-late", runtime_id="rt-late-0001")
        return []

    runtime.list = list_while_assigning
    report = await reconciler.reconcile()

    assert report["removed"] == 0
    assert store.get("c-late").runtime_id == "rt-late-0001"


@pytest.mark.asyncio
async def test_record_deleted_during_listing_does_not_abort_pass(reconciler, orchestrator, runtime, store):
    doomed = await orchestrator.create(CreateContainerRequest(name="doomed"))
    orphan = await orchestrator.create(CreateContainerRequest(name="orphan"))
    runtime.containers[doomed.runtime_id].state = "running"
    runtime.containers.pop(orphan.runtime_id)
    listed = runtime.list

    async def list_while_deleting(all=True):
        store.delete(doomed.id)
        return await listed(all=all)

    runtime.list = list_while_deleting
    report = await reconciler.reconcile()

    assert report["removed"] == 1
    assert report["updated"] == 0
    assert store.get(orphan.id) is None
