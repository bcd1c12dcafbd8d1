# tests/conftest.py
"""
Pytest fixtures: in-memory runtime fake, temp SQLite store, wired orchestrator.
"""

import os
import sys
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devbox_commander.errors import NotFoundError
from devbox_commander.events import EventBus
from devbox_commander.models import ExecResult, RuntimeContainer
from devbox_commander.orchestrator import LifecycleOrchestrator
from devbox_commander.store import ContainerStore
from devbox_commander.tasks import TaskTracker
from devbox_commander.templates import load_templates


# ═══════════════════════════════════════════════════════════
# RUNTIME FAKE
# ═══════════════════════════════════════════════════════════

STATS_SAMPLE = {
    "cpu_stats": {"cpu_usage": {"total_usage": 400}, "system_cpu_usage": 2000, "online_cpus": 2},
    "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000},
    "memory_stats": {"usage": 512 * 1024 * 1024, "limit": 2048 * 1024 * 1024},
    "networks": {"eth0": {"rx_bytes": 100, "tx_bytes": 50}},
}


class FakeRuntime:
    """Records every call; containers live in a dict keyed by runtime id."""

    def __init__(self):
        self.containers: Dict[str, RuntimeContainer] = {}
        self.specs = {}
        self.volumes = set()
        self.calls: List[Tuple[str, tuple]] = []
        self.fail_on: Dict[str, Exception] = {}
        self.exec_results: List[Tuple[Callable[[List[str]], bool], ExecResult]] = []
        self.resource_updates = []
        self.stats_payload = dict(STATS_SAMPLE)
        self._seq = 0

    def _record(self, method: str, *args):
        self.calls.append((method, args))
        exc = self.fail_on.get(method)
        if exc is not None:
            raise exc

    def called(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def add_container(self, runtime_id: str, state: str, labels: Optional[dict] = None,
                      name: str = "") -> RuntimeContainer:
        rc = RuntimeContainer(id=runtime_id, name=name, state=state, labels=labels or {})
        self.containers[runtime_id] = rc
        return rc

    async def ping(self):
        return True

    async def create(self, spec):
        self._record("create", spec)
        self._seq += 1
        runtime_id = f"rt{self._seq:010d}abcdef"
        self.specs[runtime_id] = spec
        self.volumes.add(spec.volume_name)
        self.add_container(runtime_id, "created", dict(spec.labels), spec.name)
        return runtime_id

    async def start(self, runtime_id):
        self._record("start", runtime_id)
        if runtime_id not in self.containers:
            raise NotFoundError(runtime_id)
        self.containers[runtime_id].state = "running"

    async def stop(self, runtime_id, timeout=10):
        self._record("stop", runtime_id)
        if runtime_id in self.containers:
            self.containers[runtime_id].state = "exited"

    async def remove(self, runtime_id, force=False):
        self._record("remove", runtime_id, force)
        self.containers.pop(runtime_id, None)

    async def remove_volume(self, name):
        self._record("remove_volume", name)
        self.volumes.discard(name)

    async def exec(self, runtime_id, argv, user=None, workdir=None):
        self._record("exec", runtime_id, list(argv))
        for predicate, result in self.exec_results:
            if predicate(list(argv)):
                return result
        return ExecResult(exit_code=0)

    async def list(self, all=True):
        self._record("list")
        return [rc.model_copy() for rc in self.containers.values()]

    async def update_resources(self, runtime_id, memory_bytes=None, nano_cpus=None):
        self._record("update_resources", runtime_id)
        self.resource_updates.append((runtime_id, memory_bytes, nano_cpus))

    async def stats(self, runtime_id):
        self._record("stats", runtime_id)
        return self.stats_payload

    async def inspect(self, runtime_id):
        return {"Id": runtime_id}

    async def logs(self, runtime_id, tail=100):
        self._record("logs", runtime_id, tail)
        return "line1\nline2"


# ═══════════════════════════════════════════════════════════
# ENGINE FIXTURES
# ═══════════════════════════════════════════════════════════

@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def store(tmp_path):
    s = ContainerStore(str(tmp_path / "devbox.db"))
    s.init_db()
    return s


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def tasks(bus):
    return TaskTracker(bus)


@pytest.fixture
def orchestrator(store, runtime, bus, tasks):
    return LifecycleOrchestrator(
        store, runtime, bus, tasks,
        templates=load_templates(""),
        setup_timeout=0.05,
        health_timeout=0.05,
        poll_interval=0,
    )


@pytest.fixture
def stats_sample():
    return dict(STATS_SAMPLE)
