"""
Devbox Commander — Runtime Client Adapter
═════════════════════════════════════════
Docker SDK integration behind an async façade:
- Create/Start/Stop/Remove containers and workspace volumes
- Execute commands inside running containers
- List managed containers (label filtered)
- Live resource updates, stats, logs, inspect

The SDK is blocking, so every call runs in a worker thread via
asyncio.to_thread. SDK exceptions are translated into the engine's
error taxonomy here and nowhere else.
"""

import asyncio
import logging
import threading
from typing import Optional, List, Dict

import docker
from docker.errors import DockerException, NotFound, APIError
from pydantic import BaseModel, Field

from . import config
from .errors import ContainerRuntimeError, NotFoundError
from .models import ExecResult, RuntimeContainer

logger = logging.getLogger(__name__)


class ContainerSpec(BaseModel):
    """Everything the runtime needs to create one dev container."""
    name: str
    image: str
    environment: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    volume_name: str
    memory_mb: int
    cpu_cores: float
    disk_mb: Optional[int] = None
    ports: Dict[str, Optional[int]] = Field(default_factory=dict)


def _is_not_running(e: APIError) -> bool:
    code = getattr(e, "status_code", None)
    return code == 304 or "is not running" in str(e).lower()


class DockerRuntime:
    """Thin async adapter over docker.DockerClient."""

    def __init__(self, client: Optional[docker.DockerClient] = None,
                 base_url: str = config.DOCKER_SOCKET_PATH):
        self._client = client
        self._base_url = base_url
        self._lock = threading.Lock()

    # ── Client ────────────────────────────────────────────

    @property
    def client(self) -> docker.DockerClient:
        """Lazily connect (thread-safe)."""
        if self._client is None:
            with self._lock:
                if self._client is None:
                    if self._base_url:
                        self._client = docker.DockerClient(base_url=self._base_url)
                    else:
                        self._client = docker.from_env()
        return self._client

    def _get(self, runtime_id: str):
        try:
            return self.client.containers.get(runtime_id)
        except NotFound:
            raise NotFoundError(f"Runtime container not found: {runtime_id[:12]}")
        except DockerException as e:
            raise ContainerRuntimeError(f"Inspect failed for {runtime_id[:12]}: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except DockerException as e:
            logger.error(f"[Runtime] Ping failed: {e}")
            return False

    # ── Lifecycle ─────────────────────────────────────────

    def _create(self, spec: ContainerSpec) -> str:
        host_config = dict(
            mem_limit=spec.memory_mb * 1024 * 1024,
            nano_cpus=int(spec.cpu_cores * 1e9),
            restart_policy={"Name": "unless-stopped"},
        )
        if spec.disk_mb and config.ENABLE_STORAGE_QUOTA:
            host_config["storage_opt"] = {"size": f"{spec.disk_mb}m"}
        try:
            container = self.client.containers.create(
                image=spec.image,
                name=spec.name,
                environment=spec.environment,
                labels=spec.labels,
                volumes={spec.volume_name: {"bind": config.WORKSPACE_DIR, "mode": "rw"}},
                ports=spec.ports or None,
                working_dir=config.WORKSPACE_DIR,
                tty=True,
                stdin_open=True,
                detach=True,
                **host_config,
            )
        except DockerException as e:
            raise ContainerRuntimeError(f"Create failed for {spec.name}: {e}") from e
        logger.info(f"[Runtime] Created: {spec.name} ({container.id[:12]})")
        return container.id

    async def create(self, spec: ContainerSpec) -> str:
        return await asyncio.to_thread(self._create, spec)

    def _start(self, runtime_id: str):
        container = self._get(runtime_id)
        try:
            container.start()
        except APIError as e:
            if getattr(e, "status_code", None) == 304:
                return  # already running
            raise ContainerRuntimeError(f"Start failed for {runtime_id[:12]}: {e}") from e
        logger.info(f"[Runtime] Started: {runtime_id[:12]}")

    async def start(self, runtime_id: str):
        await asyncio.to_thread(self._start, runtime_id)

    def _stop(self, runtime_id: str, timeout: int):
        try:
            container = self.client.containers.get(runtime_id)
            container.stop(timeout=timeout)
        except NotFound:
            logger.warning(f"[Runtime] Stop: {runtime_id[:12]} not found, nothing to stop")
            return
        except APIError as e:
            if _is_not_running(e):
                return
            raise ContainerRuntimeError(f"Stop failed for {runtime_id[:12]}: {e}") from e
        logger.info(f"[Runtime] Stopped: {runtime_id[:12]}")

    async def stop(self, runtime_id: str, timeout: int = config.CONTAINER_STOP_TIMEOUT):
        await asyncio.to_thread(self._stop, runtime_id, timeout)

    def _remove(self, runtime_id: str, force: bool):
        try:
            self.client.containers.get(runtime_id).remove(force=force)
        except NotFound:
            logger.info(f"[Runtime] Remove: {runtime_id[:12]} already gone")
            return
        except DockerException as e:
            raise ContainerRuntimeError(f"Remove failed for {runtime_id[:12]}: {e}") from e
        logger.info(f"[Runtime] Removed: {runtime_id[:12]}")

    async def remove(self, runtime_id: str, force: bool = False):
        await asyncio.to_thread(self._remove, runtime_id, force)

    def _remove_volume(self, name: str):
        try:
            self.client.volumes.get(name).remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError(f"Volume remove failed for {name}: {e}") from e
        logger.info(f"[Runtime] Volume removed: {name}")

    async def remove_volume(self, name: str):
        await asyncio.to_thread(self._remove_volume, name)

    # ── Exec ──────────────────────────────────────────────

    def _exec(self, runtime_id: str, argv: List[str], user: Optional[str],
              workdir: Optional[str]) -> ExecResult:
        container = self._get(runtime_id)
        try:
            result = container.exec_run(argv, demux=True, user=user or "", workdir=workdir)
        except DockerException as e:
            raise ContainerRuntimeError(f"Exec failed in {runtime_id[:12]}: {e}") from e
        out, err = result.output if result.output else (None, None)
        return ExecResult(
            exit_code=result.exit_code if result.exit_code is not None else -1,
            stdout=(out or b"").decode("utf-8", errors="replace"),
            stderr=(err or b"").decode("utf-8", errors="replace"),
        )

    async def exec(self, runtime_id: str, argv: List[str], user: Optional[str] = None,
                   workdir: Optional[str] = None) -> ExecResult:
        return await asyncio.to_thread(self._exec, runtime_id, argv, user, workdir)

    # ── Queries ───────────────────────────────────────────

    def _list(self, all: bool) -> List[RuntimeContainer]:
        try:
            containers = self.client.containers.list(all=all, filters={"label": config.LABEL_ID})
        except DockerException as e:
            raise ContainerRuntimeError(f"List failed: {e}") from e
        return [
            RuntimeContainer(id=c.id, name=c.name or "", state=c.status or "", labels=c.labels or {})
            for c in containers
        ]

    async def list(self, all: bool = True) -> List[RuntimeContainer]:
        return await asyncio.to_thread(self._list, all)

    def _update_resources(self, runtime_id: str, memory_bytes: Optional[int],
                          nano_cpus: Optional[int]):
        kwargs = {}
        if memory_bytes is not None:
            kwargs["mem_limit"] = memory_bytes
            kwargs["memswap_limit"] = memory_bytes
        if nano_cpus is not None:
            # docker-py has no nano_cpus kwarg on update; period/quota is equivalent
            kwargs["cpu_period"] = 100000
            kwargs["cpu_quota"] = int(nano_cpus / 1e9 * 100000)
        if not kwargs:
            return
        container = self._get(runtime_id)
        try:
            container.update(**kwargs)
        except DockerException as e:
            raise ContainerRuntimeError(f"Resource update failed for {runtime_id[:12]}: {e}") from e
        logger.info(f"[Runtime] Resources updated: {runtime_id[:12]} {kwargs}")

    async def update_resources(self, runtime_id: str, memory_bytes: Optional[int] = None,
                               nano_cpus: Optional[int] = None):
        await asyncio.to_thread(self._update_resources, runtime_id, memory_bytes, nano_cpus)

    def _stats(self, runtime_id: str) -> Dict:
        container = self._get(runtime_id)
        try:
            return container.stats(stream=False)
        except DockerException as e:
            raise ContainerRuntimeError(f"Stats failed for {runtime_id[:12]}: {e}") from e

    async def stats(self, runtime_id: str) -> Dict:
        return await asyncio.to_thread(self._stats, runtime_id)

    def _inspect(self, runtime_id: str) -> Dict:
        return self._get(runtime_id).attrs

    async def inspect(self, runtime_id: str) -> Dict:
        return await asyncio.to_thread(self._inspect, runtime_id)

    def _logs(self, runtime_id: str, tail: int) -> str:
        container = self._get(runtime_id)
        try:
            return container.logs(tail=tail, timestamps=True).decode("utf-8", errors="replace")
        except DockerException as e:
            raise ContainerRuntimeError(f"Logs failed for {runtime_id[:12]}: {e}") from e

    async def logs(self, runtime_id: str, tail: int = 100) -> str:
        return await asyncio.to_thread(self._logs, runtime_id, tail)
