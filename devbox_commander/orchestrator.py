"""
Devbox Commander — Lifecycle Orchestrator
═════════════════════════════════════════
Turns user requests into ordered runtime operations:
- create: validate → insert record → runtime create → optional setup → stopped
- start / stop / restart (plain and task-reporting variants)
- delete: idempotent, single-flight per container
- update_limits: live cpu/memory push for running containers
- queries: get_all, get_by_id, get_metrics, get_logs, metrics_history

Any failure during create rolls back the runtime object and the record,
fails the task and re-raises. Every status change is published on the
Event Bus.
"""

import time
import uuid
import asyncio
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from . import config
from .errors import ConflictError, ContainerRuntimeError, DevboxError, NotFoundError, ValidationError
from .events import EventBus
from .locks import OperationLocks
from .metrics import parse_stats, simple_metrics, to_list_item
from .models import (
    ContainerListItem, ContainerRecord, ContainerStatus, CreateContainerRequest,
    CreationProgress, CreationStage, LimitsUpdate, MetricsSample, RepoType, Task, TaskType,
)
from .runtime import ContainerSpec
from .sanitize import sanitize_name, sanitize_repo_url, validate_limits
from .store import ContainerStore
from .tasks import TaskTracker
from .templates import TemplateDef, get_template, load_templates
from .workspace import clone_repository, run_tooling, wait_until_ready

logger = logging.getLogger(__name__)

Reporter = Callable[[int, str], None]
SessionCloser = Callable[[str], Awaitable[Any]]


def _no_report(progress: int, message: str):
    pass


class LifecycleHooks:
    """
    Extension points for the agent worker pool. Failures in any hook are
    logged and never abort the lifecycle operation.
    """

    async def on_start(self, record: ContainerRecord):
        pass

    async def on_stop(self, record: ContainerRecord):
        pass

    async def on_delete(self, record: ContainerRecord):
        pass

    def active_agents(self, container_id: str) -> int:
        return 0


def volume_name_for(name: str) -> str:
    return f"{config.CONTAINER_NAME_PREFIX}{name}{config.VOLUME_SUFFIX}"


class LifecycleOrchestrator:
    def __init__(self, store: ContainerStore, runtime, bus: EventBus, tasks: TaskTracker,
                 locks: Optional[OperationLocks] = None,
                 templates: Optional[Dict[str, TemplateDef]] = None,
                 hooks: Optional[LifecycleHooks] = None,
                 session_closer: Optional[SessionCloser] = None,
                 health_command: Optional[List[str]] = None,
                 setup_timeout: float = config.SETUP_READY_TIMEOUT,
                 health_timeout: float = config.HEALTH_PROBE_TIMEOUT,
                 poll_interval: float = config.POLL_INTERVAL):
        self.store = store
        self.runtime = runtime
        self.bus = bus
        self.tasks = tasks
        self.locks = locks or OperationLocks()
        self.templates = templates if templates is not None else load_templates()
        self.hooks = hooks or LifecycleHooks()
        self.session_closer = session_closer
        self.health_command = health_command
        self.setup_timeout = setup_timeout
        self.health_timeout = health_timeout
        self.poll_interval = poll_interval

        self._cache: Dict[str, ContainerRecord] = {}
        self._creating: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

    # ── Cache / Store Helpers ─────────────────────────────

    @property
    def creating_ids(self) -> Set[str]:
        """Records whose create workflow is running in this process."""
        return set(self._creating)

    def cache_records(self, records: List[ContainerRecord]):
        for record in records:
            self._cache[record.id] = record

    def evict(self, container_id: str):
        self._cache.pop(container_id, None)

    def _remember(self, record: Optional[ContainerRecord]) -> Optional[ContainerRecord]:
        if record is not None:
            self._cache[record.id] = record
        return record

    def _find(self, container_id: str) -> ContainerRecord:
        record = self._cache.get(container_id) or self.store.get(container_id)
        if record is None:
            raise NotFoundError(f"Container not found: {container_id}")
        return self._remember(record)

    def _set_status(self, container_id: str, status: ContainerStatus) -> ContainerRecord:
        record = self.store.update_status(container_id, status)
        if record is None:
            raise NotFoundError(f"Container not found: {container_id}")
        self._remember(record)
        self.bus.emit_container_status(container_id, status.value)
        return record

    def _require_runtime_object(self, record: ContainerRecord):
        if not record.has_runtime_object:
            raise ConflictError(f"Container '{record.name}' is still being created")

    async def _hook(self, name: str, record: ContainerRecord):
        try:
            await getattr(self.hooks, name)(record)
        except Exception as e:
            logger.warning(f"[Engine] Hook {name} failed for {record.name}: {e}")

    # ── Background Work ───────────────────────────────────

    def _spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"[Engine] Background {label} failed: {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def shutdown(self):
        """Cancel in-flight background workflows."""
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _task_reporter(self, task_id: str) -> Reporter:
        def report(progress: int, message: str):
            self.tasks.set_progress(task_id, progress, message)
        return report

    # ══════════════════════════════════════════════════════
    # CREATE
    # ══════════════════════════════════════════════════════

    def _creation_progress(self, task_id: str, container_id: Optional[str],
                           stage: CreationStage, percentage: int, message: str,
                           error: Optional[str] = None):
        if stage != CreationStage.ERROR:
            self.tasks.set_progress(task_id, percentage, message)
        self.bus.emit_creation_progress(CreationProgress(
            taskId=task_id, containerId=container_id, stage=stage,
            percentage=percentage, message=message, error=error,
        ))

    async def _check_name_available(self, name: str):
        existing = self.store.get_by_name(name)
        if existing is None:
            return
        if existing.status == ContainerStatus.ERROR:
            logger.info(f"[Engine] Replacing failed record for '{name}' ({existing.id})")
            if existing.has_runtime_object:
                try:
                    await self.runtime.remove(existing.runtime_id, force=True)
                except DevboxError as e:
                    logger.warning(f"[Engine] Could not remove runtime object of failed '{name}': {e}")
            self.store.delete(existing.id)
            self.evict(existing.id)
            return
        if existing.status == ContainerStatus.CREATING:
            raise ConflictError(f"Container '{name}' is still being created")
        raise ConflictError(f"Container name '{name}' is already taken")

    async def _prepare_create(self, request: CreateContainerRequest, task_id: str) -> ContainerRecord:
        """Validate, check the name and insert the 'creating' record."""
        self._creation_progress(task_id, None, CreationStage.VALIDATING, 5, "Validating configuration")

        name = sanitize_name(request.name)
        repo_url = sanitize_repo_url(request.repo_url)
        if request.repo_type == RepoType.CLONE and not repo_url:
            raise ValidationError("A repository URL is required to clone")
        validate_limits(request.cpu_limit, request.memory_limit, request.disk_limit)

        await self._check_name_available(name)

        container_id = str(uuid.uuid4())
        record = ContainerRecord(
            id=container_id,
            runtime_id=f"pending-{container_id}",
            name=name,
            template=request.template,
            mode=request.mode,
            status=ContainerStatus.CREATING,
            cpu_limit=request.cpu_limit,
            memory_limit=request.memory_limit,
            disk_limit=request.disk_limit,
            repo_type=request.repo_type,
            repo_url=repo_url if request.repo_type == RepoType.CLONE else None,
            config={"taskId": task_id},
            volume_name=volume_name_for(name),
        )
        self.store.create(record)
        self._creating.add(container_id)
        self._remember(record)
        self.bus.emit_container_status(container_id, ContainerStatus.CREATING.value)
        logger.info(f"[Engine] Creating '{name}' ({container_id}) task={task_id}")
        return record

    async def _provision(self, record: ContainerRecord, request: CreateContainerRequest,
                         task_id: str) -> ContainerRecord:
        container_id = record.id
        try:
            template = get_template(record.template, self.templates)

            self._creation_progress(task_id, container_id, CreationStage.CREATING, 20,
                                    "Creating container")
            spec = ContainerSpec(
                name=f"{config.CONTAINER_NAME_PREFIX}{record.name}-{int(time.time() * 1000)}",
                image=template.image,
                environment={**template.environment, **request.environment},
                labels={
                    config.LABEL_ID: container_id,
                    config.LABEL_NAME: record.name,
                    config.LABEL_TEMPLATE: record.template.value,
                    config.LABEL_MODE: record.mode.value,
                },
                volume_name=record.volume_name,
                memory_mb=record.memory_limit,
                cpu_cores=record.cpu_limit,
                disk_mb=record.disk_limit,
                ports=template.ports,
            )
            runtime_id = await self.runtime.create(spec)
            record = self._remember(self.store.update(container_id, runtime_id=runtime_id))

            commands = template.post_create_commands + request.post_create_commands
            clone = record.repo_type == RepoType.CLONE
            warnings: List[str] = []

            if clone or commands:
                self._creation_progress(task_id, container_id, CreationStage.STARTING, 35,
                                        "Starting container for setup")
                await self.runtime.start(runtime_id)
                await wait_until_ready(self.runtime, runtime_id, timeout=self.setup_timeout,
                                       interval=self.poll_interval)

                if clone:
                    self._creation_progress(task_id, container_id, CreationStage.CLONING, 55,
                                            f"Cloning {record.repo_url}")
                    await clone_repository(self.runtime, runtime_id, record.repo_url)

                if commands:
                    self._creation_progress(task_id, container_id, CreationStage.CONFIGURING, 75,
                                            "Configuring tools")
                    failures = await run_tooling(self.runtime, runtime_id, commands)
                    warnings = [str(f) for f in failures]

                self._creation_progress(task_id, container_id, CreationStage.STOPPING, 85,
                                        "Stopping container")
                await self.runtime.stop(runtime_id)

            self._creation_progress(task_id, container_id, CreationStage.SAVING, 95, "Saving")
            settled_config = {k: v for k, v in record.config.items() if k != "taskId"}
            self.store.update(container_id, config=settled_config)
            record = self._set_status(container_id, ContainerStatus.STOPPED)

        except Exception as e:
            await self._rollback(record, task_id, e)
            if isinstance(e, DevboxError) and not isinstance(e, ContainerRuntimeError):
                raise
            raise ContainerRuntimeError(f"Failed to create container: {e}") from e
        finally:
            self._creating.discard(container_id)

        result: Dict[str, Any] = {"containerId": container_id}
        if warnings:
            result["setupWarnings"] = warnings
        self.tasks.complete(task_id, result)
        self.bus.emit_creation_progress(CreationProgress(
            taskId=task_id, containerId=container_id, stage=CreationStage.READY,
            percentage=100, message="Container ready",
        ))
        logger.info(f"[Engine] Created '{record.name}' ({container_id})")
        return record

    async def _rollback(self, record: ContainerRecord, task_id: str, error: Exception):
        container_id = record.id
        logger.error(f"[Engine] Create of '{record.name}' failed, rolling back: {error}")

        current = self._cache.get(container_id, record)
        if current.has_runtime_object:
            try:
                await self.runtime.remove(current.runtime_id, force=True)
            except DevboxError as e:
                logger.error(f"[Engine] Rollback: runtime remove failed for {current.runtime_id[:12]}: {e}")
            try:
                await self.runtime.remove_volume(current.volume_name or volume_name_for(current.name))
            except DevboxError as e:
                logger.warning(f"[Engine] Rollback: volume remove failed: {e}")

        try:
            self.store.delete(container_id)
            self.evict(container_id)
            self.bus.emit_container_status(container_id, "removed")
        except sqlite3.Error as e:
            logger.error(f"[Engine] Rollback: record delete failed, marking error: {e}")
            try:
                self._set_status(container_id, ContainerStatus.ERROR)
            except (sqlite3.Error, NotFoundError) as inner:
                logger.error(f"[Engine] Rollback: could not mark {container_id} as error: {inner}")

        message = f"Failed to create container: {error}"
        self.tasks.fail(task_id, message)
        self._creation_progress(task_id, container_id, CreationStage.ERROR, 0,
                                "Container creation failed", error=str(error))

    def _reject(self, task_id: str, error: DevboxError):
        self.tasks.fail(task_id, str(error))
        self._creation_progress(task_id, None, CreationStage.ERROR, 0,
                                "Container creation rejected", error=str(error))

    async def create(self, request: CreateContainerRequest,
                     task_id: Optional[str] = None) -> ContainerRecord:
        """Create and wait for completion. Raises on failure (after rollback)."""
        if task_id is None or self.tasks.get(task_id) is None:
            task_id = self.tasks.create(TaskType.CREATE, task_id).id
        self.tasks.start(task_id, "Creating container")
        try:
            record = await self._prepare_create(request, task_id)
        except DevboxError as e:
            self._reject(task_id, e)
            raise
        return await self._provision(record, request, task_id)

    async def submit_create(self, request: CreateContainerRequest) -> Task:
        """
        Validate and insert the record now, provision in the background.
        Conflicts and validation errors are raised here, before any task
        is handed back.
        """
        task = self.tasks.create(TaskType.CREATE)
        self.tasks.start(task.id, "Creating container")
        try:
            record = await self._prepare_create(request, task.id)
        except DevboxError as e:
            self._reject(task.id, e)
            raise
        self._spawn(self._provision(record, request, task.id), f"create {record.name}")
        return self.tasks.get(task.id)

    # ══════════════════════════════════════════════════════
    # START / STOP / RESTART
    # ══════════════════════════════════════════════════════

    async def _start(self, container_id: str, report: Reporter = _no_report) -> ContainerRecord:
        report(5, "Checking permissions")
        record = self._find(container_id)
        self._require_runtime_object(record)
        report(10, "Loading configuration")
        report(20, "Connecting to runtime")
        report(30, "Allocating resources")
        report(35, "Starting container")
        await self.runtime.start(record.runtime_id)
        report(60, "Container started")

        await self._hook("on_start", record)
        report(70, "Waiting for services")
        if self.health_command:
            ready = await wait_until_ready(self.runtime, record.runtime_id,
                                           command=self.health_command,
                                           timeout=self.health_timeout,
                                           interval=self.poll_interval)
            if not ready:
                logger.warning(f"[Engine] '{record.name}' started but health probe timed out")

        report(80, "Saving status")
        record = self._set_status(container_id, ContainerStatus.RUNNING)
        report(95, "Finalizing")
        logger.info(f"[Engine] Started '{record.name}'")
        return record

    async def _stop(self, container_id: str, report: Reporter = _no_report) -> ContainerRecord:
        record = self._find(container_id)
        self._require_runtime_object(record)
        report(10, "Notifying workers")
        await self._hook("on_stop", record)
        report(40, "Stopping container")
        await self.runtime.stop(record.runtime_id)
        report(80, "Saving status")
        record = self._set_status(container_id, ContainerStatus.STOPPED)
        logger.info(f"[Engine] Stopped '{record.name}'")
        return record

    async def start(self, container_id: str) -> ContainerRecord:
        return await self._start(container_id)

    async def stop(self, container_id: str) -> ContainerRecord:
        return await self._stop(container_id)

    async def restart(self, container_id: str) -> ContainerRecord:
        # Not atomic: a failed start leaves the container stopped
        await self._stop(container_id)
        return await self._start(container_id)

    async def _run_tracked(self, task_id: str, work: Callable[[Reporter], Awaitable[Any]],
                           result: Callable[[Any], Dict[str, Any]]):
        if self.tasks.get(task_id) is not None:
            self.tasks.start(task_id)
        try:
            value = await work(self._task_reporter(task_id))
        except Exception as e:
            self.tasks.fail(task_id, str(e))
            raise
        self.tasks.complete(task_id, result(value))
        return value

    async def start_with_task(self, container_id: str, task_id: str) -> ContainerRecord:
        return await self._run_tracked(
            task_id, lambda report: self._start(container_id, report),
            lambda r: {"containerId": r.id, "status": r.status.value},
        )

    async def stop_with_task(self, container_id: str, task_id: str) -> ContainerRecord:
        return await self._run_tracked(
            task_id, lambda report: self._stop(container_id, report),
            lambda r: {"containerId": r.id, "status": r.status.value},
        )

    async def restart_with_task(self, container_id: str, task_id: str) -> ContainerRecord:
        async def work(report: Reporter):
            await self._stop(container_id, lambda p, m: report(p // 2, m))
            return await self._start(container_id, lambda p, m: report(50 + p // 2, m))

        return await self._run_tracked(
            task_id, work, lambda r: {"containerId": r.id, "status": r.status.value},
        )

    def _submit(self, task_type: TaskType, label: str, work) -> Task:
        task = self.tasks.create(task_type)
        self._spawn(work(task.id), label)
        return task

    async def submit_start(self, container_id: str) -> Task:
        self._require_runtime_object(self._find(container_id))
        return self._submit(TaskType.START, f"start {container_id}",
                            lambda tid: self.start_with_task(container_id, tid))

    async def submit_stop(self, container_id: str) -> Task:
        self._require_runtime_object(self._find(container_id))
        return self._submit(TaskType.STOP, f"stop {container_id}",
                            lambda tid: self.stop_with_task(container_id, tid))

    async def submit_restart(self, container_id: str) -> Task:
        self._require_runtime_object(self._find(container_id))
        return self._submit(TaskType.RESTART, f"restart {container_id}",
                            lambda tid: self.restart_with_task(container_id, tid))

    # ══════════════════════════════════════════════════════
    # DELETE
    # ══════════════════════════════════════════════════════

    async def _close_sessions(self, container_id: str):
        if self.session_closer is None:
            return
        try:
            await self.session_closer(container_id)
        except Exception as e:
            logger.warning(f"[Engine] Closing sessions for {container_id} failed: {e}")

    async def _remove_runtime_object(self, record: ContainerRecord, force: bool):
        try:
            await self.runtime.remove(record.runtime_id, force=force)
        except ContainerRuntimeError as e:
            if force:
                raise
            logger.warning(f"[Engine] Delete: remove failed for '{record.name}', forcing: {e}")
            await self.runtime.remove(record.runtime_id, force=True)

    async def _perform_delete(self, container_id: str, force: bool,
                              report: Reporter) -> Dict[str, Any]:
        report(5, "Looking up container")
        record = self._cache.get(container_id) or self.store.get(container_id)
        if record is None:
            logger.warning(f"[Engine] Delete: {container_id} not found, nothing to do")
            return {"containerId": container_id, "deleted": True, "alreadyDeleted": True}
        if container_id in self._creating:
            raise ConflictError(f"Container '{record.name}' is still being created")

        report(15, "Closing sessions")
        await self._close_sessions(container_id)
        await self._hook("on_delete", record)

        if record.status == ContainerStatus.RUNNING and record.has_runtime_object:
            report(25, "Stopping container")
            try:
                await self.runtime.stop(record.runtime_id)
            except DevboxError as e:
                logger.warning(f"[Engine] Delete: stop failed for '{record.name}', forcing: {e}")
                force = True

        previous = record.status
        self._set_status(container_id, ContainerStatus.REMOVING)

        if record.has_runtime_object:
            report(45, "Removing container")
            try:
                await self._remove_runtime_object(record, force)
            except DevboxError:
                self._set_status(container_id, previous)
                raise

        report(65, "Removing workspace volume")
        try:
            await self.runtime.remove_volume(record.volume_name or volume_name_for(record.name))
        except DevboxError as e:
            logger.warning(f"[Engine] Delete: volume remove failed for '{record.name}': {e}")

        report(85, "Deleting record")
        self.store.delete(container_id)
        self.store.delete_metrics(container_id)
        self.evict(container_id)
        self.bus.emit_container_status(container_id, "removed")
        report(95, "Cleaning up")
        logger.info(f"[Engine] Deleted '{record.name}' ({container_id})")
        return {"containerId": container_id, "deleted": True, "alreadyDeleted": False}

    async def delete(self, container_id: str, force: bool = False,
                     report: Reporter = _no_report) -> Dict[str, Any]:
        """Idempotent; concurrent callers share one removal sequence."""
        return await self.locks.run_exclusive(
            container_id, lambda: self._perform_delete(container_id, force, report)
        )

    async def delete_with_task(self, container_id: str, task_id: str) -> Dict[str, Any]:
        return await self._run_tracked(
            task_id, lambda report: self.delete(container_id, force=True, report=report),
            lambda outcome: outcome,
        )

    async def submit_delete(self, container_id: str) -> Task:
        return self._submit(TaskType.DELETE, f"delete {container_id}",
                            lambda tid: self.delete_with_task(container_id, tid))

    # ══════════════════════════════════════════════════════
    # RESOURCE LIMITS
    # ══════════════════════════════════════════════════════

    async def update_limits(self, container_id: str, update: LimitsUpdate) -> ContainerListItem:
        record = self._find(container_id)
        disk_mb = int(round(update.disk_gb * 1024)) if update.disk_gb is not None else None
        validate_limits(update.cpu_cores, update.memory_mb, disk_mb)

        if record.status == ContainerStatus.RUNNING and record.has_runtime_object:
            await self.runtime.update_resources(
                record.runtime_id,
                memory_bytes=update.memory_mb * 1024 * 1024 if update.memory_mb is not None else None,
                nano_cpus=int(update.cpu_cores * 1e9) if update.cpu_cores is not None else None,
            )

        fields: Dict[str, Any] = {}
        if update.cpu_cores is not None:
            fields["cpu_limit"] = update.cpu_cores
        if update.memory_mb is not None:
            fields["memory_limit"] = update.memory_mb
        if disk_mb is not None:
            fields["disk_limit"] = disk_mb
        record = self._remember(self.store.update(container_id, **fields))
        logger.info(f"[Engine] Limits updated for '{record.name}': {fields}")
        return to_list_item(record, active_agents=self.hooks.active_agents(container_id))

    # ══════════════════════════════════════════════════════
    # QUERIES
    # ══════════════════════════════════════════════════════

    async def _probe_disk_mb(self, record: ContainerRecord) -> float:
        try:
            result = await self.runtime.exec(record.runtime_id,
                                             ["du", "-sm", config.WORKSPACE_DIR])
            if result.exit_code == 0 and result.stdout.strip():
                return float(result.stdout.split()[0])
        except (DevboxError, ValueError) as e:
            logger.debug(f"[Engine] Disk probe failed for '{record.name}': {e}")
        return 0.0

    async def _sample(self, record: ContainerRecord) -> MetricsSample:
        stats = await self.runtime.stats(record.runtime_id)
        disk_mb = await self._probe_disk_mb(record)
        return parse_stats(record.id, stats, disk_mb)

    async def _list_item(self, record: ContainerRecord, include_metrics: bool) -> ContainerListItem:
        metrics = None
        if include_metrics and record.status == ContainerStatus.RUNNING and record.has_runtime_object:
            try:
                metrics = simple_metrics(record, await self._sample(record))
            except DevboxError as e:
                logger.warning(f"[Engine] Metrics unavailable for '{record.name}': {e}")
        return to_list_item(record, metrics, self.hooks.active_agents(record.id))

    async def get_all(self, include_metrics: bool = False) -> List[ContainerListItem]:
        records = self.store.list_all()
        self.cache_records(records)
        return [await self._list_item(r, include_metrics) for r in records]

    async def get_by_id(self, container_id: str) -> Optional[ContainerListItem]:
        record = self.store.get(container_id)
        if record is None:
            self.evict(container_id)
            return None
        self._remember(record)
        return await self._list_item(record, include_metrics=True)

    async def get_metrics(self, container_id: str) -> Dict[str, Any]:
        """Sample live stats, persist them and publish a metrics event."""
        record = self._find(container_id)
        if record.status != ContainerStatus.RUNNING or not record.has_runtime_object:
            raise ConflictError(f"Container '{record.name}' is not running")
        sample = await self._sample(record)
        self.store.record_metrics(sample)
        payload = {
            **sample.model_dump(),
            "percent": simple_metrics(record, sample).model_dump(),
        }
        self.bus.emit_metrics(container_id, payload)
        return payload

    def metrics_history(self, container_id: str, limit: int = 100) -> List[MetricsSample]:
        self._find(container_id)
        return self.store.metrics_history(container_id, limit)

    async def get_logs(self, container_id: str, tail: int = 100) -> str:
        record = self._find(container_id)
        self._require_runtime_object(record)
        return await self.runtime.logs(record.runtime_id, tail)
