"""
Devbox Commander — State Reconciliation
═══════════════════════════════════════
Converges persisted records with what the runtime actually has:
- labeled runtime containers without a record are recovered
- records whose status drifted are updated
- records whose runtime object vanished are removed

Idempotent. Runs once at startup and then periodically; a failed pass is
logged and retried on the next tick.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from . import config
from .models import ContainerRecord, ContainerStatus, Mode, Template

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "created": ContainerStatus.CREATING,
    "running": ContainerStatus.RUNNING,
    "paused": ContainerStatus.PAUSED,
    "restarting": ContainerStatus.RESTARTING,
    "removing": ContainerStatus.REMOVING,
    "exited": ContainerStatus.EXITED,
    "dead": ContainerStatus.DEAD,
}


def map_runtime_state(state: str) -> ContainerStatus:
    return _STATE_MAP.get((state or "").lower(), ContainerStatus.STOPPED)


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


class StateReconciler:
    def __init__(self, orchestrator, interval: int = config.SYNC_INTERVAL):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.runtime = orchestrator.runtime
        self.interval = interval
        self._loop_task: Optional[asyncio.Task] = None

    async def reconcile(self) -> Dict[str, int]:
        """One pass. Returns counts of recovered / updated / removed records."""
        report = {"recovered": 0, "updated": 0, "removed": 0}
        try:
            in_flight = set(self.orchestrator.creating_ids)
            records = self.store.list_all()
            self.orchestrator.cache_records(records)
            by_id = {r.id: r for r in records}
            by_runtime = {r.runtime_id: r for r in records}

            observed = await self.runtime.list(all=True)
            seen: Set[str] = set()
            matched: Set[str] = set()
            in_flight |= self.orchestrator.creating_ids

            for rc in observed:
                label_id = rc.labels.get(config.LABEL_ID)
                if not label_id:
                    continue
                seen.add(rc.id)
                status = map_runtime_state(rc.state)
                if status == ContainerStatus.CREATING and label_id not in in_flight:
                    # created but never started, and no create running here
                    status = ContainerStatus.STOPPED
                record = by_runtime.get(rc.id) or by_id.get(label_id)

                if record is None:
                    if self._recover(label_id, rc, status):
                        report["recovered"] += 1
                    continue
                matched.add(record.id)
                if record.id in in_flight:
                    continue

                if record.runtime_id == rc.id and record.status == status:
                    continue
                updated = record
                if record.runtime_id != rc.id:
                    updated = self.store.update(record.id, runtime_id=rc.id)
                if updated is not None and record.status != status:
                    updated = self.store.update_status(record.id, status)
                if updated is None:
                    # deleted while the runtime was listed
                    continue
                if record.status != status:
                    self.orchestrator.bus.emit_container_status(record.id, status.value)
                    logger.info(f"[Sync] {record.name}: {record.status.value} -> {status.value}")
                self.orchestrator.cache_records([updated])
                report["updated"] += 1

            for record in records:
                if record.id in matched or record.runtime_id in seen or record.id in in_flight:
                    continue
                current = self.store.get(record.id)
                if current is None:
                    continue
                if current.runtime_id != record.runtime_id and current.has_runtime_object:
                    # create finished while the runtime was listed
                    continue
                self.store.delete(record.id)
                self.orchestrator.evict(record.id)
                self.orchestrator.bus.emit_container_status(record.id, "removed")
                report["removed"] += 1
                logger.info(f"[Sync] Removed orphan record '{record.name}' ({record.id})")

        except Exception as e:
            logger.error(f"[Sync] Reconciliation failed: {e}")
            return report

        if any(report.values()):
            logger.info(f"[Sync] Reconciled: {report}")
        return report

    def _recover(self, label_id: str, rc, status: ContainerStatus) -> bool:
        name = rc.labels.get(config.LABEL_NAME) or rc.name
        if self.store.get_by_name(name) is not None:
            logger.warning(f"[Sync] Not recovering {rc.id[:12]}: name '{name}' is taken")
            return False
        record = ContainerRecord(
            id=label_id,
            runtime_id=rc.id,
            name=name,
            template=_enum_or(Template, rc.labels.get(config.LABEL_TEMPLATE), Template.CLAUDE),
            mode=_enum_or(Mode, rc.labels.get(config.LABEL_MODE), Mode.INTERACTIVE),
            status=status,
            cpu_limit=config.RECOVERED_CPU_CORES,
            memory_limit=config.RECOVERED_MEMORY_MB,
            disk_limit=config.RECOVERED_DISK_MB,
            volume_name=f"{config.CONTAINER_NAME_PREFIX}{name}{config.VOLUME_SUFFIX}",
        )
        self.store.create(record)
        self.orchestrator.cache_records([record])
        self.orchestrator.bus.emit_container_status(record.id, status.value)
        logger.info(f"[Sync] Recovered '{name}' ({label_id}) from runtime as {status.value}")
        return True

    # ── Periodic Loop ─────────────────────────────────────

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.reconcile()

    def start_loop(self):
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop())

    async def stop_loop(self):
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
