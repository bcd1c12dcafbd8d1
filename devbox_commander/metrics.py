"""
Devbox Commander — Metrics
══════════════════════════
Turns raw runtime stats into the dashboard's simple percentages and
builds the enriched ContainerListItem view of a record.
"""

import logging
from typing import Dict, Optional

from . import config
from .models import ContainerListItem, ContainerRecord, ContainerStatus, Limits, MetricsSample, SimpleMetrics

logger = logging.getLogger(__name__)


def parse_stats(container_id: str, stats: Dict, disk_usage_mb: float = 0.0) -> MetricsSample:
    """One-shot docker stats → MetricsSample (cpu %, memory MB, network bytes)."""
    cpu_stats = stats.get("cpu_stats", {})
    precpu = stats.get("precpu_stats", {})
    cpu_delta = cpu_stats.get("cpu_usage", {}).get("total_usage", 0) - \
        precpu.get("cpu_usage", {}).get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    num_cpus = cpu_stats.get("online_cpus") or 1
    cpu_percent = (cpu_delta / system_delta) * num_cpus * 100.0 if system_delta > 0 else 0.0

    mem = stats.get("memory_stats", {})
    mem_usage = mem.get("usage", 0)
    mem_limit = mem.get("limit", 0)

    networks = stats.get("networks") or {}
    net_rx = sum(v.get("rx_bytes", 0) for v in networks.values())
    net_tx = sum(v.get("tx_bytes", 0) for v in networks.values())

    return MetricsSample(
        container_id=container_id,
        cpu_percent=round(cpu_percent, 2),
        memory_usage=round(mem_usage / (1024 * 1024), 1),
        memory_limit=round(mem_limit / (1024 * 1024), 1),
        disk_usage=disk_usage_mb,
        network_rx_bytes=net_rx,
        network_tx_bytes=net_tx,
    )


def disk_percent(record: ContainerRecord, disk_usage_mb: float) -> float:
    """Disk usage against the configured limit, warning near the ceiling."""
    if record.disk_limit <= 0:
        return 0.0
    percent = round(disk_usage_mb / record.disk_limit * 100, 1)
    if percent > config.DISK_CRITICAL_PERCENT:
        logger.warning(f"[Metrics] {record.name}: disk at {percent}% of limit (critical)")
    elif percent > config.DISK_WARN_PERCENT:
        logger.warning(f"[Metrics] {record.name}: disk at {percent}% of limit")
    return percent


def simple_metrics(record: ContainerRecord, sample: MetricsSample) -> SimpleMetrics:
    memory = sample.memory_usage / record.memory_limit * 100 if record.memory_limit else 0.0
    return SimpleMetrics(
        cpu=round(sample.cpu_percent, 1),
        memory=round(memory, 1),
        disk=disk_percent(record, sample.disk_usage),
    )


def to_list_item(record: ContainerRecord, metrics: Optional[SimpleMetrics] = None,
                 active_agents: int = 0) -> ContainerListItem:
    task_id = None
    if record.status == ContainerStatus.CREATING:
        task_id = record.config.get("taskId")
    return ContainerListItem(
        id=record.id,
        runtime_id=record.runtime_id,
        name=record.name,
        template=record.template,
        mode=record.mode,
        status=record.status,
        created_at=record.created_at,
        metrics=metrics or SimpleMetrics(),
        limits=Limits(
            cpuCores=record.cpu_limit,
            memoryMB=record.memory_limit,
            diskGB=round(record.disk_limit / 1024, 2),
        ),
        activeAgents=active_agents,
        queueLength=0,
        taskId=task_id,
    )
