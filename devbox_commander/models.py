"""
Devbox Commander — Pydantic Models
═══════════════════════════════════
Defines the data structures for:
- ContainerRecord: persisted description of one dev container
- ContainerListItem: enriched view returned to the dashboard
- Task: tracked progress of a long-running lifecycle operation
- Events: task / status / creation-progress / metrics payloads
- Runtime views: ExecResult, RuntimeContainer, MetricsSample
"""

from __future__ import annotations
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator
from enum import Enum
from datetime import datetime

from . import config


# ── Enums ──────────────────────────────────────────────────

class ContainerStatus(str, Enum):
    CREATING = "creating"
    STOPPED = "stopped"
    RUNNING = "running"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    PAUSED = "paused"
    DEAD = "dead"
    ERROR = "error"


class Template(str, Enum):
    CLAUDE = "claude"
    VSCODE = "vscode"
    BOTH = "both"


class Mode(str, Enum):
    INTERACTIVE = "interactive"
    AUTONOMOUS = "autonomous"


class RepoType(str, Enum):
    EMPTY = "empty"
    CLONE = "clone"


class TaskType(str, Enum):
    CREATE = "create-container"
    START = "start-container"
    STOP = "stop-container"
    RESTART = "restart-container"
    DELETE = "delete-container"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CreationStage(str, Enum):
    VALIDATING = "validating"
    CREATING = "creating"
    STARTING = "starting"
    CLONING = "cloning"
    CONFIGURING = "configuring"
    STOPPING = "stopping"
    SAVING = "saving"
    READY = "ready"
    ERROR = "error"


# ── Container Record ───────────────────────────────────────

class ContainerRecord(BaseModel):
    """Persisted state of one dev container."""
    id: str
    runtime_id: str = Field(..., description="Runtime container id, 'pending-<id>' until assigned")
    name: str
    template: Template = Template.CLAUDE
    mode: Mode = Mode.INTERACTIVE
    status: ContainerStatus = ContainerStatus.CREATING
    cpu_limit: float = Field(default=config.DEFAULT_CPU_CORES, description="CPU cores")
    memory_limit: int = Field(default=config.DEFAULT_MEMORY_MB, description="Memory in MB")
    disk_limit: int = Field(default=config.DEFAULT_DISK_MB, description="Disk in MB")
    repo_type: RepoType = RepoType.EMPTY
    repo_url: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    volume_name: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat())
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None

    @property
    def has_runtime_object(self) -> bool:
        return not self.runtime_id.startswith("pending-")


# ── Requests ───────────────────────────────────────────────

class CreateContainerRequest(BaseModel):
    name: str
    template: Template = Template.CLAUDE
    mode: Mode = Mode.INTERACTIVE
    cpu_limit: float = Field(default=config.DEFAULT_CPU_CORES, description="CPU cores (0.5-16)")
    memory_limit: int = Field(default=config.DEFAULT_MEMORY_MB, description="Memory MB (512-32768)")
    disk_limit: int = Field(default=config.DEFAULT_DISK_MB, description="Disk MB (1024-102400)")
    repo_type: RepoType = RepoType.EMPTY
    repo_url: Optional[str] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    post_create_commands: List[str] = Field(default_factory=list)


class LimitsUpdate(BaseModel):
    """Partial resource update; at least one field must be set."""
    cpu_cores: Optional[float] = None
    memory_mb: Optional[int] = None
    disk_gb: Optional[float] = None

    @model_validator(mode="after")
    def _at_least_one(self):
        if self.cpu_cores is None and self.memory_mb is None and self.disk_gb is None:
            raise ValueError("at least one of cpu_cores, memory_mb, disk_gb is required")
        return self


# ── List View ──────────────────────────────────────────────

class SimpleMetrics(BaseModel):
    cpu: float = 0.0
    memory: float = 0.0
    disk: float = 0.0


class Limits(BaseModel):
    cpuCores: float
    memoryMB: int
    diskGB: float


class ContainerListItem(BaseModel):
    id: str
    runtime_id: str
    name: str
    template: Template
    mode: Mode
    status: ContainerStatus
    created_at: str
    metrics: SimpleMetrics = Field(default_factory=SimpleMetrics)
    limits: Limits
    activeAgents: int = 0
    queueLength: int = 0
    taskId: Optional[str] = None


# ── Tasks ──────────────────────────────────────────────────

class Task(BaseModel):
    id: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ── Events ─────────────────────────────────────────────────

class TaskEvent(BaseModel):
    event: str  # created | updated | progress | completed | failed | deleted
    task: Task
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    meta: Dict[str, Any] = Field(default_factory=dict)


class CreationProgress(BaseModel):
    taskId: str
    containerId: Optional[str] = None
    stage: CreationStage
    percentage: int
    message: str
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ContainerStatusEvent(BaseModel):
    containerId: str
    status: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# ── Runtime Views ──────────────────────────────────────────

class ExecResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class RuntimeContainer(BaseModel):
    id: str
    name: str = ""
    state: str
    labels: Dict[str, str] = Field(default_factory=dict)


class MetricsSample(BaseModel):
    container_id: str
    recorded_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat())
    cpu_percent: float = 0.0
    memory_usage: float = 0.0   # MB
    memory_limit: float = 0.0   # MB
    disk_usage: float = 0.0     # MB
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
