# config.py
"""
Devbox Commander configuration.

All settings in one place, overridable via environment variables.
"""

import os

# ============================================================
# PATHS
# ============================================================

DB_PATH = os.environ.get("DEVBOX_DB_PATH", "/app/data/devbox.db")
TEMPLATES_PATH = os.environ.get("DEVBOX_TEMPLATES_PATH", "")
DOCKER_SOCKET_PATH = os.environ.get("DOCKER_SOCKET_PATH", "")  # empty = docker.from_env()
SSH_KEYS_PATH = os.environ.get("DEVBOX_SSH_KEYS_PATH", "/home/developer/.ssh-host")

# ============================================================
# SERVER
# ============================================================

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8090"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# ============================================================
# LABELS / NAMING
# ============================================================

LABEL_PREFIX = os.environ.get("DEVBOX_LABEL_PREFIX", "devbox")
LABEL_ID = f"{LABEL_PREFIX}.id"
LABEL_NAME = f"{LABEL_PREFIX}.name"
LABEL_TEMPLATE = f"{LABEL_PREFIX}.template"
LABEL_MODE = f"{LABEL_PREFIX}.mode"

CONTAINER_NAME_PREFIX = f"{LABEL_PREFIX}-"
VOLUME_SUFFIX = "-workspace"
WORKSPACE_DIR = "/workspace"
CONTAINER_USER = os.environ.get("DEVBOX_CONTAINER_USER", "developer")
MAX_NAME_LENGTH = 64

# ============================================================
# IMAGES
# ============================================================

IMAGE_MAP = {
    "claude": os.environ.get("DEVBOX_IMAGE_CLAUDE", "devbox-claude:latest"),
    "vscode": os.environ.get("DEVBOX_IMAGE_VSCODE", "devbox-vscode:latest"),
    "both": os.environ.get("DEVBOX_IMAGE_BOTH", "devbox-both:latest"),
}

# ============================================================
# RESOURCE LIMITS
# ============================================================

DEFAULT_CPU_CORES = float(os.environ.get("DEFAULT_CPU_CORES", "2"))
DEFAULT_MEMORY_MB = int(os.environ.get("DEFAULT_MEMORY_MB", "4096"))
DEFAULT_DISK_MB = int(os.environ.get("DEFAULT_DISK_MB", "10240"))

# Limits applied to records recovered from runtime labels
RECOVERED_CPU_CORES = 2.0
RECOVERED_MEMORY_MB = 2048
RECOVERED_DISK_MB = 10240

MIN_CPU_CORES = 0.5
MAX_CPU_CORES = 16.0
MIN_MEMORY_MB = 512
MAX_MEMORY_MB = 32768
MIN_DISK_MB = 1024
MAX_DISK_MB = 102400

# Storage quotas need overlay2 on xfs with pquota; off by default
ENABLE_STORAGE_QUOTA = os.environ.get("DEVBOX_STORAGE_QUOTA", "false").lower() == "true"

DISK_WARN_PERCENT = 80
DISK_CRITICAL_PERCENT = 95

# ============================================================
# GIT
# ============================================================

ALLOWED_GIT_HOSTS = ("github.com", "gitlab.com", "bitbucket.org")
GIT_USER_EMAIL = os.environ.get("DEVBOX_GIT_EMAIL", "developer@devbox.local")
GIT_USER_NAME = os.environ.get("DEVBOX_GIT_NAME", "Devbox Developer")

# ============================================================
# TIMEOUTS / INTERVALS (seconds)
# ============================================================

CONTAINER_STOP_TIMEOUT = int(os.environ.get("CONTAINER_STOP_TIMEOUT", "10"))
SETUP_READY_TIMEOUT = float(os.environ.get("SETUP_READY_TIMEOUT", "30"))
HEALTH_PROBE_TIMEOUT = float(os.environ.get("HEALTH_PROBE_TIMEOUT", "30"))
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", "1"))

TASK_RETENTION_SECONDS = int(os.environ.get("TASK_RETENTION_SECONDS", "3600"))  # 1 hour
TASK_SWEEP_INTERVAL = int(os.environ.get("TASK_SWEEP_INTERVAL", "300"))  # 5 minutes
SYNC_INTERVAL = int(os.environ.get("SYNC_INTERVAL", "60"))

# ============================================================
# EVENTS
# ============================================================

EVENT_QUEUE_SIZE = int(os.environ.get("EVENT_QUEUE_SIZE", "256"))
