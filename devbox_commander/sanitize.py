"""
Devbox Commander — Input Sanitization
═════════════════════════════════════
- Container names: strip traversal and unsafe characters, bounded length
- Repository URLs: allow-listed hosts, https/git only, credentials/query/fragment stripped
- Resource limits: range checks
"""

import re
import logging
from typing import Optional
from urllib.parse import urlsplit

from . import config
from .errors import ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_SHELL_META = re.compile(r"[;&|`$(){}\[\]<>\\!#\s'\"]")
_SSH_FORM = re.compile(r"^git@([\w.-]+):(.+)$")
_PATH_SEGMENT = re.compile(r"^[\w.-]+$")


def sanitize_name(name: str) -> str:
    """Return a runtime-safe container name or raise ValidationError."""
    if not name or not name.strip():
        raise ValidationError("Container name is required")

    cleaned = name.strip().replace("..", "")
    cleaned = cleaned.replace("/", "").replace("\\", "")
    sanitized = _UNSAFE_NAME_CHARS.sub("", cleaned)

    if not sanitized:
        raise ValidationError("Container name must contain letters or digits")
    if len(sanitized) > config.MAX_NAME_LENGTH:
        raise ValidationError(f"Container name too long (max {config.MAX_NAME_LENGTH} characters)")

    if sanitized != name:
        logger.warning(f"[Sanitize] Container name sanitized: '{name}' -> '{sanitized}'")
    return sanitized


def sanitize_repo_url(url: Optional[str]) -> Optional[str]:
    """
    Normalize a git repository URL to '<scheme>://<host>/<owner>/<repo>'.
    Returns None for an empty input.
    """
    if url is None or not url.strip():
        return None
    normalized = url.strip()

    ssh = _SSH_FORM.match(normalized)
    if ssh:
        normalized = f"https://{ssh.group(1)}/{ssh.group(2)}"
    elif "://" not in normalized:
        normalized = f"https://{normalized}"

    parts = urlsplit(normalized)
    scheme = parts.scheme.lower()
    if scheme not in ("https", "git"):
        raise ValidationError(f"Unsupported repository protocol: {parts.scheme}")

    host = (parts.hostname or "").lower()
    if host not in config.ALLOWED_GIT_HOSTS:
        raise ValidationError(
            f"Repository host not allowed: {host or '?'}. "
            f"Use {', '.join(config.ALLOWED_GIT_HOSTS)}"
        )

    # credentials, port, query and fragment are dropped
    path = parts.path
    if _SHELL_META.search(path):
        raise ValidationError("Repository URL contains invalid characters")

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    segments = path.split("/")
    if len(segments) != 2 or not all(_PATH_SEGMENT.match(s) for s in segments):
        raise ValidationError("Repository URL must look like <host>/<owner>/<repo>")

    return f"{scheme}://{host}/{segments[0]}/{segments[1]}"


def validate_limits(cpu: Optional[float] = None,
                    memory_mb: Optional[int] = None,
                    disk_mb: Optional[float] = None):
    """Range-check whichever limits are given."""
    if cpu is not None and not (config.MIN_CPU_CORES <= cpu <= config.MAX_CPU_CORES):
        raise ValidationError(
            f"CPU limit must be between {config.MIN_CPU_CORES} and {config.MAX_CPU_CORES} cores"
        )
    if memory_mb is not None and not (config.MIN_MEMORY_MB <= memory_mb <= config.MAX_MEMORY_MB):
        raise ValidationError(
            f"Memory limit must be between {config.MIN_MEMORY_MB} and {config.MAX_MEMORY_MB} MB"
        )
    if disk_mb is not None and not (config.MIN_DISK_MB <= disk_mb <= config.MAX_DISK_MB):
        raise ValidationError(
            f"Disk limit must be between {config.MIN_DISK_MB} and {config.MAX_DISK_MB} MB"
        )
