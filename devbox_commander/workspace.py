"""
Devbox Commander — Workspace Setup
══════════════════════════════════
Steps run inside a freshly created (temporarily started) container:
- wait_until_ready: bounded exec polling
- clone_repository: SSH material, clean /workspace, git clone, identity, ownership
- run_tooling: post-create commands via bash -c; failures are logged and skipped
"""

import asyncio
import logging
import re
from typing import List, Optional

from . import config
from .errors import ContainerRuntimeError, PartialSetupFailure

logger = logging.getLogger(__name__)

_HTTPS_REPO = re.compile(r"^https://([\w.-]+)/([\w.-]+)/([\w.-]+)$")


async def wait_until_ready(runtime, runtime_id: str, command: Optional[List[str]] = None,
                           timeout: float = config.SETUP_READY_TIMEOUT,
                           interval: float = config.POLL_INTERVAL) -> bool:
    """Poll `command` (default: a no-op) until it exits 0. Returns False on timeout."""
    command = command or ["true"]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        try:
            result = await runtime.exec(runtime_id, command)
            if result.exit_code == 0:
                return True
        except ContainerRuntimeError as e:
            logger.debug(f"[Setup] Not ready yet: {e}")
        if loop.time() >= deadline:
            logger.warning(f"[Setup] {runtime_id[:12]} not ready after {timeout}s, continuing")
            return False
        await asyncio.sleep(interval)


async def _best_effort(runtime, runtime_id: str, command: str,
                       user: str = config.CONTAINER_USER, workdir: Optional[str] = None):
    try:
        result = await runtime.exec(runtime_id, ["sh", "-c", command], user=user, workdir=workdir)
        if result.exit_code != 0:
            logger.debug(f"[Setup] '{command}' exited {result.exit_code}: {result.stderr.strip()}")
    except ContainerRuntimeError as e:
        logger.warning(f"[Setup] '{command}' failed: {e}")


async def _has_ssh_keys(runtime, runtime_id: str) -> bool:
    try:
        result = await runtime.exec(
            runtime_id, ["sh", "-c", "ls ~/.ssh/id_* >/dev/null 2>&1"], user=config.CONTAINER_USER
        )
        return result.exit_code == 0
    except ContainerRuntimeError:
        return False


def to_ssh_url(url: str) -> str:
    """https://host/owner/repo -> git@host:owner/repo.git (other forms unchanged)."""
    m = _HTTPS_REPO.match(url)
    if not m:
        return url
    return f"git@{m.group(1)}:{m.group(2)}/{m.group(3)}.git"


async def clone_repository(runtime, runtime_id: str, url: str):
    """Clone `url` into /workspace. A non-zero clone exit raises ContainerRuntimeError."""
    home_ssh = f"/home/{config.CONTAINER_USER}/.ssh"

    # SSH material is optional; every step here is best-effort
    await _best_effort(runtime, runtime_id, f"mkdir -p {home_ssh} && chmod 700 {home_ssh}")
    await _best_effort(
        runtime, runtime_id,
        f"[ -d {config.SSH_KEYS_PATH} ] && cp -r {config.SSH_KEYS_PATH}/. {home_ssh}/ "
        f"&& chmod 600 {home_ssh}/id_* || true",
    )
    hosts = " ".join(config.ALLOWED_GIT_HOSTS)
    await _best_effort(runtime, runtime_id,
                       f"ssh-keyscan {hosts} >> {home_ssh}/known_hosts 2>/dev/null")

    clone_url = url
    if url.startswith("https://") and await _has_ssh_keys(runtime, runtime_id):
        clone_url = to_ssh_url(url)
        logger.info(f"[Setup] SSH keys present, cloning via {clone_url}")

    ws = config.WORKSPACE_DIR
    await _best_effort(runtime, runtime_id, f"rm -rf {ws}/* {ws}/.[!.]* 2>/dev/null || true",
                       user="root")

    result = await runtime.exec(runtime_id, ["git", "clone", clone_url, "."],
                                user=config.CONTAINER_USER, workdir=ws)
    if result.exit_code != 0:
        raise ContainerRuntimeError(
            f"git clone failed (exit {result.exit_code}): {(result.stderr or result.stdout).strip()}"
        )
    logger.info(f"[Setup] Cloned {url} into {runtime_id[:12]}:{ws}")

    await _best_effort(runtime, runtime_id, f"git config user.email '{config.GIT_USER_EMAIL}'"
                       f" && git config user.name '{config.GIT_USER_NAME}'", workdir=ws)
    await _best_effort(runtime, runtime_id,
                       f"chown -R {config.CONTAINER_USER}:{config.CONTAINER_USER} {ws}", user="root")
    await _best_effort(runtime, runtime_id, f"git config --global --add safe.directory {ws}")


async def run_tooling(runtime, runtime_id: str, commands: List[str]) -> List[PartialSetupFailure]:
    """Run each command in order; a non-zero exit is recorded and the next command runs."""
    failures: List[PartialSetupFailure] = []
    for command in commands:
        result = await runtime.exec(runtime_id, ["bash", "-c", command],
                                    user=config.CONTAINER_USER, workdir=config.WORKSPACE_DIR)
        if result.exit_code != 0:
            failure = PartialSetupFailure(command, result.exit_code, result.stderr.strip())
            logger.warning(f"[Setup] Tooling step skipped: {failure}")
            failures.append(failure)
        else:
            logger.info(f"[Setup] Tooling step ok: {command}")
    return failures
