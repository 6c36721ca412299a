"""Liveness probes: is a pid alive, does a path exist, is a port free.

Every probe is side-effect free and never raises for the "no" answer; a
failed bind means "port busy", a failed signal means "process gone".
"""

import logging
import os
import socket
from pathlib import Path

import psutil

from . import config

logger = logging.getLogger("agentfarm.liveness")


def pid_alive(pid: int | None) -> bool:
    """Check if a process with the given PID is still running."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
        return True
    except PermissionError:
        # Exists, but owned by another user
        return True
    except (OSError, ProcessLookupError):
        return False


def path_exists(path: str | Path) -> bool:
    try:
        return Path(path).exists()
    except OSError:
        return False


def port_free(port: int, host: str | None = None) -> bool:
    """Bind-and-release probe. True when nothing is listening on ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host or config.BIND_HOST, port))
        except OSError:
            return False
    return True


def first_free_port(candidates, taken: set[int] | frozenset = frozenset(), host: str | None = None) -> int | None:
    """First port in ``candidates`` not in ``taken`` that also passes the bind probe."""
    for port in candidates:
        if port in taken:
            continue
        if port_free(port, host):
            return port
        logger.debug("Port %d is unrecorded but busy, skipping", port)
    return None


def kill_process_tree(pid: int | None, timeout: float = 3.0) -> bool:
    """Terminate ``pid`` and its children, escalating to SIGKILL.

    Returns False when the process was already gone.
    """
    if not pid_alive(pid):
        return False
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return False
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    logger.info("Killed process %d (%d descendants)", pid, len(procs) - 1)
    return True
