"""Subprocess helpers for the external tools (tmux, git, ttyd).

Calls are synchronous; async callers wrap them in ``asyncio.to_thread``.
A non-zero exit is raised as ExternalToolError carrying the tool's own
stderr, never swallowed.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path

from . import config
from .errors import ExternalToolError

logger = logging.getLogger("agentfarm.shell")


def run(args: list[str], cwd: str | Path | None = None, timeout: float | None = None) -> subprocess.CompletedProcess:
    """Run a command to completion; raise ExternalToolError unless it exits 0."""
    logger.debug("run: %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            args,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout or config.TOOL_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ExternalToolError(args, 127, f"{args[0]}: command not found") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(args, -1, f"timed out after {e.timeout}s") from e
    if result.returncode != 0:
        raise ExternalToolError(args, result.returncode, result.stderr.strip())
    return result


def exact_target(session_name: str) -> str:
    """tmux target that only matches a session with exactly this name."""
    return f"={session_name}"


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def spawn_detached(args: list[str], cwd: str | Path | None = None, log_file: Path | None = None) -> int:
    """Start a process in its own session that outlives this CLI. Returns its pid."""
    stdout = open(log_file, "ab") if log_file else subprocess.DEVNULL  # noqa: SIM115
    try:
        process = subprocess.Popen(
            args,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.STDOUT if log_file else subprocess.DEVNULL,
            start_new_session=True,
            env={k: v for k, v in os.environ.items() if k != "TMUX"},
        )
    except OSError as e:
        raise ExternalToolError(args, 127, str(e)) from e
    finally:
        if log_file:
            stdout.close()
    logger.debug("Spawned detached pid %d: %s", process.pid, " ".join(args))
    return process.pid


def spawn_ttyd(port: int, session_name: str, cwd: str | Path, host: str | None = None,
               custom_index: Path | None = None) -> int:
    """Start the web-terminal bridge on ``port`` attached to one tmux session."""
    args = [
        "ttyd", "-W",
        "-p", str(port),
        "-i", host or config.BIND_HOST,
        "-t", 'theme={"background":"#000000"}',
        "-t", "rightClickSelectsWord=true",
    ]
    if custom_index and custom_index.exists():
        args += ["-I", str(custom_index)]
    # Exact target: a dead session must not resolve to a neighbour by prefix
    args += ["tmux", "attach-session", "-t", exact_target(session_name)]
    return spawn_detached(args, cwd=cwd)
