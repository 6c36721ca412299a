"""Thin wrapper over the tmux CLI.

Session names are only unique per project and kind; callers build them
with the helpers in agentfarm.orphans. Every ``-t`` target is passed as an
exact match, since tmux otherwise falls back to prefix and pattern
matching and ``builder-4200-1`` would resolve to ``builder-4200-12``.
"""

import logging
from pathlib import Path

from .errors import ExternalToolError
from .shell import exact_target, run

logger = logging.getLogger("agentfarm.tmux")

# tmux prints these when no server is running; that just means "no sessions"
_NO_SERVER_MARKERS = ("no server running", "failed to connect to server", "error connecting to")


def _tmux_unavailable(e: ExternalToolError) -> bool:
    """No binary or no server: no session can exist."""
    return e.returncode == 127 or any(marker in e.stderr.lower() for marker in _NO_SERVER_MARKERS)


def list_sessions() -> list[str]:
    """Names of all tmux sessions on the machine (empty when no server runs)."""
    try:
        result = run(["tmux", "list-sessions", "-F", "#{session_name}"])
    except ExternalToolError as e:
        if _tmux_unavailable(e):
            return []
        raise
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def new_session(name: str, cwd: str | Path, command: str, width: int = 200, height: int = 50):
    """Create a detached session running ``command`` in ``cwd``."""
    run(["tmux", "new-session", "-d", "-s", name, "-x", str(width), "-y", str(height),
         "-c", str(cwd), command])
    run(["tmux", "set-option", "-t", exact_target(name), "status", "off"])
    logger.info("Started tmux session %s", name)


def kill_session(name: str) -> bool:
    """Kill exactly this session. Returns False when it was already gone."""
    try:
        run(["tmux", "kill-session", "-t", exact_target(name)])
    except ExternalToolError as e:
        stderr = e.stderr.lower()
        if "can't find session" in stderr or "session not found" in stderr or _tmux_unavailable(e):
            return False
        raise
    logger.info("Killed tmux session %s", name)
    return True
