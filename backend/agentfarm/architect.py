"""Architect session start/stop and whole-project shutdown."""

import asyncio
import logging
import sys
from datetime import datetime, timezone

from . import tmux
from .context import ProjectContext
from .errors import ExternalToolError
from .liveness import kill_process_tree, pid_alive
from .models.state import Architect
from .orphans import architect_session_name, startup_recovery
from .shell import command_exists, spawn_detached, spawn_ttyd
from .state import StateStore

logger = logging.getLogger("agentfarm.architect")


async def start_architect(ctx: ProjectContext, store: StateStore | None = None, cmd: str | None = None) -> Architect | None:
    """Recover from any previous crash, then start the architect.

    Returns None (and starts nothing) when a live architect is already
    recorded. A stale record is replaced wholesale.
    """
    store = store or ctx.store()
    await startup_recovery(ctx, store)

    current = await store.get_architect()
    if current and pid_alive(current.pid):
        logger.warning("Architect already running on port %d (pid %d)", current.port, current.pid)
        return None

    for tool in ("tmux", "ttyd"):
        if not command_exists(tool):
            raise ExternalToolError([tool], 127, f"{tool}: command not found")

    command = cmd or ctx.commands.architect
    port = ctx.ports.architect_port
    session = architect_session_name(port)
    ctx.state_dir.mkdir(parents=True, exist_ok=True)

    await asyncio.to_thread(tmux.new_session, session, ctx.project_root, command)
    try:
        pid = await asyncio.to_thread(spawn_ttyd, port, session, ctx.project_root)
    except BaseException:
        await asyncio.to_thread(tmux.kill_session, session)
        raise

    architect = Architect(
        pid=pid,
        port=port,
        cmd=command,
        started_at=datetime.now(timezone.utc).isoformat(),
        tmux_session=session,
    )
    await store.set_architect(architect)
    logger.info("Architect started: http://localhost:%d", port)
    return architect


def start_dashboard_process(ctx: ProjectContext) -> int:
    """Run ``af dashboard`` detached on the project's dashboard port."""
    log_file = ctx.state_dir / "dashboard.log"
    ctx.state_dir.mkdir(parents=True, exist_ok=True)
    return spawn_detached(
        [sys.executable, "-m", "agentfarm.cli", "--project-root", str(ctx.project_root),
         "dashboard", "--port", str(ctx.ports.dashboard_port)],
        cwd=ctx.project_root,
        log_file=log_file,
    )


async def stop_all(ctx: ProjectContext, store: StateStore | None = None) -> int:
    """Kill every recorded process and session, then clear the store.

    Worktrees are left in place. Returns the number of processes stopped.
    """
    store = store or ctx.store()
    state = await store.load_all()
    stopped = 0

    entries = []
    if state.architect:
        entries.append(("architect", state.architect.pid, state.architect.tmux_session))
    entries += [(f"builder {b.id}", b.pid, b.tmux_session) for b in state.builders]
    entries += [(f"util {u.id}", u.pid, u.tmux_session) for u in state.utils]
    entries += [(f"annotation {a.id}", a.pid, None) for a in state.annotations]

    for label, pid, session in entries:
        if pid and await asyncio.to_thread(kill_process_tree, pid):
            logger.info("Stopped %s (pid %d)", label, pid)
            stopped += 1
        if session:
            try:
                await asyncio.to_thread(tmux.kill_session, session)
            except ExternalToolError as e:
                logger.warning("Failed to stop %s session %s: %s", label, session, e)

    await store.clear_state()
    return stopped
