"""Crash recovery: reconcile recorded state with what is actually running.

Only sessions belonging to THIS project are ever touched. Every session
name carries a port from the project's block (``af-architect-<architect
port>``, ``builder-<base port>-<id>`` and so on), and port blocks are
unique machine-wide, so a name pattern never matches another project's
session. Builder/util/shell sessions must additionally be absent from the
store before they count as orphaned.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from . import config, tmux
from .context import ProjectContext
from .liveness import pid_alive
from .state import StateStore

logger = logging.getLogger("agentfarm.orphans")

# Files left behind by the retired bash-based supervisor
STALE_ARTIFACTS = ("builders.md", ".architect.pid", ".architect.log")

LEGACY_ARCHITECT_SESSION = "af-architect"


def architect_session_name(architect_port: int) -> str:
    return f"af-architect-{architect_port}"


def builder_session_name(base_port: int, builder_id: str) -> str:
    return f"builder-{base_port}-{builder_id}"


def shell_session_name(base_port: int, shell_id: str) -> str:
    return f"shell-{base_port}-{shell_id}"


def util_session_name(base_port: int, util_id: str) -> str:
    return f"util-{base_port}-{util_id}"


@dataclass(frozen=True)
class OrphanedSession:
    name: str
    type: str  # "architect" | "builder" | "shell" | "util"


def classify_sessions(
    sessions: list[str],
    architect_port: int,
    base_port: int,
    recorded: set[str] | frozenset = frozenset(),
) -> list[OrphanedSession]:
    """Pick out this project's sessions that no store row accounts for."""
    own_architect = architect_session_name(architect_port)
    namespaced = re.compile(rf"^(builder|shell|util)-{base_port}-[A-Za-z0-9_-]+$")

    orphans = []
    for name in sessions:
        if name in recorded:
            continue
        if name in (own_architect, LEGACY_ARCHITECT_SESSION):
            orphans.append(OrphanedSession(name, "architect"))
            continue
        match = namespaced.match(name)
        if match:
            orphans.append(OrphanedSession(name, match.group(1)))
    return orphans


async def recorded_sessions(store: StateStore) -> set[str]:
    state = await store.load_all()
    names = {b.tmux_session for b in state.builders if b.tmux_session}
    names |= {u.tmux_session for u in state.utils if u.tmux_session}
    if state.architect and state.architect.tmux_session and pid_alive(state.architect.pid):
        names.add(state.architect.tmux_session)
    return names


async def find_orphaned_sessions(ctx: ProjectContext, store: StateStore | None = None) -> list[OrphanedSession]:
    sessions = await asyncio.to_thread(tmux.list_sessions)
    recorded = await recorded_sessions(store) if store else set()
    return classify_sessions(sessions, ctx.ports.architect_port, ctx.ports.base_port, recorded)


async def reconcile(
    ctx: ProjectContext,
    store: StateStore | None = None,
    kill: bool = False,
    silent: bool = False,
) -> int:
    """Report, or with ``kill`` terminate, this project's orphaned sessions.

    Returns the number of sessions killed (always 0 in report-only mode).
    """
    orphans = await find_orphaned_sessions(ctx, store)
    if not orphans:
        return 0

    if not silent:
        logger.warning("Found %d orphaned tmux session(s) from previous run:", len(orphans))
        for orphan in orphans:
            logger.info("  - %s (%s)", orphan.name, orphan.type)

    if not kill:
        return 0

    killed = 0
    for orphan in orphans:
        if await asyncio.to_thread(tmux.kill_session, orphan.name):
            killed += 1
    if not silent:
        logger.info("Cleaned up %d orphaned session(s)", killed)
    return killed


async def reconcile_store(store: StateStore) -> int:
    """Drop util/annotation/architect rows whose process is gone.

    Builder rows are only reported: their workspaces may hold work and go
    through the confirmed cleanup path. Rows without a pid are mid-spawn
    claims and are left alone. Returns the number of rows removed.
    """
    state = await store.load_all()
    removed = 0

    if state.architect and not pid_alive(state.architect.pid):
        if await store.clear_architect():
            logger.info("Dropped stale architect record (pid %d)", state.architect.pid)
            removed += 1

    for util in state.utils:
        if util.pid is not None and not pid_alive(util.pid):
            if await store.remove_util(util.id):
                logger.info("Dropped stale util %s (pid %d)", util.id, util.pid)
                removed += 1

    for annotation in state.annotations:
        if annotation.pid is not None and not pid_alive(annotation.pid):
            if await store.remove_annotation(annotation.id):
                logger.info("Dropped stale annotation %s (pid %d)", annotation.id, annotation.pid)
                removed += 1

    for builder in state.builders:
        if builder.pid is not None and not pid_alive(builder.pid):
            logger.warning(
                "Builder %s terminal (pid %d) is not running; use 'af cleanup -p %s' to release it",
                builder.id, builder.pid, builder.id,
            )
    return removed


def check_stale_artifacts(codev_dir: Path) -> list[str]:
    return [name for name in STALE_ARTIFACTS if (codev_dir / name).exists()]


def warn_about_stale_artifacts(codev_dir: Path) -> list[str]:
    """Warn (never delete) about legacy supervisor files."""
    stale = check_stale_artifacts(codev_dir)
    if stale:
        logger.warning("Found stale artifacts from the previous bash-based architect:")
        for name in stale:
            logger.info("  - %s", name)
        logger.info("These can be safely deleted; state now lives in %s/", codev_dir.parent / config.STATE_DIR_NAME)
    return stale


async def startup_recovery(ctx: ProjectContext, store: StateStore) -> dict:
    """Run before trusting the store on a fresh start."""
    rows_removed = await reconcile_store(store)
    sessions_killed = await reconcile(ctx, store, kill=True)
    stale = warn_about_stale_artifacts(ctx.codev_dir)
    return {"sessions_killed": sessions_killed, "rows_removed": rows_removed, "stale_artifacts": stale}
