"""Utility terminals: a bare shell in a tmux session behind a web terminal."""

import asyncio
import logging

from . import tmux
from .builders import generate_token
from .context import ProjectContext
from .errors import CapacityError, ExternalToolError, NotFoundError
from .liveness import first_free_port, kill_process_tree
from .models.state import UtilTerminal
from .orphans import util_session_name
from .shell import command_exists, spawn_ttyd
from .state import StateStore

logger = logging.getLogger("agentfarm.utils")


async def _claim_util_port(ctx: ProjectContext, store: StateStore, util_id: str, name: str, session: str) -> UtilTerminal:
    low, high = ctx.ports.util_port_range
    lost: set[int] = set()
    for _ in range(high - low + 1):
        taken = {u.port for u in await store.list_utils()} | lost
        port = await asyncio.to_thread(first_free_port, range(low, high + 1), taken)
        if port is None:
            break
        util = UtilTerminal(id=util_id, name=name, port=port, tmux_session=session)
        if await store.try_add_util(util):
            return util
        lost.add(port)
    raise CapacityError(f"No free util ports in range {low}-{high}")


async def spawn_util(ctx: ProjectContext, store: StateStore | None = None, name: str | None = None) -> UtilTerminal:
    store = store or ctx.store()
    for tool in ("tmux", "ttyd"):
        if not command_exists(tool):
            raise ExternalToolError([tool], 127, f"{tool}: command not found")

    util_id = generate_token()
    session = util_session_name(ctx.ports.base_port, util_id)
    util = await _claim_util_port(ctx, store, util_id, name or f"util-{util_id}", session)

    session_started = False
    try:
        await asyncio.to_thread(tmux.new_session, session, ctx.project_root, ctx.commands.shell)
        session_started = True
        pid = await asyncio.to_thread(spawn_ttyd, util.port, session, ctx.project_root)
        await store.update_util(util_id, pid=pid, tmux_session=session)
    except BaseException:
        if session_started:
            try:
                await asyncio.to_thread(tmux.kill_session, session)
            except ExternalToolError as e:
                logger.warning("Could not kill session %s during rollback: %s", session, e)
        await store.remove_util(util_id)
        raise

    logger.info("Util %s started: http://localhost:%d", util.name, util.port)
    return util.model_copy(update={"pid": pid})


async def close_util(ctx: ProjectContext, util_id: str, store: StateStore | None = None) -> UtilTerminal:
    store = store or ctx.store()
    util = await store.get_util(util_id)
    if util is None:
        raise NotFoundError(f"Util not found: {util_id}")
    if util.pid:
        await asyncio.to_thread(kill_process_tree, util.pid)
    await asyncio.to_thread(tmux.kill_session, util.tmux_session or util_session_name(ctx.ports.base_port, util_id))
    await store.remove_util(util_id)
    return util
