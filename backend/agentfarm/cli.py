"""``af`` command line interface.

Every invocation is a short-lived process: it resolves a fresh
ProjectContext, does its work against the durable stores, and exits.
"""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import config
from .architect import start_architect, start_dashboard_process, stop_all
from .builders import BuilderManager
from .context import ProjectContext, find_project_root
from .dashboard import run_dashboard
from .database import database_stats, dump_tables, global_db_path, local_db_path, reset_database
from .errors import AgentFarmError, ConfigError, NotFoundError
from .liveness import pid_alive
from .log import configure_logging
from .models.state import BUILDER_STATUSES
from .port_registry import PortRegistry
from .utils_terminal import spawn_util

logger = logging.getLogger("agentfarm.cli")


async def _context(args) -> ProjectContext:
    return await ProjectContext.initialize(
        project_root=Path(args.project_root) if args.project_root else None,
        overrides={
            "architect": args.architect_cmd,
            "builder": args.builder_cmd,
            "shell": args.shell_cmd,
        },
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def cmd_start(args) -> None:
    ctx = await _context(args)
    architect = await start_architect(ctx, cmd=args.cmd)
    if architect is None:
        print("Architect is already running; nothing started.")
        return
    print(f"Architect: http://localhost:{architect.port}")
    if not args.no_dashboard:
        start_dashboard_process(ctx)
        print(f"Dashboard: http://localhost:{ctx.ports.dashboard_port}")


async def cmd_stop(args) -> None:
    ctx = await _context(args)
    stopped = await stop_all(ctx)
    print(f"Stopped {stopped} process(es)" if stopped else "No processes were running")


async def cmd_status(args) -> None:
    ctx = await _context(args)
    state = await ctx.store().load_all()

    if args.json:
        payload = {"project_root": str(ctx.project_root), "ports": ctx.ports.model_dump(), **state.model_dump()}
        _print_json(payload)
        return

    print(f"Project: {ctx.project_root} (ports {ctx.ports.base_port}-{ctx.ports.base_port + config.PORT_BLOCK_SIZE - 1})")
    if state.architect:
        alive = "running" if pid_alive(state.architect.pid) else "stopped"
        print(f"Architect: port {state.architect.port}, pid {state.architect.pid} ({alive})")
    else:
        print("Architect: not running")

    if not state.builders:
        print("Builders: none")
    else:
        print(f"{'ID':<20} {'NAME':<30} {'STATUS':<13} {'PORT':<6} {'ALIVE'}")
        for b in state.builders:
            print(f"{b.id:<20} {b.name[:30]:<30} {b.status:<13} {b.port:<6} {'yes' if pid_alive(b.pid) else 'no'}")

    for u in state.utils:
        print(f"Util {u.id}: {u.name} port {u.port} ({'running' if pid_alive(u.pid) else 'stopped'})")
    for a in state.annotations:
        print(f"Annotation {a.id}: {a.file} port {a.port}")


async def cmd_spawn(args) -> None:
    ctx = await _context(args)
    manager = BuilderManager(ctx)
    files = [f.strip() for f in args.files.split(",") if f.strip()] if args.files else None

    if args.project:
        plan = manager.plan_spec(args.project)
    elif args.task:
        plan = manager.plan_task(args.task, files)
    elif args.protocol:
        plan = manager.plan_protocol(args.protocol)
    elif args.shell:
        plan = manager.plan_shell()
    else:
        plan = manager.plan_worktree()

    builder = await manager.spawn(plan)
    print(f"Builder {builder.id} spawned")
    print(f"  Terminal: http://localhost:{builder.port}")
    if builder.branch:
        print(f"  Branch:   {builder.branch}")
        print(f"  Worktree: {builder.worktree}")


async def cmd_set_status(args) -> None:
    ctx = await _context(args)
    builder = await BuilderManager(ctx).set_status(args.id, args.status)
    print(f"Builder {builder.id}: {builder.status}")


async def cmd_cleanup(args) -> None:
    ctx = await _context(args)
    builder = await BuilderManager(ctx).cleanup(args.project, force=args.force)
    print(f"Builder {builder.id} cleaned up")


async def cmd_util(args) -> None:
    ctx = await _context(args)
    util = await spawn_util(ctx, name=args.name)
    print(f"Util {util.name}: http://localhost:{util.port}")


async def cmd_rename(args) -> None:
    ctx = await _context(args)
    store = ctx.store()
    try:
        old = await BuilderManager(ctx, store).rename(args.id, args.name)
    except NotFoundError:
        if await store.get_util(args.id) is None:
            raise NotFoundError(f"No builder or util with id '{args.id}'") from None
        old = await store.rename_util(args.id, args.name)
    print(f"Renamed {args.id}: {old} -> {args.name}")


async def cmd_ports(args) -> None:
    registry = PortRegistry()
    if args.ports_cmd == "list":
        allocations = await registry.list_allocations()
        if args.json:
            _print_json([a.model_dump() for a in allocations])
            return
        if not allocations:
            print("No port allocations")
            return
        print(f"{'BASE':<6} {'PID':<8} {'STATE':<10} PROJECT")
        for a in allocations:
            state = "missing" if not a.exists else ("active" if a.pid_alive else "idle")
            print(f"{a.base_port:<6} {a.pid or '-':<8} {state:<10} {a.project_path}")
    elif args.ports_cmd == "cleanup":
        result = await registry.cleanup_stale()
        for path in result["removed"]:
            print(f"Removed: {path}")
        print(f"Removed {len(result['removed'])}, cleared {len(result['cleared'])} dead pid(s), "
              f"{result['remaining']} allocation(s) remaining")
    elif args.ports_cmd == "remove":
        if not await registry.remove_allocation(args.path):
            raise NotFoundError(f"No port allocation for {args.path}")
        print(f"Removed allocation for {args.path}")


def _db_path(args) -> Path:
    if args.use_global:
        return global_db_path()
    root = Path(args.project_root).resolve() if args.project_root else find_project_root()
    return local_db_path(root / config.STATE_DIR_NAME)


async def cmd_db(args) -> None:
    path = _db_path(args)
    if args.db_cmd == "reset":
        if not args.force:
            raise ConfigError(f"Refusing to delete {path} without --force")
        removed = reset_database(path)
        print(f"Deleted {len(removed)} file(s)" if removed else f"No database at {path}")
        return
    if not path.exists():
        raise NotFoundError(f"No database at {path}")
    if args.db_cmd == "dump":
        _print_json(await dump_tables(path))
    else:
        stats = await database_stats(path)
        print(f"Database: {stats['path']}")
        print(f"Journal mode: {stats['journal_mode']}  Size: {stats['size_kb']} KB")
        for table, count in stats["tables"].items():
            print(f"  {table}: {count}")


def cmd_dashboard(args) -> None:
    ctx = asyncio.run(_context(args))
    run_dashboard(ctx, args.port)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="af",
        description="Agent Farm: run an architect and isolated builder agents on one machine.",
    )
    p.add_argument("--architect-cmd", help="Command for the architect session.")
    p.add_argument("--builder-cmd", help="Command for builder sessions.")
    p.add_argument("--shell-cmd", help="Command for shell and util sessions.")
    p.add_argument("--project-root", help="Project root (default: discovered from the current directory).")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_start = sub.add_parser("start", help="Recover from crashes, start the architect and dashboard.")
    p_start.add_argument("--cmd", help="Architect command for this start only.")
    p_start.add_argument("--no-dashboard", action="store_true", help="Do not start the dashboard server.")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop every recorded process and clear project state.")
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Show architect, builders and utils.")
    p_status.add_argument("--json", action="store_true", help="Machine-readable output.")
    p_status.set_defaults(func=cmd_status)

    p_spawn = sub.add_parser("spawn", help="Spawn a builder.")
    mode = p_spawn.add_mutually_exclusive_group(required=True)
    mode.add_argument("-p", "--project", help="Spec number (codev/specs/<id>-*.md).")
    mode.add_argument("--task", help="Ad-hoc task description.")
    mode.add_argument("--protocol", help="Protocol name (codev/protocols/<name>/protocol.md).")
    mode.add_argument("--shell", action="store_true", help="Bare shell session, no worktree.")
    mode.add_argument("--worktree", action="store_true", help="Worktree without a prompt.")
    p_spawn.add_argument("--files", help="Comma-separated files to mention in a task prompt.")
    p_spawn.set_defaults(func=cmd_spawn)

    p_set = sub.add_parser("set-status", help="Move a builder to a new lifecycle status.")
    p_set.add_argument("id")
    p_set.add_argument("status", choices=BUILDER_STATUSES)
    p_set.set_defaults(func=cmd_set_status)

    p_clean = sub.add_parser("cleanup", help="Remove a builder: session, terminal and worktree.")
    p_clean.add_argument("-p", "--project", required=True, help="Builder id (or unique name fragment).")
    p_clean.add_argument("--force", action="store_true", help="Delete even with uncommitted changes.")
    p_clean.set_defaults(func=cmd_cleanup)

    p_util = sub.add_parser("util", help="Open a utility terminal.")
    p_util.add_argument("-n", "--name", help="Display name.")
    p_util.set_defaults(func=cmd_util)

    p_rename = sub.add_parser("rename", help="Rename a builder or util.")
    p_rename.add_argument("id")
    p_rename.add_argument("name")
    p_rename.set_defaults(func=cmd_rename)

    p_ports = sub.add_parser("ports", help="Machine-wide port registry.")
    ports_sub = p_ports.add_subparsers(dest="ports_cmd", required=True)
    p_plist = ports_sub.add_parser("list", help="List all allocations.")
    p_plist.add_argument("--json", action="store_true")
    ports_sub.add_parser("cleanup", help="Release blocks of deleted projects, clear dead pids.")
    p_prm = ports_sub.add_parser("remove", help="Release one project's block.")
    p_prm.add_argument("path")
    p_ports.set_defaults(func=cmd_ports)

    p_db = sub.add_parser("db", help="Inspect or reset a state database.")
    p_db.add_argument("db_cmd", choices=["dump", "stats", "reset"])
    p_db.add_argument("--global", dest="use_global", action="store_true", help="Target the port registry.")
    p_db.add_argument("--force", action="store_true", help="Required for reset.")
    p_db.set_defaults(func=cmd_db)

    p_dash = sub.add_parser("dashboard", help="Serve the dashboard API in the foreground.")
    p_dash.add_argument("--port", type=int, help="Port (default: the project's dashboard port).")
    p_dash.set_defaults(func=cmd_dashboard)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging("debug" if args.verbose else None)

    try:
        if inspect.iscoroutinefunction(args.func):
            asyncio.run(args.func(args))
        else:
            args.func(args)
        return 0
    except AgentFarmError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
