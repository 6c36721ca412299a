"""One-time import of the legacy JSON snapshots into SQLite.

Both importers run inside the caller's migration transaction: a single bad
row (for example two builders claiming the same port) raises MigrationError
and the whole import rolls back, leaving the JSON file untouched.
"""

import json
import logging
import sqlite3
from pathlib import Path

import aiosqlite

from .errors import MigrationError

logger = logging.getLogger("agentfarm.migrate")


def _read_json(json_path: Path) -> dict:
    try:
        data = json.loads(json_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise MigrationError(f"Cannot read legacy {json_path.name}: {e}") from e
    if not isinstance(data, dict):
        raise MigrationError(f"Legacy {json_path.name} is not a JSON object")
    return data


def _legacy_port_entries(data: dict) -> dict[str, dict]:
    """Return {project_path: entry} from either ports.json layout.

    Versioned files look like ``{"version": 1, "entries": {...}}``; older
    files are the entries mapping itself, possibly with stray keys.
    """
    if data.get("version") and isinstance(data.get("entries"), dict):
        return data["entries"]
    return {
        key: value for key, value in data.items()
        if isinstance(value, dict) and "basePort" in value
    }


async def import_legacy_state(db: aiosqlite.Connection, json_path: Path) -> bool:
    """Import a project's state.json. Returns False when there is nothing to import."""
    if not json_path.exists():
        return False
    state = _read_json(json_path)
    logger.info("Importing legacy %s", json_path)

    try:
        architect = state.get("architect")
        if architect:
            await db.execute(
                "INSERT INTO architect (id, pid, port, cmd, started_at, tmux_session) "
                "VALUES (1, ?, ?, ?, COALESCE(?, strftime('%Y-%m-%d %H:%M:%f', 'now')), ?)",
                (architect["pid"], architect["port"], architect["cmd"],
                 architect.get("startedAt"), architect.get("tmuxSession")),
            )

        for b in state.get("builders") or []:
            await db.execute(
                "INSERT INTO builders (id, name, port, pid, status, phase, worktree, branch, "
                "tmux_session, type, task_text, protocol_name) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (b["id"], b["name"], b["port"], b.get("pid"),
                 b.get("status", "spawning"), b.get("phase", ""),
                 b.get("worktree", ""), b.get("branch", ""),
                 b.get("tmuxSession"), b.get("type", "spec"),
                 b.get("taskText"), b.get("protocolName")),
            )

        for u in state.get("utils") or []:
            await db.execute(
                "INSERT INTO utils (id, name, port, pid, tmux_session) VALUES (?, ?, ?, ?, ?)",
                (u["id"], u["name"], u["port"], u.get("pid"), u.get("tmuxSession")),
            )

        for a in state.get("annotations") or []:
            parent = a.get("parent") or {"type": "architect"}
            await db.execute(
                "INSERT INTO annotations (id, file, port, pid, parent_type, parent_id) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (a["id"], a["file"], a["port"], a.get("pid"),
                 parent.get("type"), parent.get("id")),
            )
    except sqlite3.IntegrityError as e:
        raise MigrationError(
            f"Legacy {json_path.name} violates a store constraint ({e}); "
            f"nothing was imported. Fix or delete {json_path} and retry."
        ) from e
    except (KeyError, TypeError) as e:
        raise MigrationError(f"Legacy {json_path.name} has a malformed entry: {e}") from e
    return True


async def import_legacy_ports(db: aiosqlite.Connection, json_path: Path) -> bool:
    """Import the machine-wide ports.json. Returns False when absent."""
    if not json_path.exists():
        return False
    entries = _legacy_port_entries(_read_json(json_path))
    logger.info("Importing %d legacy port allocations from %s", len(entries), json_path)

    try:
        for project_path, entry in entries.items():
            registered = entry.get("registered")
            await db.execute(
                "INSERT INTO port_allocations (project_path, base_port, pid, registered_at, last_used_at) "
                "VALUES (?, ?, ?, COALESCE(?, strftime('%Y-%m-%d %H:%M:%f', 'now')), COALESCE(?, ?, strftime('%Y-%m-%d %H:%M:%f', 'now')))",
                (project_path, entry["basePort"], entry.get("pid"),
                 registered, entry.get("lastUsed"), registered),
            )
    except sqlite3.IntegrityError as e:
        raise MigrationError(
            f"Legacy {json_path.name} violates a registry constraint ({e}); "
            f"nothing was imported. Fix or delete {json_path} and retry."
        ) from e
    except (KeyError, TypeError) as e:
        raise MigrationError(f"Legacy {json_path.name} has a malformed entry: {e}") from e
    return True
