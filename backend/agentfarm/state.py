"""Per-project process/resource store (``.agent-farm/state.db``).

Every public method opens its own connection and, for writes, its own
BEGIN IMMEDIATE transaction: each mutation is atomic on its own and
nothing read here is reused by a later call.
"""

import logging
import sqlite3
from pathlib import Path

import aiosqlite

from .database import NOW_SQL, init_local_db, local_db_path, open_db, transaction, with_retry
from .errors import ConflictError, InvalidTransitionError, NotFoundError
from .models.state import (
    BUILDER_STATUSES,
    Annotation,
    AnnotationParent,
    Architect,
    Builder,
    ProjectState,
    UtilTerminal,
)

logger = logging.getLogger("agentfarm.state")

_BUILDER_UPDATABLE = ("pid", "tmux_session", "phase", "worktree", "branch")


async def _port_owner(db: aiosqlite.Connection, port: int) -> str | None:
    """Describe which row holds ``port``, for conflict messages."""
    for table, label in (("builders", "builder"), ("utils", "util"), ("annotations", "annotation")):
        row = await (await db.execute(f"SELECT id FROM {table} WHERE port = ?", (port,))).fetchone()
        if row:
            return f"{label} {row['id']}"
    row = await (await db.execute("SELECT 1 FROM architect WHERE port = ?", (port,))).fetchone()
    return "the architect" if row else None


async def _conflict(db: aiosqlite.Connection, e: sqlite3.IntegrityError, kind: str, item_id: str, port: int) -> ConflictError:
    msg = str(e)
    if msg.endswith(".port"):
        owner = await _port_owner(db, port)
        return ConflictError(f"Port {port} is already assigned to {owner or 'another ' + kind}")
    if msg.endswith(".id"):
        return ConflictError(f"A {kind} with id '{item_id}' already exists")
    return ConflictError(f"Cannot record {kind} '{item_id}': {msg}")


class StateStore:
    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.db_path = local_db_path(self.state_dir)
        self._schema_ready = False

    async def initialize(self) -> "StateStore":
        """Create or upgrade the schema (and import legacy state.json once)."""
        if not self._schema_ready:
            await init_local_db(self.state_dir)
            self._schema_ready = True
        return self

    async def _read(self, fn):
        await self.initialize()
        async with open_db(self.db_path) as db:
            return await fn(db)

    async def _write(self, fn):
        await self.initialize()

        async def _op():
            async with open_db(self.db_path) as db:
                async with transaction(db):
                    return await fn(db)

        return await with_retry(_op)

    # --- Snapshot ---

    async def load_all(self) -> ProjectState:
        async def _load(db):
            arch = await (await db.execute("SELECT * FROM architect WHERE id = 1")).fetchone()
            builders = await (await db.execute("SELECT * FROM builders ORDER BY started_at, id")).fetchall()
            utils = await (await db.execute("SELECT * FROM utils ORDER BY started_at, id")).fetchall()
            annotations = await (await db.execute("SELECT * FROM annotations ORDER BY started_at, id")).fetchall()
            return ProjectState(
                architect=Architect.from_row(arch) if arch else None,
                builders=[Builder.from_row(r) for r in builders],
                utils=[UtilTerminal.from_row(r) for r in utils],
                annotations=[Annotation.from_row(r) for r in annotations],
            )
        return await self._read(_load)

    async def clear_state(self):
        async def _clear(db):
            await db.execute("DELETE FROM annotations")
            await db.execute("DELETE FROM utils")
            await db.execute("DELETE FROM builders")
            await db.execute("DELETE FROM architect")
        await self._write(_clear)
        logger.info("Cleared project state in %s", self.db_path)

    # --- Architect (single occupancy) ---

    async def get_architect(self) -> Architect | None:
        async def _get(db):
            row = await (await db.execute("SELECT * FROM architect WHERE id = 1")).fetchone()
            return Architect.from_row(row) if row else None
        return await self._read(_get)

    async def set_architect(self, architect: Architect):
        """Record the architect, replacing any previous record wholesale."""
        async def _set(db):
            await db.execute(
                "INSERT OR REPLACE INTO architect (id, pid, port, cmd, started_at, tmux_session) "
                "VALUES (1, ?, ?, ?, ?, ?)",
                (architect.pid, architect.port, architect.cmd, architect.started_at, architect.tmux_session),
            )
        await self._write(_set)

    async def clear_architect(self) -> bool:
        async def _clear(db):
            cursor = await db.execute("DELETE FROM architect")
            return cursor.rowcount > 0
        return await self._write(_clear)

    # --- Builders ---

    async def insert_builder(self, builder: Builder) -> Builder:
        """Insert a new builder. Duplicate id or port raises ConflictError."""
        async def _insert(db):
            try:
                await db.execute(
                    "INSERT INTO builders (id, name, port, pid, status, phase, worktree, branch, "
                    "tmux_session, type, task_text, protocol_name) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (builder.id, builder.name, builder.port, builder.pid, builder.status,
                     builder.phase, builder.worktree, builder.branch, builder.tmux_session,
                     builder.type, builder.task_text, builder.protocol_name),
                )
            except sqlite3.IntegrityError as e:
                raise await _conflict(db, e, "builder", builder.id, builder.port) from e
            row = await (await db.execute("SELECT * FROM builders WHERE id = ?", (builder.id,))).fetchone()
            return Builder.from_row(row)
        return await self._write(_insert)

    async def upsert_builder(self, builder: Builder) -> Builder:
        """Insert or fully update by id. A port held by another builder is still a conflict."""
        async def _upsert(db):
            try:
                await db.execute(
                    "INSERT INTO builders (id, name, port, pid, status, phase, worktree, branch, "
                    "tmux_session, type, task_text, protocol_name) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET "
                    "name = excluded.name, port = excluded.port, pid = excluded.pid, "
                    "status = excluded.status, phase = excluded.phase, "
                    "worktree = excluded.worktree, branch = excluded.branch, "
                    "tmux_session = excluded.tmux_session, type = excluded.type, "
                    "task_text = excluded.task_text, protocol_name = excluded.protocol_name",
                    (builder.id, builder.name, builder.port, builder.pid, builder.status,
                     builder.phase, builder.worktree, builder.branch, builder.tmux_session,
                     builder.type, builder.task_text, builder.protocol_name),
                )
            except sqlite3.IntegrityError as e:
                raise await _conflict(db, e, "builder", builder.id, builder.port) from e
            row = await (await db.execute("SELECT * FROM builders WHERE id = ?", (builder.id,))).fetchone()
            return Builder.from_row(row)
        return await self._write(_upsert)

    async def get_builder(self, builder_id: str) -> Builder | None:
        async def _get(db):
            row = await (await db.execute("SELECT * FROM builders WHERE id = ?", (builder_id,))).fetchone()
            return Builder.from_row(row) if row else None
        return await self._read(_get)

    async def list_builders(self) -> list[Builder]:
        async def _list(db):
            rows = await (await db.execute("SELECT * FROM builders ORDER BY started_at, id")).fetchall()
            return [Builder.from_row(r) for r in rows]
        return await self._read(_list)

    async def builders_by_status(self, status: str) -> list[Builder]:
        async def _list(db):
            rows = await (await db.execute(
                "SELECT * FROM builders WHERE status = ? ORDER BY started_at, id", (status,)
            )).fetchall()
            return [Builder.from_row(r) for r in rows]
        return await self._read(_list)

    async def set_status(self, builder_id: str, status: str, allowed_from=None) -> Builder:
        """Update only the status. Unknown ids raise NotFoundError; nothing is inserted.

        With ``allowed_from`` the update is a compare-and-set: it only applies
        while the current status is one of those values, checked inside the
        same transaction.
        """
        if status not in BUILDER_STATUSES:
            raise InvalidTransitionError(
                f"Invalid status '{status}'. Valid: {', '.join(BUILDER_STATUSES)}"
            )

        async def _set(db):
            row = await (await db.execute("SELECT status FROM builders WHERE id = ?", (builder_id,))).fetchone()
            if row is None:
                raise NotFoundError(f"Builder not found: {builder_id}")
            if allowed_from is not None and row["status"] not in allowed_from:
                raise InvalidTransitionError(
                    f"Builder {builder_id} cannot move from '{row['status']}' to '{status}'"
                )
            await db.execute("UPDATE builders SET status = ? WHERE id = ?", (status, builder_id))
            row = await (await db.execute("SELECT * FROM builders WHERE id = ?", (builder_id,))).fetchone()
            return Builder.from_row(row)
        return await self._write(_set)

    async def update_builder(self, builder_id: str, **fields) -> Builder:
        unknown = set(fields) - set(_BUILDER_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update builder fields: {', '.join(sorted(unknown))}")
        if not fields:
            builder = await self.get_builder(builder_id)
            if builder is None:
                raise NotFoundError(f"Builder not found: {builder_id}")
            return builder

        assignments = ", ".join(f"{name} = ?" for name in fields)

        async def _update(db):
            cursor = await db.execute(
                f"UPDATE builders SET {assignments} WHERE id = ?", (*fields.values(), builder_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Builder not found: {builder_id}")
            row = await (await db.execute("SELECT * FROM builders WHERE id = ?", (builder_id,))).fetchone()
            return Builder.from_row(row)
        return await self._write(_update)

    async def rename_builder(self, builder_id: str, new_name: str) -> str:
        """Rename a builder and return its previous name."""
        async def _rename(db):
            row = await (await db.execute("SELECT name FROM builders WHERE id = ?", (builder_id,))).fetchone()
            if row is None:
                raise NotFoundError(f"Builder not found: {builder_id}")
            await db.execute("UPDATE builders SET name = ? WHERE id = ?", (new_name, builder_id))
            return row["name"]
        return await self._write(_rename)

    async def remove_builder(self, builder_id: str) -> bool:
        async def _remove(db):
            cursor = await db.execute("DELETE FROM builders WHERE id = ?", (builder_id,))
            return cursor.rowcount > 0
        return await self._write(_remove)

    # --- Utility terminals ---

    async def add_util(self, util: UtilTerminal) -> UtilTerminal:
        async def _add(db):
            try:
                await db.execute(
                    f"INSERT INTO utils (id, name, port, pid, tmux_session, started_at) "
                    f"VALUES (?, ?, ?, ?, ?, COALESCE(?, {NOW_SQL}))",
                    (util.id, util.name, util.port, util.pid, util.tmux_session, util.started_at),
                )
            except sqlite3.IntegrityError as e:
                raise await _conflict(db, e, "util", util.id, util.port) from e
            row = await (await db.execute("SELECT * FROM utils WHERE id = ?", (util.id,))).fetchone()
            return UtilTerminal.from_row(row)
        return await self._write(_add)

    async def try_add_util(self, util: UtilTerminal) -> bool:
        """Claim a util port; False if another util got there first."""
        try:
            await self.add_util(util)
        except ConflictError as e:
            if "Port" in str(e):
                return False
            raise
        return True

    async def get_util(self, util_id: str) -> UtilTerminal | None:
        async def _get(db):
            row = await (await db.execute("SELECT * FROM utils WHERE id = ?", (util_id,))).fetchone()
            return UtilTerminal.from_row(row) if row else None
        return await self._read(_get)

    async def list_utils(self) -> list[UtilTerminal]:
        async def _list(db):
            rows = await (await db.execute("SELECT * FROM utils ORDER BY started_at, id")).fetchall()
            return [UtilTerminal.from_row(r) for r in rows]
        return await self._read(_list)

    async def update_util(self, util_id: str, pid: int | None, tmux_session: str | None) -> None:
        async def _update(db):
            cursor = await db.execute(
                "UPDATE utils SET pid = ?, tmux_session = ? WHERE id = ?", (pid, tmux_session, util_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Util not found: {util_id}")
        await self._write(_update)

    async def rename_util(self, util_id: str, new_name: str) -> str:
        async def _rename(db):
            row = await (await db.execute("SELECT name FROM utils WHERE id = ?", (util_id,))).fetchone()
            if row is None:
                raise NotFoundError(f"Util not found: {util_id}")
            await db.execute("UPDATE utils SET name = ? WHERE id = ?", (new_name, util_id))
            return row["name"]
        return await self._write(_rename)

    async def remove_util(self, util_id: str) -> bool:
        async def _remove(db):
            cursor = await db.execute("DELETE FROM utils WHERE id = ?", (util_id,))
            return cursor.rowcount > 0
        return await self._write(_remove)

    # --- Annotations ---

    async def add_annotation(self, annotation: Annotation) -> Annotation:
        """Record an annotation viewer. Its parent must currently exist."""
        parent = annotation.parent

        async def _add(db):
            if parent.type == "architect":
                exists = await (await db.execute("SELECT 1 FROM architect WHERE id = 1")).fetchone()
            else:
                table = "builders" if parent.type == "builder" else "utils"
                exists = await (await db.execute(
                    f"SELECT 1 FROM {table} WHERE id = ?", (parent.id,)
                )).fetchone()
            if not exists:
                label = parent.type if parent.id is None else f"{parent.type} {parent.id}"
                raise NotFoundError(f"Annotation parent not found: {label}")
            try:
                await db.execute(
                    f"INSERT INTO annotations (id, file, port, pid, parent_type, parent_id, started_at) "
                    f"VALUES (?, ?, ?, ?, ?, ?, COALESCE(?, {NOW_SQL}))",
                    (annotation.id, annotation.file, annotation.port, annotation.pid,
                     parent.type, parent.id, annotation.started_at),
                )
            except sqlite3.IntegrityError as e:
                raise await _conflict(db, e, "annotation", annotation.id, annotation.port) from e
            row = await (await db.execute("SELECT * FROM annotations WHERE id = ?", (annotation.id,))).fetchone()
            return Annotation.from_row(row)
        return await self._write(_add)

    async def list_annotations(self) -> list[Annotation]:
        async def _list(db):
            rows = await (await db.execute("SELECT * FROM annotations ORDER BY started_at, id")).fetchall()
            return [Annotation.from_row(r) for r in rows]
        return await self._read(_list)

    async def annotations_for_parent(self, parent: AnnotationParent) -> list[Annotation]:
        async def _list(db):
            rows = await (await db.execute(
                "SELECT * FROM annotations WHERE parent_type = ? AND parent_id IS ? ORDER BY started_at, id",
                (parent.type, parent.id),
            )).fetchall()
            return [Annotation.from_row(r) for r in rows]
        return await self._read(_list)

    async def remove_annotation(self, annotation_id: str) -> bool:
        async def _remove(db):
            cursor = await db.execute("DELETE FROM annotations WHERE id = ?", (annotation_id,))
            return cursor.rowcount > 0
        return await self._write(_remove)
