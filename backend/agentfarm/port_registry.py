"""Machine-wide port registry.

Every project checkout on the machine gets one block of PORT_BLOCK_SIZE
ports, recorded in ``$AF_HOME/global.db``. A project's block never moves
once assigned: rows are only deleted when the project directory itself is
gone, so a client that cached a port never gets silently redirected to a
different project.
"""

import logging
import os
import sqlite3
from pathlib import Path

from . import config
from .database import NOW_SQL, global_db_path, init_global_db, open_db, transaction, with_retry
from .errors import CapacityError, ConfigError, ConflictError
from .liveness import path_exists, pid_alive
from .models.state import PortAllocation, ProjectPorts

logger = logging.getLogger("agentfarm.ports")

# Static offsets inside a block; never persisted
DASHBOARD_OFFSET = 0
ARCHITECT_OFFSET = 1
BUILDER_RANGE = (10, 29)
UTIL_RANGE = (30, 49)
ANNOTATE_RANGE = (50, 69)


def canonical_path(project_path: str | Path) -> str:
    return str(Path(project_path).expanduser().resolve())


def project_ports(base_port: int) -> ProjectPorts:
    """Concrete ports for every subsystem of a project, derived from its block."""
    return ProjectPorts(
        base_port=base_port,
        dashboard_port=base_port + DASHBOARD_OFFSET,
        architect_port=base_port + ARCHITECT_OFFSET,
        builder_port_range=(base_port + BUILDER_RANGE[0], base_port + BUILDER_RANGE[1]),
        util_port_range=(base_port + UTIL_RANGE[0], base_port + UTIL_RANGE[1]),
        annotate_port_range=(base_port + ANNOTATE_RANGE[0], base_port + ANNOTATE_RANGE[1]),
    )


class PortRegistry:
    """Allocator over the shared registry. Holds no row data between calls."""

    def __init__(self, home_dir: Path | None = None, max_allocations: int | None = None):
        self.home_dir = Path(home_dir) if home_dir else config.AF_HOME
        self.db_path = global_db_path(self.home_dir)
        self.max_allocations = max_allocations or config.MAX_ALLOCATIONS
        self._schema_ready = False

    async def _ensure_schema(self):
        if not self._schema_ready:
            await init_global_db(self.home_dir)
            self._schema_ready = True

    async def get_or_allocate(self, project_path: str | Path, pid: int | None = None) -> int:
        """Return the project's base port, allocating the next free block if needed.

        Read-max, decide and insert all happen under one BEGIN IMMEDIATE
        transaction, so concurrent callers are serialized by SQLite.
        """
        await self._ensure_schema()
        path = canonical_path(project_path)
        owner = pid if pid is not None else os.getpid()
        ceiling = config.BASE_PORT + self.max_allocations * config.PORT_BLOCK_SIZE

        async def _allocate() -> int:
            async with open_db(self.db_path) as db:
                async with transaction(db):
                    row = await (await db.execute(
                        "SELECT base_port FROM port_allocations WHERE project_path = ?", (path,)
                    )).fetchone()
                    if row:
                        await db.execute(
                            f"UPDATE port_allocations SET pid = ?, last_used_at = {NOW_SQL} "
                            "WHERE project_path = ?",
                            (owner, path),
                        )
                        return row["base_port"]

                    row = await (await db.execute(
                        "SELECT MAX(base_port) AS max_port FROM port_allocations"
                    )).fetchone()
                    max_port = row["max_port"] if row else None
                    next_port = config.BASE_PORT if max_port is None else max_port + config.PORT_BLOCK_SIZE
                    if next_port >= ceiling:
                        raise CapacityError(
                            f"No free port blocks: all {self.max_allocations} blocks of "
                            f"{config.PORT_BLOCK_SIZE} ports are allocated. "
                            "Run 'af ports cleanup' to release blocks of deleted projects."
                        )
                    try:
                        await db.execute(
                            "INSERT INTO port_allocations (project_path, base_port, pid) VALUES (?, ?, ?)",
                            (path, next_port, owner),
                        )
                    except sqlite3.IntegrityError as e:
                        if "CHECK constraint failed" in str(e):
                            # Registry was created with a different AF_BASE_PORT/AF_PORT_BLOCK_SIZE
                            raise ConfigError(
                                f"Port block {next_port} is not aligned with the registry created at "
                                f"{self.db_path} (blocks start at a fixed base and step by a fixed size); "
                                f"restore the original AF_BASE_PORT and AF_PORT_BLOCK_SIZE ({e})"
                            ) from e
                        raise ConflictError(
                            f"Port block {next_port} is already allocated to another project ({e})"
                        ) from e
                    logger.info("Allocated port block %d for %s", next_port, path)
                    return next_port

        return await with_retry(_allocate)

    async def get_allocation(self, project_path: str | Path) -> PortAllocation | None:
        await self._ensure_schema()
        async with open_db(self.db_path) as db:
            row = await (await db.execute(
                "SELECT * FROM port_allocations WHERE project_path = ?", (canonical_path(project_path),)
            )).fetchone()
        return PortAllocation.from_row(row) if row else None

    async def list_allocations(self) -> list[PortAllocation]:
        """All rows ordered by base port, with on-the-spot liveness flags."""
        await self._ensure_schema()
        async with open_db(self.db_path) as db:
            rows = await (await db.execute(
                "SELECT * FROM port_allocations ORDER BY base_port"
            )).fetchall()
        allocations = []
        for row in rows:
            alloc = PortAllocation.from_row(row)
            alloc.exists = path_exists(alloc.project_path)
            alloc.pid_alive = pid_alive(alloc.pid)
            allocations.append(alloc)
        return allocations

    async def remove_allocation(self, project_path: str | Path) -> bool:
        await self._ensure_schema()
        path = canonical_path(project_path)

        async def _remove() -> bool:
            async with open_db(self.db_path) as db:
                async with transaction(db):
                    cursor = await db.execute(
                        "DELETE FROM port_allocations WHERE project_path = ?", (path,)
                    )
                    return cursor.rowcount > 0

        removed = await with_retry(_remove)
        if removed:
            logger.info("Removed port allocation for %s", path)
        return removed

    async def cleanup_stale(self) -> dict:
        """Drop rows of deleted projects; clear dead owner pids on the rest.

        A live project's allocation is never deleted, only its pid is
        cleared. Failures on individual rows are logged and skipped.
        """
        await self._ensure_schema()
        removed: list[str] = []
        cleared: list[str] = []
        remaining = 0

        async with open_db(self.db_path) as db:
            rows = await (await db.execute(
                "SELECT project_path, base_port, pid FROM port_allocations ORDER BY base_port"
            )).fetchall()

            for row in rows:
                path = row["project_path"]
                try:
                    if not path_exists(path):
                        async with transaction(db):
                            await db.execute(
                                "DELETE FROM port_allocations WHERE project_path = ?", (path,)
                            )
                        removed.append(path)
                        logger.info("Released port block %d of deleted project %s", row["base_port"], path)
                        continue
                    remaining += 1
                    if row["pid"] is not None and not pid_alive(row["pid"]):
                        async with transaction(db):
                            # Guarded on the old pid so a concurrent refresh is not undone
                            await db.execute(
                                "UPDATE port_allocations SET pid = NULL "
                                "WHERE project_path = ? AND pid = ?",
                                (path, row["pid"]),
                            )
                        cleared.append(path)
                except sqlite3.Error as e:
                    logger.warning("Skipping stale-check of %s: %s", path, e)

        return {"removed": removed, "cleared": cleared, "remaining": remaining}
