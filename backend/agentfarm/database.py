import asyncio
import logging
import random
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable

import aiosqlite

from . import config
from .errors import ContentionError
from .migrate import import_legacy_ports, import_legacy_state

_logger = logging.getLogger("agentfarm.db")

# Millisecond timestamps so updated_at moves on every write
NOW_SQL = "(strftime('%Y-%m-%d %H:%M:%f', 'now'))"


async def connect_db(db_path: Path) -> aiosqlite.Connection:
    """Open a connection with pragmas pre-configured.

    Connections run with isolation_level=None: transactions are always
    explicit (see ``transaction``), never opened implicitly by the driver.
    """
    db = await aiosqlite.connect(str(db_path), isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute(f"PRAGMA busy_timeout = {int(config.BUSY_TIMEOUT_MS)}")
    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute("PRAGMA synchronous = NORMAL")
    return db


@asynccontextmanager
async def open_db(db_path: Path):
    """Yield a fresh connection and close it afterwards.

    No connection outlives one operation: every CLI invocation re-reads
    durable state instead of trusting anything cached in memory.
    """
    db = await connect_db(db_path)
    try:
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def transaction(db: aiosqlite.Connection, immediate: bool = True):
    """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on error.

    IMMEDIATE takes the write lock up front, so two writers can never
    interleave between a read and the write that depends on it.
    """
    await db.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    else:
        await db.commit()


def is_busy_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


async def with_retry(operation: Callable[[], Awaitable], *, retries: int = 1, delay: float = 0.1):
    """Run ``operation`` again after lock contention, at most ``retries`` times.

    busy_timeout already waits up to AF_BUSY_TIMEOUT_MS inside SQLite; this
    adds one bounded application-level retry with jittered backoff before
    the contention is surfaced as ContentionError.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except sqlite3.OperationalError as exc:
            if not is_busy_error(exc):
                raise
            if attempt >= retries:
                raise ContentionError(
                    f"Database is busy (another agent-farm process holds the write lock): {exc}"
                ) from exc
            attempt += 1
            jittered_delay = delay + random.uniform(0, delay * 0.5)
            _logger.warning("Database busy, retrying (%d/%d)...", attempt, retries)
            await asyncio.sleep(jittered_delay)
            delay *= 3


# ---------------------------------------------------------------------------
# Schema Migration System
# ---------------------------------------------------------------------------

Migration = Callable[[aiosqlite.Connection, Path], Awaitable[None]]


async def _get_schema_version(db: aiosqlite.Connection) -> int:
    """Get the current schema version from the database."""
    try:
        row = await (await db.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        )).fetchone()
        return row["version"] if row else 0
    except sqlite3.OperationalError:
        # Table doesn't exist yet: fresh database
        return 0


async def _set_schema_version(db: aiosqlite.Connection, version: int):
    """Record a migration version as applied."""
    await db.execute(
        f"INSERT INTO schema_version (version, applied_at) VALUES (?, {NOW_SQL})",
        (version,),
    )


# --- Local (per-project) migrations ---

async def _local_migration_001(db: aiosqlite.Connection, store_dir: Path):
    """Initial schema: architect singleton, builders, utils, annotations."""
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS architect (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            pid INTEGER NOT NULL,
            port INTEGER NOT NULL,
            cmd TEXT NOT NULL,
            started_at TEXT NOT NULL DEFAULT {NOW_SQL},
            tmux_session TEXT
        )
    """)
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS builders (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            port INTEGER NOT NULL UNIQUE,
            pid INTEGER,
            status TEXT NOT NULL DEFAULT 'spawning'
                CHECK (status IN ('spawning', 'implementing', 'blocked', 'pr-ready', 'complete')),
            phase TEXT NOT NULL DEFAULT '',
            worktree TEXT NOT NULL DEFAULT '',
            branch TEXT NOT NULL DEFAULT '',
            tmux_session TEXT,
            type TEXT NOT NULL DEFAULT 'spec'
                CHECK (type IN ('spec', 'task', 'protocol', 'shell', 'worktree')),
            task_text TEXT,
            protocol_name TEXT,
            started_at TEXT NOT NULL DEFAULT {NOW_SQL},
            updated_at TEXT NOT NULL DEFAULT {NOW_SQL}
        )
    """)
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS utils (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            port INTEGER NOT NULL UNIQUE,
            pid INTEGER,
            tmux_session TEXT,
            started_at TEXT NOT NULL DEFAULT {NOW_SQL}
        )
    """)
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS annotations (
            id TEXT PRIMARY KEY,
            file TEXT NOT NULL,
            port INTEGER NOT NULL UNIQUE,
            pid INTEGER,
            parent_type TEXT NOT NULL CHECK (parent_type IN ('architect', 'builder', 'util')),
            parent_id TEXT,
            started_at TEXT NOT NULL DEFAULT {NOW_SQL},
            CHECK ((parent_type = 'architect' AND parent_id IS NULL)
                   OR (parent_type != 'architect' AND parent_id IS NOT NULL))
        )
    """)

    # Indexes
    await db.execute("CREATE INDEX IF NOT EXISTS idx_builders_status ON builders(status)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_annotations_parent ON annotations(parent_type, parent_id)")

    # Keep updated_at current on any builder change (recursive_triggers is off)
    await db.execute(f"""
        CREATE TRIGGER IF NOT EXISTS builders_updated_at
            AFTER UPDATE ON builders
            FOR EACH ROW
            BEGIN
                UPDATE builders SET updated_at = {NOW_SQL} WHERE id = NEW.id;
            END
    """)


async def _local_migration_002(db: aiosqlite.Connection, store_dir: Path):
    """Import the legacy state.json snapshot, if one is present."""
    await import_legacy_state(db, store_dir / config.LEGACY_STATE_FILE)


# --- Global (machine-wide) migrations ---

async def _global_migration_001(db: aiosqlite.Connection, store_dir: Path):
    """Initial schema: port_allocations."""
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS port_allocations (
            project_path TEXT PRIMARY KEY,
            base_port INTEGER NOT NULL UNIQUE
                CHECK (base_port >= {int(config.BASE_PORT)}
                       AND base_port % {int(config.PORT_BLOCK_SIZE)} = 0),
            pid INTEGER,
            registered_at TEXT NOT NULL DEFAULT {NOW_SQL},
            last_used_at TEXT NOT NULL DEFAULT {NOW_SQL}
        )
    """)


async def _global_migration_002(db: aiosqlite.Connection, store_dir: Path):
    """Import the legacy ports.json registry, if one is present."""
    await import_legacy_ports(db, store_dir / config.LEGACY_PORTS_FILE)


# Ordered lists of all migrations
LOCAL_MIGRATIONS: list[tuple[int, Migration]] = [
    (1, _local_migration_001),
    (2, _local_migration_002),
]

GLOBAL_MIGRATIONS: list[tuple[int, Migration]] = [
    (1, _global_migration_001),
    (2, _global_migration_002),
]

LOCAL_SCHEMA_VERSION = LOCAL_MIGRATIONS[-1][0]
GLOBAL_SCHEMA_VERSION = GLOBAL_MIGRATIONS[-1][0]


async def _run_migrations(
    db: aiosqlite.Connection,
    migrations: list[tuple[int, Migration]],
    store_dir: Path,
) -> list[int]:
    """Apply pending migrations in order, one transaction each.

    The version is re-read inside each BEGIN IMMEDIATE transaction, so when
    two processes initialize the same store only one of them applies a
    given migration. Returns the versions applied by this call.
    """
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT {NOW_SQL}
        )
    """)

    applied = []
    for version, migration_fn in migrations:
        async with transaction(db):
            current = await _get_schema_version(db)
            if version <= current:
                continue
            _logger.info("Applying migration %d...", version)
            await migration_fn(db, store_dir)
            await _set_schema_version(db, version)
        applied.append(version)
        _logger.info("Migration %d applied successfully", version)

    if applied:
        _logger.info("Schema now at version %d", migrations[-1][0])
    return applied


async def _enable_wal(db: aiosqlite.Connection):
    row = await (await db.execute("PRAGMA journal_mode = WAL")).fetchone()
    if row and str(row[0]).lower() != "wal":
        _logger.warning("WAL mode unavailable, using %s mode (concurrency limited)", row[0])


def _move_legacy_aside(legacy: Path):
    """Rename an imported legacy file to *.bak so it is never re-read."""
    if not legacy.exists():
        return
    backup = legacy.with_name(legacy.name + ".bak")
    legacy.replace(backup)
    _logger.info("Migrated %s (backup at %s)", legacy.name, backup)


async def _init_store(db_path: Path, migrations: list[tuple[int, Migration]], legacy_name: str) -> Path:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not db_path.exists()

    async def _init():
        async with open_db(db_path) as db:
            await _enable_wal(db)
            applied = await _run_migrations(db, migrations, db_path.parent)
            if applied:
                await db.execute("ANALYZE")
            return applied

    applied = await with_retry(_init)
    if 2 in applied:
        _move_legacy_aside(db_path.parent / legacy_name)
    if is_new:
        _logger.info("Created new %s at %s", db_path.name, db_path)
    return db_path


async def init_local_db(state_dir: Path) -> Path:
    """Create/upgrade a project's state.db. Idempotent."""
    return await _init_store(state_dir / config.LOCAL_DB_NAME, LOCAL_MIGRATIONS, config.LEGACY_STATE_FILE)


async def init_global_db(home_dir: Path | None = None) -> Path:
    """Create/upgrade the machine-wide global.db. Idempotent."""
    home = home_dir or config.AF_HOME
    return await _init_store(home / config.GLOBAL_DB_NAME, GLOBAL_MIGRATIONS, config.LEGACY_PORTS_FILE)


def local_db_path(state_dir: Path) -> Path:
    return state_dir / config.LOCAL_DB_NAME


def global_db_path(home_dir: Path | None = None) -> Path:
    return (home_dir or config.AF_HOME) / config.GLOBAL_DB_NAME


# ---------------------------------------------------------------------------
# Maintenance helpers (af db ...)
# ---------------------------------------------------------------------------

async def dump_tables(db_path: Path) -> dict[str, list[dict]]:
    """Return every user table as a list of row dicts."""
    async with open_db(db_path) as db:
        tables = await (await db.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' AND name != 'schema_version' "
            "ORDER BY name"
        )).fetchall()
        dump = {}
        for (name,) in tables:
            rows = await (await db.execute(f'SELECT * FROM "{name}"')).fetchall()
            dump[name] = [dict(row) for row in rows]
        return dump


async def database_stats(db_path: Path) -> dict:
    async with open_db(db_path) as db:
        tables = await (await db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )).fetchall()
        counts = {}
        for (name,) in tables:
            row = await (await db.execute(f'SELECT COUNT(*) FROM "{name}"')).fetchone()
            counts[name] = row[0]
        page_count = (await (await db.execute("PRAGMA page_count")).fetchone())[0]
        page_size = (await (await db.execute("PRAGMA page_size")).fetchone())[0]
        journal_mode = (await (await db.execute("PRAGMA journal_mode")).fetchone())[0]
    return {
        "path": str(db_path),
        "tables": counts,
        "journal_mode": str(journal_mode).upper(),
        "page_size": page_size,
        "page_count": page_count,
        "size_kb": round(page_count * page_size / 1024),
    }


def reset_database(db_path: Path) -> list[Path]:
    """Delete a database and its WAL/SHM side files. Returns what was removed."""
    removed = []
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            continue
    return removed
