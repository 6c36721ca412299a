"""Tests for the machine-wide port registry (agentfarm.port_registry)."""

import asyncio
import re
import sqlite3
import threading
from unittest.mock import patch

import aiosqlite
import pytest

from agentfarm import config
from agentfarm.errors import CapacityError, ConfigError
from agentfarm.port_registry import PortRegistry, canonical_path, project_ports


async def _rows(registry):
    async with aiosqlite.connect(registry.db_path) as db:
        db.row_factory = aiosqlite.Row
        return await (await db.execute("SELECT * FROM port_allocations ORDER BY base_port")).fetchall()


class TestGetOrAllocate:

    async def test_sequential_projects_get_consecutive_blocks(self, registry):
        """/proj/a, /proj/b, /proj/c -> 4200, 4300, 4400; /proj/b again -> 4300."""
        assert await registry.get_or_allocate("/proj/a") == 4200
        assert await registry.get_or_allocate("/proj/b") == 4300
        assert await registry.get_or_allocate("/proj/c") == 4400

        assert await registry.get_or_allocate("/proj/b") == 4300
        rows = await _rows(registry)
        assert [r["base_port"] for r in rows] == [4200, 4300, 4400]

    async def test_same_path_twice_keeps_single_row(self, registry):
        first = await registry.get_or_allocate("/proj/same")
        second = await registry.get_or_allocate("/proj/same")
        assert first == second
        assert len(await _rows(registry)) == 1

    async def test_equivalent_paths_are_canonicalized(self, registry, tmp_path):
        project = tmp_path / "checkout"
        project.mkdir()
        a = await registry.get_or_allocate(project)
        b = await registry.get_or_allocate(str(project / "sub" / ".."))
        assert a == b
        assert len(await _rows(registry)) == 1

    async def test_bases_are_distinct_multiples_of_block(self, registry):
        ports = [await registry.get_or_allocate(f"/proj/p{i}") for i in range(12)]
        assert len(set(ports)) == len(ports)
        for port in ports:
            assert port >= config.BASE_PORT
            assert (port - config.BASE_PORT) % config.PORT_BLOCK_SIZE == 0

    async def test_refresh_updates_pid(self, registry):
        await registry.get_or_allocate("/proj/a", pid=111)
        await registry.get_or_allocate("/proj/a", pid=222)
        alloc = await registry.get_allocation("/proj/a")
        assert alloc.pid == 222
        assert alloc.base_port == 4200

    async def test_refresh_keeps_timestamp_format(self, registry):
        await registry.get_or_allocate("/proj/a")
        async with aiosqlite.connect(registry.db_path) as db:
            await db.execute("UPDATE port_allocations SET last_used_at = '2000-01-01 00:00:00.000'")
            await db.commit()
        await registry.get_or_allocate("/proj/a")
        alloc = await registry.get_allocation("/proj/a")
        # Same millisecond format as the column defaults, so text ordering holds
        assert re.fullmatch(r"\d{4}-\d\d-\d\d \d\d:\d\d:\d\d\.\d{3}", alloc.last_used_at)
        assert alloc.last_used_at >= alloc.registered_at
        assert alloc.last_used_at > "2000-01-01 00:00:00.000"

    async def test_registry_from_other_base_port_is_config_error(self, registry):
        await registry.get_allocation("/proj/a")
        with patch.object(config, "BASE_PORT", 4250):
            with pytest.raises(ConfigError, match="AF_BASE_PORT"):
                await registry.get_or_allocate("/proj/a")
        assert await _rows(registry) == []

    async def test_capacity_exceeded(self, isolated_home):
        small = PortRegistry(isolated_home, max_allocations=2)
        await small.get_or_allocate("/proj/a")
        await small.get_or_allocate("/proj/b")
        with pytest.raises(CapacityError, match="No free port blocks"):
            await small.get_or_allocate("/proj/c")
        # Existing projects still resolve
        assert await small.get_or_allocate("/proj/a") == 4200

    async def test_check_constraint_rejects_unaligned_port(self, registry):
        await registry.get_or_allocate("/proj/a")
        async with aiosqlite.connect(registry.db_path) as db:
            with pytest.raises(sqlite3.IntegrityError):
                await db.execute(
                    "INSERT INTO port_allocations (project_path, base_port) VALUES (?, ?)",
                    ("/proj/bad", 4250),
                )


class TestConcurrentAllocation:
    """Independent registry instances stand in for independent processes."""

    async def test_gather_distinct_projects(self, isolated_home):
        await PortRegistry(isolated_home).get_or_allocate("/proj/warmup")

        async def allocate(i):
            return await PortRegistry(isolated_home).get_or_allocate(f"/proj/c{i}")

        ports = await asyncio.gather(*(allocate(i) for i in range(8)))
        assert len(set(ports)) == 8
        assert 4200 not in ports

    async def test_gather_same_project(self, isolated_home):
        await PortRegistry(isolated_home).get_or_allocate("/proj/warmup")
        ports = await asyncio.gather(
            *(PortRegistry(isolated_home).get_or_allocate("/proj/shared") for _ in range(6))
        )
        assert len(set(ports)) == 1
        assert len(await _rows(PortRegistry(isolated_home))) == 2

    async def test_threads_with_separate_event_loops(self, isolated_home):
        await PortRegistry(isolated_home).get_or_allocate("/proj/warmup")
        results = {}
        errors = []

        def worker(i):
            try:
                results[i] = asyncio.run(PortRegistry(isolated_home).get_or_allocate(f"/proj/t{i}"))
            except Exception as e:  # surfaced via the errors list
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(set(results.values())) == 6


class TestCleanupStale:

    async def test_missing_path_removed_existing_path_kept(self, registry, tmp_path):
        alive_dir = tmp_path / "still-here"
        alive_dir.mkdir()
        await registry.get_or_allocate("/proj/deleted-long-ago", pid=999999)
        kept_port = await registry.get_or_allocate(alive_dir, pid=999998)

        with patch("agentfarm.port_registry.pid_alive", return_value=False):
            result = await registry.cleanup_stale()

        assert result["removed"] == [canonical_path("/proj/deleted-long-ago")]
        assert result["cleared"] == [canonical_path(alive_dir)]
        assert result["remaining"] == 1

        alloc = await registry.get_allocation(alive_dir)
        assert alloc is not None
        assert alloc.base_port == kept_port
        assert alloc.pid is None

    async def test_live_pid_untouched(self, registry, tmp_path):
        project = tmp_path / "live"
        project.mkdir()
        await registry.get_or_allocate(project, pid=4321)

        with patch("agentfarm.port_registry.pid_alive", return_value=True):
            result = await registry.cleanup_stale()

        assert result == {"removed": [], "cleared": [], "remaining": 1}
        assert (await registry.get_allocation(project)).pid == 4321

    async def test_block_of_removed_project_is_not_reused_below_max(self, registry, tmp_path):
        """New blocks come after the current max, so survivors keep their ports."""
        keep = tmp_path / "keep"
        keep.mkdir()
        await registry.get_or_allocate("/proj/gone")
        await registry.get_or_allocate(keep)
        await registry.cleanup_stale()
        assert await registry.get_or_allocate("/proj/new") == 4400

    async def test_row_failure_is_skipped(self, registry, tmp_path):
        await registry.get_or_allocate("/proj/one")
        await registry.get_or_allocate("/proj/two")

        calls = []

        def flaky_exists(path):
            calls.append(path)
            if len(calls) == 1:
                raise sqlite3.OperationalError("disk I/O error")
            return False

        with patch("agentfarm.port_registry.path_exists", side_effect=flaky_exists):
            result = await registry.cleanup_stale()

        assert len(result["removed"]) == 1
        assert len(await _rows(registry)) == 1


class TestListAndRemove:

    async def test_list_allocations_flags(self, registry, tmp_path):
        project = tmp_path / "listed"
        project.mkdir()
        await registry.get_or_allocate(project)
        await registry.get_or_allocate("/proj/missing")

        allocations = await registry.list_allocations()
        assert [a.base_port for a in allocations] == [4200, 4300]
        assert allocations[0].exists is True
        assert allocations[0].pid_alive is True  # owned by this test process
        assert allocations[1].exists is False

    async def test_remove_allocation(self, registry):
        await registry.get_or_allocate("/proj/a")
        assert await registry.remove_allocation("/proj/a") is True
        assert await registry.remove_allocation("/proj/a") is False
        assert await registry.list_allocations() == []


class TestProjectPorts:

    def test_static_offsets(self):
        ports = project_ports(4300)
        assert ports.dashboard_port == 4300
        assert ports.architect_port == 4301
        assert ports.builder_port_range == (4310, 4329)
        assert ports.util_port_range == (4330, 4349)
        assert ports.annotate_port_range == (4350, 4369)
