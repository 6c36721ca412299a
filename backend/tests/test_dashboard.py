"""Tests for the dashboard HTTP API (agentfarm.dashboard)."""

import sqlite3
from unittest.mock import patch

from agentfarm.errors import ContentionError
from agentfarm.models.state import Builder


class TestHealth:

    async def test_health(self, client, project_root):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["db"] == "ok"
        assert data["base_port"] == 4200
        assert data["project_root"] == str(project_root)

    async def test_health_degraded_on_store_error(self, client):
        with patch("agentfarm.state.StateStore.get_architect",
                   side_effect=sqlite3.OperationalError("disk I/O error")):
            resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"


class TestState:

    async def test_state_snapshot(self, client, store):
        await store.insert_builder(Builder(id="0003", name="login", port=4210, pid=None))
        resp = await client.get("/api/state")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ports"]["architect_port"] == 4201
        assert [b["id"] for b in data["state"]["builders"]] == ["0003"]
        assert data["alive"] == {"builder:0003": False}

    async def test_ports(self, client, project_root):
        resp = await client.get("/api/ports")
        assert resp.status_code == 200
        allocations = resp.json()["allocations"]
        assert allocations[0]["project_path"] == str(project_root)
        assert allocations[0]["base_port"] == 4200


class TestBuilderStatus:

    async def test_valid_transition(self, client, store):
        await store.insert_builder(Builder(id="0003", name="login", port=4210))
        resp = await client.put("/api/builders/0003/status", json={"status": "implementing"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "implementing"

    async def test_unknown_builder_404(self, client):
        resp = await client.put("/api/builders/ghost/status", json={"status": "implementing"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_invalid_transition_409(self, client, store):
        await store.insert_builder(Builder(id="0003", name="login", port=4210))
        resp = await client.put("/api/builders/0003/status", json={"status": "pr-ready"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

    async def test_unknown_status_422(self, client, store):
        await store.insert_builder(Builder(id="0003", name="login", port=4210))
        resp = await client.put("/api/builders/0003/status", json={"status": "done"})
        assert resp.status_code == 422

    async def test_contention_503(self, client, store):
        await store.insert_builder(Builder(id="0003", name="login", port=4210))
        with patch("agentfarm.state.StateStore.set_status", side_effect=ContentionError("Database is busy")):
            resp = await client.put("/api/builders/0003/status", json={"status": "implementing"})
        assert resp.status_code == 503
        assert resp.json()["error"] == "db_busy"


class TestCompleteBuilder:

    async def test_delete_releases_builder(self, client, store):
        await store.insert_builder(Builder(id="0003", name="login", port=4210, pid=None))
        with patch("agentfarm.tmux.kill_session", return_value=False) as kill:
            resp = await client.delete("/api/builders/0003")
        assert resp.status_code == 200
        assert resp.json() == {"id": "0003", "released": True}
        kill.assert_called_once_with("builder-4200-0003")
        assert await store.get_builder("0003") is None

    async def test_delete_unknown_404(self, client):
        resp = await client.delete("/api/builders/ghost")
        assert resp.status_code == 404
