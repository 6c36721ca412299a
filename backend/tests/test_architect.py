"""Tests for architect start/stop and utility terminals."""

from unittest.mock import patch

import pytest

from agentfarm.architect import start_architect, stop_all
from agentfarm.errors import CapacityError, ExternalToolError, NotFoundError
from agentfarm.models.state import Architect, Builder, UtilTerminal
from agentfarm.utils_terminal import close_util, spawn_util


def _free_ports(candidates, taken=frozenset(), host=None):
    return next((p for p in candidates if p not in taken), None)


class TestStartArchitect:

    async def test_fresh_start(self, ctx, store):
        with patch("agentfarm.tmux.list_sessions", return_value=[]), \
                patch("agentfarm.architect.command_exists", return_value=True), \
                patch("agentfarm.tmux.new_session") as new_session, \
                patch("agentfarm.architect.spawn_ttyd", return_value=5150) as ttyd:
            architect = await start_architect(ctx, store, cmd="claude --resume")

        assert architect.port == 4201
        assert architect.pid == 5150
        assert architect.tmux_session == "af-architect-4201"
        new_session.assert_called_once_with("af-architect-4201", ctx.project_root, "claude --resume")
        ttyd.assert_called_once_with(4201, "af-architect-4201", ctx.project_root)
        assert (await store.get_architect()).cmd == "claude --resume"

    async def test_live_architect_is_left_alone(self, ctx, store):
        await store.set_architect(Architect(pid=1234, port=4201, cmd="claude", started_at="x",
                                            tmux_session="af-architect-4201"))
        with patch("agentfarm.tmux.list_sessions", return_value=["af-architect-4201"]), \
                patch("agentfarm.tmux.kill_session") as kill, \
                patch("agentfarm.orphans.pid_alive", return_value=True), \
                patch("agentfarm.architect.pid_alive", return_value=True), \
                patch("agentfarm.tmux.new_session") as new_session:
            assert await start_architect(ctx, store) is None

        kill.assert_not_called()
        new_session.assert_not_called()

    async def test_stale_record_replaced(self, ctx, store):
        await store.set_architect(Architect(pid=1234, port=4201, cmd="old", started_at="x",
                                            tmux_session="af-architect-4201"))
        with patch("agentfarm.tmux.list_sessions", return_value=["af-architect-4201"]), \
                patch("agentfarm.tmux.kill_session", return_value=True) as kill, \
                patch("agentfarm.orphans.pid_alive", return_value=False), \
                patch("agentfarm.architect.command_exists", return_value=True), \
                patch("agentfarm.tmux.new_session"), \
                patch("agentfarm.architect.spawn_ttyd", return_value=6000):
            architect = await start_architect(ctx, store)

        kill.assert_called_once_with("af-architect-4201")
        assert architect.pid == 6000
        assert (await store.get_architect()).cmd == ctx.commands.architect

    async def test_ttyd_failure_kills_session(self, ctx, store):
        with patch("agentfarm.tmux.list_sessions", return_value=[]), \
                patch("agentfarm.architect.command_exists", return_value=True), \
                patch("agentfarm.tmux.new_session"), \
                patch("agentfarm.tmux.kill_session", return_value=True) as kill, \
                patch("agentfarm.architect.spawn_ttyd", side_effect=ExternalToolError(["ttyd"], 1, "x")):
            with pytest.raises(ExternalToolError):
                await start_architect(ctx, store)
        kill.assert_called_once_with("af-architect-4201")
        assert await store.get_architect() is None


class TestStopAll:

    async def test_stops_everything_and_clears(self, ctx, store):
        await store.set_architect(Architect(pid=10, port=4201, cmd="c", started_at="x",
                                            tmux_session="af-architect-4201"))
        await store.insert_builder(Builder(id="b1", name="b1", port=4210, pid=11,
                                           tmux_session="builder-4200-b1"))
        await store.add_util(UtilTerminal(id="u1", name="u1", port=4230, pid=12,
                                          tmux_session="util-4200-u1"))

        with patch("agentfarm.architect.kill_process_tree", side_effect=lambda pid: pid != 12), \
                patch("agentfarm.tmux.kill_session", return_value=True) as kill:
            stopped = await stop_all(ctx, store)

        assert stopped == 2
        assert sorted(c.args[0] for c in kill.call_args_list) == [
            "af-architect-4201", "builder-4200-b1", "util-4200-u1",
        ]
        state = await store.load_all()
        assert state.architect is None
        assert state.builders == []
        assert state.utils == []


class TestUtilTerminals:

    async def test_spawn_and_close(self, ctx, store):
        with patch("agentfarm.utils_terminal.command_exists", return_value=True), \
                patch("agentfarm.utils_terminal.first_free_port", side_effect=_free_ports), \
                patch("agentfarm.tmux.new_session") as new_session, \
                patch("agentfarm.utils_terminal.spawn_ttyd", return_value=7070):
            util = await spawn_util(ctx, store, name="logs")

        assert util.port == 4230
        assert util.pid == 7070
        assert util.tmux_session.startswith("util-4200-")
        assert new_session.call_args.args[2] == ctx.commands.shell
        assert (await store.get_util(util.id)).pid == 7070

        with patch("agentfarm.utils_terminal.kill_process_tree", return_value=True) as kill_tree, \
                patch("agentfarm.tmux.kill_session", return_value=True) as kill:
            closed = await close_util(ctx, util.id, store)

        assert closed.id == util.id
        kill_tree.assert_called_once_with(7070)
        kill.assert_called_once_with(util.tmux_session)
        assert await store.get_util(util.id) is None

    async def test_spawn_failure_rolls_back(self, ctx, store):
        with patch("agentfarm.utils_terminal.command_exists", return_value=True), \
                patch("agentfarm.utils_terminal.first_free_port", side_effect=_free_ports), \
                patch("agentfarm.tmux.new_session", side_effect=ExternalToolError(["tmux"], 1, "no")), \
                patch("agentfarm.tmux.kill_session") as kill:
            with pytest.raises(ExternalToolError):
                await spawn_util(ctx, store)
        kill.assert_not_called()
        assert await store.list_utils() == []

    async def test_no_free_util_port(self, ctx, store):
        with patch("agentfarm.utils_terminal.command_exists", return_value=True), \
                patch("agentfarm.utils_terminal.first_free_port", return_value=None):
            with pytest.raises(CapacityError, match="util ports"):
                await spawn_util(ctx, store)

    async def test_close_unknown(self, ctx, store):
        with pytest.raises(NotFoundError):
            await close_util(ctx, "nope", store)
