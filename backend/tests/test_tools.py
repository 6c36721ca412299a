"""Tests for the external tool wrappers: shell, tmux and git."""

import subprocess
from unittest.mock import patch

import pytest

from agentfarm import git, shell, tmux
from agentfarm.errors import ExternalToolError


def _done(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


class TestRun:

    def test_nonzero_exit_carries_stderr(self):
        with patch("agentfarm.shell.subprocess.run", return_value=_done(returncode=1, stderr="boom\n")):
            with pytest.raises(ExternalToolError) as exc_info:
                shell.run(["tmux", "ls"])
        assert exc_info.value.returncode == 1
        assert exc_info.value.stderr == "boom"
        assert exc_info.value.exit_code == 7

    def test_missing_binary(self):
        with patch("agentfarm.shell.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ExternalToolError, match="command not found") as exc_info:
                shell.run(["ttyd", "--version"])
        assert exc_info.value.returncode == 127

    def test_timeout(self):
        with patch("agentfarm.shell.subprocess.run", side_effect=subprocess.TimeoutExpired(["git"], 5)):
            with pytest.raises(ExternalToolError, match="timed out"):
                shell.run(["git", "status"])

    def test_ttyd_args_name_the_session(self):
        with patch("agentfarm.shell.spawn_detached", return_value=999) as spawn:
            assert shell.spawn_ttyd(4210, "builder-4200-0003", "/tmp", host="127.0.0.1") == 999
        args = spawn.call_args.args[0]
        assert args[:5] == ["ttyd", "-W", "-p", "4210", "-i"]
        assert args[-4:] == ["tmux", "attach-session", "-t", "=builder-4200-0003"]


class TestTmux:

    def test_list_sessions(self):
        with patch("agentfarm.tmux.run", return_value=_done("af-architect-4201\nbuilder-4200-1\n\n")):
            assert tmux.list_sessions() == ["af-architect-4201", "builder-4200-1"]

    def test_no_server_means_no_sessions(self):
        error = ExternalToolError(["tmux"], 1, "no server running on /tmp/tmux-1000/default")
        with patch("agentfarm.tmux.run", side_effect=error):
            assert tmux.list_sessions() == []

    def test_other_errors_propagate(self):
        with patch("agentfarm.tmux.run", side_effect=ExternalToolError(["tmux"], 1, "protocol mismatch")):
            with pytest.raises(ExternalToolError):
                tmux.list_sessions()

    def test_kill_missing_session(self):
        error = ExternalToolError(["tmux"], 1, "can't find session: builder-4200-x")
        with patch("agentfarm.tmux.run", side_effect=error):
            assert tmux.kill_session("builder-4200-x") is False

    def test_kill_targets_exact_name(self):
        with patch("agentfarm.tmux.run") as run:
            assert tmux.kill_session("builder-4200-1") is True
        assert run.call_args.args[0] == ["tmux", "kill-session", "-t", "=builder-4200-1"]

    def test_kill_without_tmux_installed(self):
        error = ExternalToolError(["tmux"], 127, "tmux: command not found")
        with patch("agentfarm.tmux.run", side_effect=error):
            assert tmux.kill_session("builder-4200-1") is False

    def test_kill_other_errors_propagate(self):
        with patch("agentfarm.tmux.run", side_effect=ExternalToolError(["tmux"], 1, "protocol mismatch")):
            with pytest.raises(ExternalToolError):
                tmux.kill_session("builder-4200-1")

    def test_new_session_hides_status_bar(self):
        with patch("agentfarm.tmux.run") as run:
            tmux.new_session("util-4200-a", "/proj", "bash")
        first, second = (c.args[0] for c in run.call_args_list)
        assert first[:5] == ["tmux", "new-session", "-d", "-s", "util-4200-a"]
        assert first[-1] == "bash"
        assert second == ["tmux", "set-option", "-t", "=util-4200-a", "status", "off"]


class TestGit:

    def test_clean_worktree(self, tmp_path):
        with patch("agentfarm.git.run", return_value=_done("")):
            status = git.worktree_status(tmp_path)
        assert status == git.WorktreeStatus(dirty=False, scaffold_only=False)

    def test_scaffold_files_do_not_count(self, tmp_path):
        porcelain = "?? .builder-prompt.txt\n?? .builder-start.sh\n"
        with patch("agentfarm.git.run", return_value=_done(porcelain)):
            status = git.worktree_status(tmp_path)
        assert status.dirty is False
        assert status.scaffold_only is True

    def test_real_changes_are_dirty(self, tmp_path):
        porcelain = " M src/app.py\n?? .builder-prompt.txt\n?? notes.md\n"
        with patch("agentfarm.git.run", return_value=_done(porcelain)):
            status = git.worktree_status(tmp_path)
        assert status.dirty is True
        assert status.details == "2 uncommitted file(s)"

    def test_git_failure_counts_as_dirty(self, tmp_path):
        with patch("agentfarm.git.run", side_effect=ExternalToolError(["git"], 128, "fatal")):
            assert git.worktree_status(tmp_path).dirty is True

    def test_forced_remove_falls_back_to_delete_and_prune(self, tmp_path):
        worktree = tmp_path / ".builders" / "0003"
        worktree.mkdir(parents=True)
        calls = []

        def fake_run(args, cwd=None, timeout=None):
            calls.append(args)
            if args[:3] == ["git", "worktree", "remove"]:
                raise ExternalToolError(args, 128, "contains modified files")
            return _done()

        with patch("agentfarm.git.run", side_effect=fake_run):
            assert git.remove_worktree(tmp_path, worktree, force=True) is True

        assert not worktree.exists()
        assert calls[-1] == ["git", "worktree", "prune"]

    def test_unforced_remove_failure_propagates(self, tmp_path):
        worktree = tmp_path / "wt"
        worktree.mkdir()
        with patch("agentfarm.git.run", side_effect=ExternalToolError(["git"], 128, "dirty")):
            with pytest.raises(ExternalToolError):
                git.remove_worktree(tmp_path, worktree)
        assert worktree.exists()

    def test_create_worktree_tolerates_existing_branch(self, tmp_path):
        (tmp_path / ".env").write_text("X=1")
        worktree = tmp_path / ".builders" / "0003"

        def fake_run(args, cwd=None, timeout=None):
            if args[:2] == ["git", "branch"]:
                raise ExternalToolError(args, 128, "branch already exists")
            if args[:3] == ["git", "worktree", "add"]:
                worktree.mkdir(parents=True)
            return _done()

        with patch("agentfarm.git.run", side_effect=fake_run):
            git.create_worktree(tmp_path, "builder/0003-login", worktree)

        assert (worktree / ".env").is_symlink()
