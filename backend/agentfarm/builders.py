"""Builder lifecycle: spawn, status transitions, completion and cleanup.

    spawning -> implementing <-> blocked
                implementing -> pr-ready -> complete
                pr-ready -> implementing   (review feedback)

Any builder can be forced to ``complete`` through ``complete()``/
``cleanup()`` regardless of its recorded status. Completing releases the
runtime resources (bridge process, tmux session, port). The worktree is
only removed by an explicit cleanup, and branches are never deleted.
"""

import asyncio
import logging
import re
import secrets
import stat
from dataclasses import dataclass
from pathlib import Path

from . import git, tmux
from .context import ProjectContext
from .errors import (
    AgentFarmError,
    CapacityError,
    ConflictError,
    DirtyWorkspaceError,
    ExternalToolError,
    InvalidTransitionError,
    NotFoundError,
)
from .liveness import first_free_port, kill_process_tree
from .models.state import Builder
from .orphans import builder_session_name, shell_session_name
from .shell import command_exists, spawn_ttyd
from .state import StateStore

logger = logging.getLogger("agentfarm.builders")

# status -> statuses reachable through set_status
TRANSITIONS: dict[str, frozenset[str]] = {
    "spawning": frozenset({"implementing"}),
    "implementing": frozenset({"blocked", "pr-ready"}),
    "blocked": frozenset({"implementing"}),
    "pr-ready": frozenset({"implementing", "complete"}),
    "complete": frozenset(),
}

PROMPT_FILE = ".builder-prompt.txt"
START_SCRIPT = ".builder-start.sh"

BUILDER_ROLE_HINT = "You are a Builder. Read codev/roles/builder.md for your full role definition."


def generate_token() -> str:
    """Short random id suffix: 4 URL-safe chars (2**24 values)."""
    return secrets.token_urlsafe(3)


def check_transition(current: str, new: str):
    if new == current:
        return
    if new not in TRANSITIONS.get(current, frozenset()):
        allowed = ", ".join(sorted(TRANSITIONS.get(current, ()))) or "none"
        raise InvalidTransitionError(
            f"Cannot move builder from '{current}' to '{new}' (allowed: {allowed})"
        )


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9_-]", "-", name.lower())
    return re.sub(r"-+", "-", slug)


def find_spec_file(codev_dir: Path, spec_id: str) -> Path | None:
    """``codev/specs/<id>*.md``, preferring an exact ``<id>-`` prefix match."""
    specs_dir = codev_dir / "specs"
    if not specs_dir.is_dir():
        return None
    candidates = sorted(p for p in specs_dir.glob(f"{spec_id}*.md") if p.is_file())
    for path in candidates:
        if path.stem == spec_id or path.stem.startswith(f"{spec_id}-"):
            return path
    return candidates[0] if candidates else None


@dataclass
class SpawnPlan:
    """Everything decided about a builder before any resource is touched."""
    builder_id: str
    name: str
    type: str
    session_name: str
    cwd: Path
    command: str
    branch: str = ""
    worktree: Path | None = None
    prompt: str | None = None
    task_text: str | None = None
    protocol_name: str | None = None


class BuilderManager:
    def __init__(self, ctx: ProjectContext, store: StateStore | None = None):
        self.ctx = ctx
        self.store = store or ctx.store()

    # --- Planning ---

    def plan_spec(self, spec_id: str) -> SpawnPlan:
        spec_file = find_spec_file(self.ctx.codev_dir, spec_id)
        if spec_file is None:
            raise NotFoundError(f"Spec not found for project: {spec_id}")
        spec_name = spec_file.stem
        spec_rel = f"codev/specs/{spec_name}.md"
        plan_rel = f"codev/plans/{spec_name}.md"
        has_plan = (self.ctx.codev_dir / "plans" / f"{spec_name}.md").exists()

        prompt = f"Implement the feature specified in {spec_rel}."
        if has_plan:
            prompt += f" Follow the implementation plan in {plan_rel}."
        prompt += f" Start by reading the spec{' and plan' if has_plan else ''}, then begin implementation."

        return SpawnPlan(
            builder_id=spec_id,
            name=spec_name,
            type="spec",
            session_name=builder_session_name(self.ctx.ports.base_port, spec_id),
            cwd=self.ctx.builders_dir / spec_id,
            command=self.ctx.commands.builder,
            branch=f"builder/{slugify(spec_name)}",
            worktree=self.ctx.builders_dir / spec_id,
            prompt=f"{BUILDER_ROLE_HINT} {prompt}",
        )

    def plan_task(self, task_text: str, files: list[str] | None = None) -> SpawnPlan:
        if not task_text.strip():
            raise AgentFarmError("Task text must not be empty")
        builder_id = f"task-{generate_token()}"
        prompt = task_text
        if files:
            prompt += "\n\nRelevant files to consider:\n" + "\n".join(f"- {f}" for f in files)
        short = task_text[:30] + ("..." if len(task_text) > 30 else "")
        return SpawnPlan(
            builder_id=builder_id,
            name=f"Task: {short}",
            type="task",
            session_name=builder_session_name(self.ctx.ports.base_port, builder_id),
            cwd=self.ctx.builders_dir / builder_id,
            command=self.ctx.commands.builder,
            branch=f"builder/{builder_id}",
            worktree=self.ctx.builders_dir / builder_id,
            prompt=f"{BUILDER_ROLE_HINT} {prompt}",
            task_text=task_text,
        )

    def plan_protocol(self, protocol_name: str) -> SpawnPlan:
        protocol_file = self.ctx.codev_dir / "protocols" / protocol_name / "protocol.md"
        if not protocol_file.exists():
            raise NotFoundError(f"Protocol not found: {protocol_name} (expected {protocol_file})")
        builder_id = f"{protocol_name}-{generate_token()}"
        return SpawnPlan(
            builder_id=builder_id,
            name=f"Protocol: {protocol_name}",
            type="protocol",
            session_name=builder_session_name(self.ctx.ports.base_port, builder_id),
            cwd=self.ctx.builders_dir / builder_id,
            command=self.ctx.commands.builder,
            branch=f"builder/{builder_id}",
            worktree=self.ctx.builders_dir / builder_id,
            prompt=(
                f"You are running the {protocol_name} protocol. Start by reading "
                f"codev/protocols/{protocol_name}/protocol.md and follow its instructions."
            ),
            protocol_name=protocol_name,
        )

    def plan_worktree(self) -> SpawnPlan:
        builder_id = f"worktree-{generate_token()}"
        return SpawnPlan(
            builder_id=builder_id,
            name="Worktree",
            type="worktree",
            session_name=builder_session_name(self.ctx.ports.base_port, builder_id),
            cwd=self.ctx.builders_dir / builder_id,
            command=self.ctx.commands.builder,
            branch=f"builder/{builder_id}",
            worktree=self.ctx.builders_dir / builder_id,
        )

    def plan_shell(self) -> SpawnPlan:
        token = generate_token()
        return SpawnPlan(
            builder_id=f"shell-{token}",
            name="Shell",
            type="shell",
            session_name=shell_session_name(self.ctx.ports.base_port, token),
            cwd=self.ctx.project_root,
            command=self.ctx.commands.shell,
        )

    # --- Spawn ---

    def check_dependencies(self, needs_git: bool):
        tools = ["tmux", "ttyd"] + (["git"] if needs_git else [])
        for tool in tools:
            if not command_exists(tool):
                raise ExternalToolError([tool], 127, f"{tool}: command not found")

    async def _claim(self, plan: SpawnPlan) -> Builder:
        """Insert the ``spawning`` row on the first free builder port.

        The store's UNIQUE(port) decides races: losing one just moves on
        to the next candidate.
        """
        low, high = self.ctx.ports.builder_port_range
        lost: set[int] = set()
        for _ in range(high - low + 1):
            taken = {b.port for b in await self.store.list_builders()} | lost
            port = await asyncio.to_thread(first_free_port, range(low, high + 1), taken)
            if port is None:
                break
            try:
                return await self.store.insert_builder(Builder(
                    id=plan.builder_id,
                    name=plan.name,
                    port=port,
                    status="spawning",
                    phase="init",
                    worktree=str(plan.worktree or ""),
                    branch=plan.branch,
                    tmux_session=plan.session_name,
                    type=plan.type,
                    task_text=plan.task_text,
                    protocol_name=plan.protocol_name,
                ))
            except ConflictError as e:
                if not str(e).startswith("Port"):
                    raise
                logger.debug("Lost race for port %d, trying next", port)
                lost.add(port)
        raise CapacityError(f"No free builder ports in range {low}-{high}")

    def _write_launch_script(self, plan: SpawnPlan) -> str:
        prompt_file = plan.cwd / PROMPT_FILE
        prompt_file.write_text(plan.prompt, encoding="utf-8")
        script = plan.cwd / START_SCRIPT
        script.write_text(
            f"#!/bin/bash\nexec {plan.command} \"$(cat '{prompt_file}')\"\n", encoding="utf-8"
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    async def spawn(self, plan: SpawnPlan) -> Builder:
        """Claim a port, then provision workspace, session and bridge.

        If provisioning fails the claimed row and session are rolled back;
        a created worktree is left in place for inspection.
        """
        self.check_dependencies(needs_git=plan.worktree is not None)
        self.ctx.builders_dir.mkdir(parents=True, exist_ok=True)

        builder = await self._claim(plan)
        logger.info("Spawning %s builder %s on port %d", plan.type, plan.builder_id, builder.port)

        session_started = False
        ttyd_pid = None
        try:
            if plan.worktree is not None:
                await asyncio.to_thread(git.create_worktree, self.ctx.project_root, plan.branch, plan.worktree)
            command = self._write_launch_script(plan) if plan.prompt else plan.command

            await asyncio.to_thread(tmux.new_session, plan.session_name, plan.cwd, command)
            session_started = True
            ttyd_pid = await asyncio.to_thread(spawn_ttyd, builder.port, plan.session_name, plan.cwd)
            builder = await self.store.update_builder(plan.builder_id, pid=ttyd_pid)
        except BaseException:
            logger.error("Spawn of builder %s failed, rolling back", plan.builder_id)
            await self._rollback(plan, session_started, ttyd_pid)
            raise

        logger.info("Builder %s spawned: http://localhost:%d", plan.builder_id, builder.port)
        return builder

    async def _rollback(self, plan: SpawnPlan, session_started: bool, ttyd_pid: int | None):
        if ttyd_pid:
            await asyncio.to_thread(kill_process_tree, ttyd_pid)
        if session_started:
            try:
                await asyncio.to_thread(tmux.kill_session, plan.session_name)
            except ExternalToolError as e:
                logger.warning("Could not kill session %s during rollback: %s", plan.session_name, e)
        await self.store.remove_builder(plan.builder_id)

    # --- Status ---

    async def set_status(self, builder_id: str, new_status: str) -> Builder:
        """Move a builder along the lifecycle; ``complete`` releases it."""
        builder = await self.store.get_builder(builder_id)
        if builder is None:
            raise NotFoundError(f"Builder not found: {builder_id}")
        check_transition(builder.status, new_status)

        if new_status == "complete":
            await self.complete(builder_id)
            return builder.model_copy(update={"status": "complete"})

        allowed_from = {s for s, targets in TRANSITIONS.items() if new_status in targets} | {new_status}
        return await self.store.set_status(builder_id, new_status, allowed_from=allowed_from)

    # --- Teardown ---

    async def _release_runtime(self, builder: Builder):
        """Stop the bridge process and the tmux session; both may already be gone."""
        if builder.pid:
            await asyncio.to_thread(kill_process_tree, builder.pid)
        session = builder.tmux_session or builder_session_name(self.ctx.ports.base_port, builder.id)
        await asyncio.to_thread(tmux.kill_session, session)

    async def complete(self, builder_id: str) -> bool:
        """Release a builder's runtime resources and drop its row.

        Works from any status and is idempotent: returns False when the
        builder was already gone.
        """
        builder = await self.store.get_builder(builder_id)
        if builder is None:
            return False
        await self._release_runtime(builder)
        await self.store.remove_builder(builder_id)
        logger.info("Builder %s complete (port %d released)", builder_id, builder.port)
        return True

    async def resolve(self, key: str) -> Builder:
        """Find a builder by id, falling back to a unique name match."""
        builder = await self.store.get_builder(key)
        if builder:
            return builder
        matches = [b for b in await self.store.list_builders() if key in b.name]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise ConflictError(f"'{key}' matches several builders: {', '.join(b.id for b in matches)}")
        raise NotFoundError(f"Builder not found: {key}")

    async def cleanup(self, key: str, force: bool = False) -> Builder:
        """Tear a builder down completely, including its worktree.

        Refuses when the worktree has uncommitted changes unless ``force``.
        The row is deleted last, so a failed worktree removal can be retried.
        """
        builder = await self.resolve(key)
        worktree = Path(builder.worktree) if builder.worktree and builder.type != "shell" else None

        use_force = force
        if worktree is not None:
            status = await asyncio.to_thread(git.worktree_status, worktree)
            if status.dirty and not force:
                raise DirtyWorkspaceError(
                    f"Worktree {worktree} has uncommitted changes ({status.details}). "
                    "Use --force to delete anyway (changes will be lost)."
                )
            if status.dirty:
                logger.warning("Worktree has uncommitted changes (%s); proceeding with --force", status.details)
            use_force = force or status.scaffold_only

        await self._release_runtime(builder)
        if worktree is not None:
            await asyncio.to_thread(git.remove_worktree, self.ctx.project_root, worktree, use_force)
        if builder.branch:
            logger.info("Branch %s kept", builder.branch)
        await self.store.remove_builder(builder.id)
        logger.info("Builder %s cleaned up", builder.id)
        return builder

    async def rename(self, builder_id: str, new_name: str) -> str:
        if not new_name.strip():
            raise AgentFarmError("Name must not be empty")
        return await self.store.rename_builder(builder_id, new_name)
