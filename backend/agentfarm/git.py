"""git operations for builder workspaces.

Only worktree creation, a dirty check and worktree removal are needed;
history is never parsed and branches are never deleted.
"""

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import ExternalToolError
from .shell import run

logger = logging.getLogger("agentfarm.git")

# Files agent-farm itself drops into a worktree (prompt, launch script)
_SCAFFOLD_LINE = re.compile(r"^\?\? \.builder-")


@dataclass(frozen=True)
class WorktreeStatus:
    dirty: bool
    scaffold_only: bool = False
    details: str = ""


def create_worktree(project_root: Path, branch: str, worktree: Path):
    """Create ``branch`` (if new) and check it out into ``worktree``."""
    try:
        run(["git", "branch", branch], cwd=project_root)
    except ExternalToolError as e:
        # Branch may already exist from an earlier builder; that's fine
        logger.debug("git branch %s: %s", branch, e.stderr)

    worktree.parent.mkdir(parents=True, exist_ok=True)
    run(["git", "worktree", "add", str(worktree), branch], cwd=project_root)
    logger.info("Created worktree %s on branch %s", worktree, branch)

    root_env = project_root / ".env"
    worktree_env = worktree / ".env"
    if root_env.exists() and not worktree_env.exists():
        worktree_env.symlink_to(root_env)


def worktree_status(worktree: Path) -> WorktreeStatus:
    """Dirty check used before destructive cleanup.

    Untracked ``.builder-*`` scaffold files do not count. If git itself
    fails the worktree is treated as dirty.
    """
    if not worktree.exists():
        return WorktreeStatus(dirty=False)
    try:
        result = run(["git", "status", "--porcelain"], cwd=worktree)
    except ExternalToolError:
        return WorktreeStatus(dirty=True, details="Unable to check status")

    lines = [line for line in result.stdout.splitlines() if line.strip()]
    real_changes = [line for line in lines if not _SCAFFOLD_LINE.match(line)]
    if real_changes:
        return WorktreeStatus(dirty=True, details=f"{len(real_changes)} uncommitted file(s)")
    return WorktreeStatus(dirty=False, scaffold_only=bool(lines))


def remove_worktree(project_root: Path, worktree: Path, force: bool = False) -> bool:
    """Remove a worktree. Returns False when it was already gone.

    With ``force`` a failing ``git worktree remove`` falls back to deleting
    the directory and pruning git's worktree list.
    """
    if not worktree.exists():
        return False
    args = ["git", "worktree", "remove", str(worktree)]
    if force:
        args.append("--force")
    try:
        run(args, cwd=project_root)
    except ExternalToolError:
        if not force:
            raise
        logger.warning("git worktree remove failed, deleting %s directly", worktree)
        shutil.rmtree(worktree, ignore_errors=True)
        run(["git", "worktree", "prune"], cwd=project_root)
    logger.info("Removed worktree %s", worktree)
    return True
