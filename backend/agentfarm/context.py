"""Per-invocation project context.

A ProjectContext is built once per CLI invocation by
``ProjectContext.initialize()`` and passed explicitly to whatever needs it.
Nothing is cached at module level: a second initialize() (for example a
second simulated process in a test) re-resolves everything from disk and
from the port registry.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from . import config
from .errors import ConfigError, ExternalToolError
from .models.state import ProjectPorts
from .port_registry import PortRegistry, canonical_path, project_ports
from .shell import run
from .state import StateStore

logger = logging.getLogger("agentfarm.context")

_ENV_VAR = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class ResolvedCommands:
    architect: str
    builder: str
    shell: str


def _main_repo_from_worktree(start_dir: Path) -> Path | None:
    """If ``start_dir`` is inside a linked git worktree, return the main checkout."""
    try:
        result = run(["git", "rev-parse", "--git-common-dir"], cwd=start_dir)
    except ExternalToolError:
        return None
    common_dir = result.stdout.strip()
    if not common_dir or common_dir == ".git":
        return None
    git_dir = (start_dir / common_dir).resolve()
    if git_dir.parent.name == "worktrees":
        git_dir = git_dir.parent.parent
    return git_dir.parent


def find_project_root(start_dir: Path | None = None) -> Path:
    """Locate the project root.

    Builders run inside ``.builders/<id>`` worktrees, so the main
    repository wins when it carries a ``codev/`` directory. Otherwise the
    nearest ancestor with ``codev/`` or ``.git`` is used, falling back to
    ``start_dir`` itself.
    """
    start = Path(start_dir or Path.cwd()).resolve()
    main_repo = _main_repo_from_worktree(start)
    if main_repo and (main_repo / config.CODEV_DIR_NAME).is_dir():
        return main_repo

    for directory in (start, *start.parents):
        if (directory / config.CODEV_DIR_NAME).is_dir() or (directory / ".git").exists():
            return directory
    return start


def expand_env_vars(value: str) -> str:
    """Expand ``$VAR`` and ``${VAR}``; unset variables become empty."""
    return _ENV_VAR.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), value)


def _resolve_command(value, default: str) -> str:
    if not value:
        return default
    if isinstance(value, list):
        return " ".join(expand_env_vars(str(part)) for part in value)
    if isinstance(value, str):
        return expand_env_vars(value)
    raise ConfigError(f"Command must be a string or list of strings, got {type(value).__name__}")


def load_user_config(project_root: Path) -> dict:
    """Read ``codev/config.json``; a missing file is an empty config."""
    path = project_root / config.CODEV_DIR_NAME / "config.json"
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def resolve_commands(project_root: Path, overrides: dict | None = None) -> ResolvedCommands:
    """CLI override > codev/config.json ``shell`` section > process defaults."""
    overrides = {k: v for k, v in (overrides or {}).items() if v}
    shell_config = load_user_config(project_root).get("shell") or {}
    if not isinstance(shell_config, dict):
        raise ConfigError("config.json 'shell' section must be an object")
    return ResolvedCommands(
        architect=overrides.get("architect") or _resolve_command(shell_config.get("architect"), config.ARCHITECT_CMD),
        builder=overrides.get("builder") or _resolve_command(shell_config.get("builder"), config.BUILDER_CMD),
        shell=overrides.get("shell") or _resolve_command(shell_config.get("shell"), config.SHELL_CMD),
    )


@dataclass(frozen=True)
class ProjectContext:
    project_root: Path
    ports: ProjectPorts
    commands: ResolvedCommands
    home_dir: Path = field(default_factory=lambda: config.AF_HOME)

    @property
    def project_name(self) -> str:
        return self.project_root.name

    @property
    def codev_dir(self) -> Path:
        return self.project_root / config.CODEV_DIR_NAME

    @property
    def builders_dir(self) -> Path:
        return self.project_root / config.BUILDERS_DIR_NAME

    @property
    def state_dir(self) -> Path:
        return self.project_root / config.STATE_DIR_NAME

    def registry(self) -> PortRegistry:
        return PortRegistry(self.home_dir)

    def store(self) -> StateStore:
        return StateStore(self.state_dir)

    @classmethod
    async def initialize(
        cls,
        start_dir: Path | None = None,
        project_root: Path | None = None,
        overrides: dict | None = None,
        home_dir: Path | None = None,
    ) -> "ProjectContext":
        """Resolve the project and claim (or refresh) its port block."""
        root = Path(canonical_path(project_root)) if project_root else find_project_root(start_dir)
        home = Path(home_dir) if home_dir else config.AF_HOME
        base_port = await PortRegistry(home).get_or_allocate(root)
        ctx = cls(
            project_root=root,
            ports=project_ports(base_port),
            commands=resolve_commands(root, overrides),
            home_dir=home,
        )
        logger.debug("Project %s uses port block %d", root, base_port)
        return ctx
