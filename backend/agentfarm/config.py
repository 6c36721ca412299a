"""Process-wide settings loaded from environment variables.

Reads from a .env file in the current directory if present, then
overrides with actual environment variables. No extra dependencies needed.

Project-specific values (project root, port block, agent commands) are not
resolved here; see agentfarm.context for those.
"""

import os
from pathlib import Path

from . import __version__


def _load_dotenv(env_file: Path | None = None):
    """Load a .env file if it exists."""
    env_file = env_file or Path.cwd() / ".env"
    if not env_file.is_file():
        return
    for line in env_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("'\"")
        # Don't override existing env vars
        if key not in os.environ:
            os.environ[key] = value


_load_dotenv()


# --- Settings ---

APP_VERSION: str = __version__

# Machine-wide state directory (global port registry lives here)
AF_HOME: Path = Path(os.environ.get("AF_HOME", str(Path.home() / ".agent-farm"))).expanduser()
GLOBAL_DB_NAME: str = "global.db"
LEGACY_PORTS_FILE: str = "ports.json"

# Per-project directory names, relative to the project root
STATE_DIR_NAME: str = ".agent-farm"
BUILDERS_DIR_NAME: str = ".builders"
CODEV_DIR_NAME: str = "codev"
LOCAL_DB_NAME: str = "state.db"
LEGACY_STATE_FILE: str = "state.json"

# Port blocks: first block starts at BASE_PORT, one block per project
BASE_PORT: int = int(os.environ.get("AF_BASE_PORT", "4200"))
PORT_BLOCK_SIZE: int = int(os.environ.get("AF_PORT_BLOCK_SIZE", "100"))
# 4200-9999 = 58 blocks
MAX_ALLOCATIONS: int = int(os.environ.get("AF_MAX_ALLOCATIONS", "58"))

# SQLite lock wait before a writer gives up (milliseconds)
BUSY_TIMEOUT_MS: int = int(os.environ.get("AF_BUSY_TIMEOUT_MS", "5000"))

LOG_LEVEL: str = os.environ.get("AF_LOG_LEVEL", "info")
# "json" for JSON lines, "text" for human-readable (default)
LOG_FORMAT: str = os.environ.get("AF_LOG_FORMAT", "text")

# Interface the web-terminal bridge and dashboard bind to
BIND_HOST: str = os.environ.get("AF_BIND_HOST", "127.0.0.1")

# Default agent commands (overridden by codev/config.json, then CLI flags)
ARCHITECT_CMD: str = os.environ.get("AF_ARCHITECT_CMD", "claude")
BUILDER_CMD: str = os.environ.get("AF_BUILDER_CMD", "claude")
SHELL_CMD: str = os.environ.get("AF_SHELL_CMD", "bash")

# Timeout for tmux/git/ttyd invocations (seconds)
TOOL_TIMEOUT: float = float(os.environ.get("AF_TOOL_TIMEOUT", "30"))
