"""Error taxonomy shared by the allocator, the store and the lifecycle manager.

Every error carries a human-readable message naming the invariant that was
at risk, and an exit code used by the CLI.
"""


class AgentFarmError(Exception):
    """Base class for all expected, user-reportable failures."""

    exit_code = 1


class ConfigError(AgentFarmError):
    """Invalid configuration or command-line usage."""

    exit_code = 2


class CapacityError(AgentFarmError):
    """No more port blocks or ports are available. Not retryable."""

    exit_code = 3


class ConflictError(AgentFarmError):
    """A uniqueness invariant would be violated (someone else holds it)."""

    exit_code = 4


class DirtyWorkspaceError(ConflictError):
    """Workspace has uncommitted changes and --force was not given."""


class NotFoundError(AgentFarmError):
    """The referenced id or path has no matching row."""

    exit_code = 5


class InvalidTransitionError(AgentFarmError):
    """A builder status change outside the declared state machine."""

    exit_code = 2


class ContentionError(AgentFarmError):
    """A store write could not get its lock within the retry budget."""

    exit_code = 6


class ExternalToolError(AgentFarmError):
    """tmux, git or ttyd exited non-zero; carries the tool's diagnostics."""

    exit_code = 7

    def __init__(self, command: list[str] | str, returncode: int | None, stderr: str = ""):
        self.command = command if isinstance(command, str) else " ".join(command)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = self.stderr or f"exit code {returncode}"
        super().__init__(f"Command failed: {self.command}\n{detail}")


class MigrationError(AgentFarmError):
    """Legacy state import aborted; the legacy file is left in place."""

    exit_code = 8
