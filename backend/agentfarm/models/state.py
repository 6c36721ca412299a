"""Pydantic models for the project store and the global port registry.

These models are the application-side view of database rows; the
``from_row`` constructors convert ``aiosqlite.Row`` objects.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

BuilderStatus = Literal["spawning", "implementing", "blocked", "pr-ready", "complete"]
BuilderType = Literal["spec", "task", "protocol", "shell", "worktree"]
ParentType = Literal["architect", "builder", "util"]

# Valid builder status values, in lifecycle order
BUILDER_STATUSES: tuple[str, ...] = ("spawning", "implementing", "blocked", "pr-ready", "complete")
BUILDER_TYPES: tuple[str, ...] = ("spec", "task", "protocol", "shell", "worktree")


class Architect(BaseModel):
    """The single architect session of a project."""
    pid: int
    port: int
    cmd: str
    started_at: str
    tmux_session: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Architect":
        return cls(
            pid=row["pid"],
            port=row["port"],
            cmd=row["cmd"],
            started_at=row["started_at"],
            tmux_session=row["tmux_session"],
        )


class Builder(BaseModel):
    id: str = Field(min_length=1, max_length=100)
    name: str
    port: int
    pid: Optional[int] = None
    status: BuilderStatus = "spawning"
    phase: str = ""
    worktree: str = ""
    branch: str = ""
    tmux_session: Optional[str] = None
    type: BuilderType = "spec"
    task_text: Optional[str] = None
    protocol_name: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Builder":
        return cls(**{key: row[key] for key in row.keys()})


class UtilTerminal(BaseModel):
    id: str
    name: str
    port: int
    pid: Optional[int] = None
    tmux_session: Optional[str] = None
    started_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "UtilTerminal":
        return cls(**{key: row[key] for key in row.keys()})


class AnnotationParent(BaseModel):
    """Non-owning back-reference from an annotation to what it belongs to.

    ``architect`` carries no id; ``builder`` and ``util`` must name one.
    """
    type: ParentType
    id: Optional[str] = None

    @model_validator(mode="after")
    def _check_id_matches_type(self):
        if self.type == "architect" and self.id is not None:
            raise ValueError("architect parent must not carry an id")
        if self.type != "architect" and not self.id:
            raise ValueError(f"{self.type} parent requires an id")
        return self


class Annotation(BaseModel):
    id: str
    file: str
    port: int
    pid: Optional[int] = None
    parent: AnnotationParent
    started_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Annotation":
        return cls(
            id=row["id"],
            file=row["file"],
            port=row["port"],
            pid=row["pid"],
            parent=AnnotationParent(type=row["parent_type"], id=row["parent_id"]),
            started_at=row["started_at"],
        )


class ProjectState(BaseModel):
    """Full snapshot of one project's store."""
    architect: Optional[Architect] = None
    builders: list[Builder] = Field(default_factory=list)
    utils: list[UtilTerminal] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)


class PortAllocation(BaseModel):
    """One row of the machine-wide registry."""
    project_path: str
    base_port: int
    pid: Optional[int] = None
    registered_at: str
    last_used_at: str
    # Derived at read time, never persisted
    exists: Optional[bool] = None
    pid_alive: Optional[bool] = None

    @classmethod
    def from_row(cls, row) -> "PortAllocation":
        return cls(
            project_path=row["project_path"],
            base_port=row["base_port"],
            pid=row["pid"],
            registered_at=row["registered_at"],
            last_used_at=row["last_used_at"],
        )


class ProjectPorts(BaseModel):
    """Concrete ports derived from a project's base port (static offsets)."""
    base_port: int
    dashboard_port: int
    architect_port: int
    builder_port_range: tuple[int, int]
    util_port_range: tuple[int, int]
    annotate_port_range: tuple[int, int]
